"""
Device selection for training and verification commands.

A device request (the ``--gpu`` flag) resolves to an ordered tuple of CUDA ordinals:
- "" means host execution (no devices)
- "all" means every visible device
- "0,2,5" means exactly those devices, in that order
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from typing import Sequence

import torch

from brew.errors import ConfigurationError
from brew.logging import get_logger


logger = get_logger(__name__)

DeviceSet = tuple[int, ...]


@dataclass
class DeviceProperties:
    """Properties reported by ``device_query`` for one device."""
    device_id: int
    name: str
    total_memory: int
    major: int
    minor: int
    multi_processor_count: int


def resolve_devices(spec: Optional[str], device_count: Optional[int] = None) -> DeviceSet:
    """
    Resolve a device request into an ordered set of device ids.

    Args:
        spec: "", "all", or a comma-separated list of non-negative integers
        device_count: Number of available devices. Queried from torch only when needed.

    Returns:
        Tuple of device ids, empty for host execution.

    Examples:
        >>> resolve_devices("")
        ()
        >>> resolve_devices("0,2,5", device_count=8)
        (0, 2, 5)
        >>> resolve_devices("all", device_count=2)
        (0, 1)
    """
    text = (spec or "").strip()
    if not text:
        return ()

    if device_count is None:
        device_count = torch.cuda.device_count()

    if text == "all":
        return tuple(range(device_count))

    devices: list[int] = []
    for token in text.split(","):
        token = token.strip()
        if not token.isdigit():
            raise ConfigurationError(f"Invalid device id '{token}' in --gpu={spec}")
        device_id = int(token)
        if device_id >= device_count:
            raise ConfigurationError(
                f"Device id {device_id} is out of range ({device_count} device(s) available)"
            )
        if device_id in devices:
            raise ConfigurationError(f"Device id {device_id} listed more than once in --gpu={spec}")
        devices.append(device_id)
    return tuple(devices)


def torch_devices(devices: Sequence[int]) -> list[torch.device]:
    """
    Map device ids to torch devices.

    Examples:
        >>> torch_devices(())
        [device(type='cpu')]
        >>> torch_devices((0, 1))
        [device(type='cuda', index=0), device(type='cuda', index=1)]
    """
    if not devices:
        return [torch.device("cpu")]
    return [torch.device(f"cuda:{device_id}") for device_id in devices]


def describe_device(device_id: int) -> DeviceProperties:
    """Query and log the properties of one CUDA device."""
    props = torch.cuda.get_device_properties(device_id)
    info = DeviceProperties(
        device_id=device_id,
        name=props.name,
        total_memory=int(props.total_memory),
        major=int(props.major),
        minor=int(props.minor),
        multi_processor_count=int(props.multi_processor_count),
    )
    logger.info("Device id:                     %d", info.device_id)
    logger.info("Name:                          %s", info.name)
    logger.info("Compute capability:            %d.%d", info.major, info.minor)
    logger.info("Total global memory:           %.2f GB", info.total_memory / 1024 ** 3)
    logger.info("Number of multiprocessors:     %d", info.multi_processor_count)
    return info


def device_query(devices: Sequence[int]) -> list[DeviceProperties]:
    """Log properties of every requested device."""
    if not devices:
        raise ConfigurationError("device_query requires --gpu")
    if not torch.cuda.is_available():
        raise ConfigurationError("device_query requires CUDA, but no CUDA device is available")
    logger.info("Querying devices: %s", ", ".join(str(device_id) for device_id in devices))
    return [describe_device(device_id) for device_id in devices]
