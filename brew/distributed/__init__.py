"""
Multi-device and multi-node support for brew.

Key components:
- device: device id resolution and diagnostics
- transport: process-group transports (gloo on CPU, nccl on GPU)
- node: per-iteration synchronization across processes
- data_server: remote batch production over a TCPStore
"""

from brew.distributed.device import (
    DeviceProperties,
    DeviceSet,
    device_query,
    resolve_devices,
    torch_devices,
)
from brew.distributed.transport import (
    GlooTransport,
    NcclTransport,
    build_transport,
)

__all__ = [
    # Devices
    "DeviceProperties",
    "DeviceSet",
    "device_query",
    "resolve_devices",
    "torch_devices",
    # Transports
    "GlooTransport",
    "NcclTransport",
    "build_transport",
]
