"""
Layer graph assembled from a ``NetDefinition``.

Blobs are wired by name: each layer's bottoms must have been produced by an earlier layer, and
every blob is produced exactly once. In-place layers (a top naming one of its own bottoms) are
rejected so that every intermediate tensor stays observable to the verification harness.
"""

from __future__ import annotations

import pickle
from pathlib import Path
from typing import Optional

import torch
import torch.nn as nn

from brew.config import NetDefinition
from brew.config import NetState
from brew.errors import ConfigurationError
from brew.layers import Blob
from brew.layers import Layer
from brew.layers import create_layer
from brew.logging import get_logger


logger = get_logger(__name__)

WEIGHTS_FORMAT = "brew-weights"
DATA_SEED_STRIDE = 7919


class Net(nn.Module):
    """Ordered layers plus the named blobs that connect them."""

    def __init__(
        self,
        definition: NetDefinition,
        state: NetState,
        *,
        device: Optional[torch.device] = None,
        seed: int = 1701,
        data_seed_offset: int = 0,
    ) -> None:
        super().__init__()
        self.device = device or torch.device("cpu")
        self.state = state
        self.seed = seed
        self.net_name = definition.name

        filtered = definition.filtered(state)
        if not filtered.layers:
            raise ConfigurationError(
                f"Net '{definition.name}' has no layers for phase {state.phase}"
            )

        self.layers = nn.ModuleList()
        self.blobs: dict[str, Blob] = {}
        self.bottom_vecs: list[list[Blob]] = []
        self.top_vecs: list[list[Blob]] = []
        self.bottom_names: list[tuple[str, ...]] = []
        self.top_names: list[tuple[str, ...]] = []
        self.bottom_need_backward: list[list[bool]] = []
        self.layer_need_backward: list[bool] = []
        self.blob_loss_weights: dict[str, float] = {}

        generator = torch.Generator().manual_seed(seed)
        blob_need_backward: dict[str, bool] = {}
        consumed: set[str] = set()

        for index, layer_def in enumerate(filtered.layers):
            layer = create_layer(
                layer_def,
                device=self.device,
                data_seed=self._data_seed(index, data_seed_offset),
            )

            bottoms: list[Blob] = []
            for name in layer_def.bottom:
                if name not in self.blobs:
                    raise ConfigurationError(
                        f"Unknown bottom blob '{name}' (layer '{layer.name}', #{index})"
                    )
                bottoms.append(self.blobs[name])
                consumed.add(name)

            tops: list[Blob] = []
            for name in layer_def.top:
                if name in layer_def.bottom:
                    raise ConfigurationError(
                        f"In-place computation is not supported (layer '{layer.name}', blob '{name}')"
                    )
                if name in self.blobs:
                    raise ConfigurationError(f"Top blob '{name}' produced by more than one layer")
                blob = Blob.empty(self.device)
                self.blobs[name] = blob
                tops.append(blob)

            layer.setup(bottoms, generator)
            layer.reshape(bottoms, tops)

            need = [
                blob_need_backward.get(name, False) and layer.allow_backward(i)
                for i, name in enumerate(layer_def.bottom)
            ]
            has_params = any(p.requires_grad for p in layer.parameters())
            layer_needs = any(need) or has_params
            for name in layer_def.top:
                blob_need_backward[name] = layer_needs

            for top_index, name in enumerate(layer_def.top):
                weight = self._loss_weight(layer, top_index)
                if weight:
                    self.blob_loss_weights[name] = weight

            self.layers.append(layer)
            self.bottom_vecs.append(bottoms)
            self.top_vecs.append(tops)
            self.bottom_names.append(layer_def.bottom)
            self.top_names.append(layer_def.top)
            self.bottom_need_backward.append(need)
            self.layer_need_backward.append(layer_needs)

        self.output_names = [
            name for names in self.top_names for name in names if name not in consumed
        ]
        logger.debug(
            "Built net %s (%s): %d layers, %d blobs",
            self.net_name,
            state.phase,
            len(self.layers),
            len(self.blobs),
        )

    @staticmethod
    def _data_seed(index: int, offset: int) -> int:
        return DATA_SEED_STRIDE * (offset + 1) + index

    @staticmethod
    def _loss_weight(layer: Layer, top_index: int) -> float:
        weights = layer.definition.loss_weight
        if top_index < len(weights):
            return float(weights[top_index])
        return layer.default_loss_weight if top_index == 0 else 0.0

    # ----------------------------------------------------------------------------------
    # Introspection
    # ----------------------------------------------------------------------------------

    @property
    def layer_names(self) -> list[str]:
        return [layer.name for layer in self.layers]

    @property
    def params(self) -> list[nn.Parameter]:
        return [param for layer in self.layers for param in layer.parameters()]

    @property
    def param_owners(self) -> list[Layer]:
        """Owning layer of each entry of ``params``, in the same order."""
        return [layer for layer in self.layers for _ in layer.parameters()]

    @property
    def output_blobs(self) -> list[tuple[str, Blob]]:
        return [(name, self.blobs[name]) for name in self.output_names]

    def reseed_data(self, offset: int) -> None:
        """Give every synthetic data layer a replica-specific stream."""
        for index, layer in enumerate(self.layers):
            if hasattr(layer, "reseed"):
                layer.reseed(self._data_seed(index, offset))

    # ----------------------------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------------------------

    def forward_layer(self, index: int) -> None:
        layer = self.layers[index]
        layer.forward_blobs(self.bottom_vecs[index], self.top_vecs[index], self.bottom_need_backward[index])
        for name, blob in zip(self.top_names[index], self.top_vecs[index]):
            weight = self.blob_loss_weights.get(name, 0.0)
            if weight:
                blob.diff = torch.full_like(blob.data, weight)
            else:
                blob.diff = torch.zeros_like(blob.data)

    def backward_layer(self, index: int) -> None:
        if not self.layer_need_backward[index]:
            return
        self.layers[index].backward_blobs(
            self.top_vecs[index],
            self.bottom_need_backward[index],
            self.bottom_vecs[index],
        )

    def loss(self) -> float:
        total = 0.0
        for name, weight in self.blob_loss_weights.items():
            total += weight * float(self.blobs[name].data.sum())
        return total

    def forward(self) -> float:
        for index in range(len(self.layers)):
            self.forward_layer(index)
        return self.loss()

    def backward(self) -> None:
        for index in reversed(range(len(self.layers))):
            self.backward_layer(index)

    def forward_backward(self) -> float:
        loss = self.forward()
        self.backward()
        return loss

    def clear_param_diffs(self) -> None:
        for param in self.params:
            param.grad = torch.zeros_like(param)

    # ----------------------------------------------------------------------------------
    # Weights
    # ----------------------------------------------------------------------------------

    def layer_weights(self) -> dict[str, list[torch.Tensor]]:
        return {
            layer.name: [param.detach().cpu().clone() for param in layer.parameters()]
            for layer in self.layers
            if list(layer.parameters())
        }

    def save_weights(self, path: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        torch.save({"format": WEIGHTS_FORMAT, "layers": self.layer_weights()}, target)

    def load_layer_weights(self, layers: dict[str, list[torch.Tensor]], source: str = "<memory>") -> None:
        """Copy parameters of every layer whose name appears in ``layers``."""
        by_name = {layer.name: layer for layer in self.layers}
        for name, tensors in layers.items():
            layer = by_name.get(name)
            if layer is None:
                logger.info("Ignoring source layer %s", name)
                continue
            params = list(layer.parameters())
            if len(params) != len(tensors):
                raise ConfigurationError(
                    f"Incompatible number of parameters for layer '{name}' in {source}: "
                    f"expected {len(params)}, got {len(tensors)}"
                )
            for param, tensor in zip(params, tensors):
                if tuple(param.shape) != tuple(tensor.shape):
                    raise ConfigurationError(
                        f"Cannot copy parameter of layer '{name}' from {source}: shape "
                        f"{tuple(tensor.shape)} does not match {tuple(param.shape)}"
                    )
                with torch.no_grad():
                    param.copy_(tensor.to(device=param.device, dtype=param.dtype))
            logger.debug("Copying source layer %s", name)

    def copy_trained_layers_from(self, path: str) -> None:
        """Copy matching layers from a weights file or a solver snapshot."""
        layers = read_layer_weights(path)
        self.load_layer_weights(layers, source=path)

    def share_trained_layers_with(self, other: "Net") -> None:
        """Copy the current parameter values of ``other`` into matching layers of this net."""
        by_name = {layer.name: layer for layer in other.layers}
        for layer in self.layers:
            source = by_name.get(layer.name)
            if source is None:
                continue
            with torch.no_grad():
                for param, src in zip(layer.parameters(), source.parameters()):
                    param.copy_(src.to(param.device))


def read_layer_weights(path: str) -> dict[str, list[torch.Tensor]]:
    """Load ``{layer name: [tensors]}`` from a weights file or a snapshot."""
    source = Path(path)
    if not source.is_file():
        raise ConfigurationError(f"Weights file not found: {path}")
    try:
        payload = torch.load(source, map_location="cpu", weights_only=True)
    except (RuntimeError, OSError, EOFError, pickle.UnpicklingError) as exc:
        raise ConfigurationError(f"Cannot load weights from {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Malformed weights file: {path}")
    layers = payload.get("layers")
    if layers is None and isinstance(payload.get("weights"), dict):
        layers = payload["weights"]
    if not isinstance(layers, dict):
        raise ConfigurationError(f"Malformed weights file: {path}")
    return layers
