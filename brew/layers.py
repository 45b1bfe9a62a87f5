"""
Layers of the computation graph.

A layer reads its bottom blobs and writes its top blobs. Every blob carries ``data`` (forward
values) and ``diff`` (gradient of the objective w.r.t. ``data``). Backward steps are derived with a
local autograd graph built during the forward step:

    forward_blobs:   bottom.data --(compute)--> top.data        (graph kept on the layer)
    backward_blobs:  top.diff --(autograd)--> bottom.diff += d/d(bottom), param.grad += d/d(param)

Bottom diffs accumulate, so a blob consumed by several layers receives the sum of their
contributions. The net seeds every top diff when the producing layer runs forward.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import ClassVar
from typing import Optional
from typing import Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F

from brew.config import LayerDefinition
from brew.errors import ConfigurationError


@dataclass
class Blob:
    """Forward data and backward diff for one named edge of the graph."""

    data: torch.Tensor
    diff: torch.Tensor

    @classmethod
    def empty(cls, device: torch.device) -> "Blob":
        zeros = torch.zeros(0, device=device)
        return cls(data=zeros, diff=zeros.clone())

    def reshape_like(self, tensor: torch.Tensor) -> None:
        self.data = torch.zeros_like(tensor, dtype=torch.float32)
        self.diff = torch.zeros_like(self.data)

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    def count(self) -> int:
        return self.data.numel()


# --------------------------------------------------------------------------------------
# Fillers
# --------------------------------------------------------------------------------------


def fill(
    shape: Sequence[int],
    spec: Optional[dict[str, Any]],
    generator: torch.Generator,
    *,
    fan_in: int = 1,
) -> torch.Tensor:
    """Draw a float32 CPU tensor from a filler spec (constant/gaussian/uniform/xavier/label)."""
    spec = spec or {}
    kind = spec.get("type", "constant")
    size = tuple(int(dim) for dim in shape)
    if kind == "constant":
        return torch.full(size, float(spec.get("value", 0.0)))
    if kind == "gaussian":
        mean = float(spec.get("mean", 0.0))
        std = float(spec.get("std", 1.0))
        return torch.randn(size, generator=generator) * std + mean
    if kind == "uniform":
        low = float(spec.get("min", 0.0))
        high = float(spec.get("max", 1.0))
        return torch.rand(size, generator=generator) * (high - low) + low
    if kind == "xavier":
        scale = math.sqrt(3.0 / max(1, fan_in))
        return torch.rand(size, generator=generator) * (2.0 * scale) - scale
    if kind == "label":
        num_classes = int(spec.get("num_classes", 2))
        if num_classes < 1:
            raise ConfigurationError("label filler requires num_classes >= 1")
        return torch.randint(0, num_classes, size, generator=generator).float()
    raise ConfigurationError(f"Unknown filler type: {kind}")


# --------------------------------------------------------------------------------------
# Registry
# --------------------------------------------------------------------------------------


LAYER_REGISTRY: dict[str, type["Layer"]] = {}


def register_layer(type_name: str) -> Callable[[type["Layer"]], type["Layer"]]:
    """Class decorator registering a layer implementation under ``type_name``."""

    def _register(cls: type["Layer"]) -> type["Layer"]:
        if type_name in LAYER_REGISTRY:
            raise ValueError(f"Layer type registered twice: {type_name}")
        cls.type_name = type_name
        LAYER_REGISTRY[type_name] = cls
        return cls

    return _register


def create_layer(definition: LayerDefinition, *, device: torch.device, data_seed: int) -> "Layer":
    """Instantiate the registered layer class for ``definition.type``."""
    cls = LAYER_REGISTRY.get(definition.type)
    if cls is None:
        known = ", ".join(sorted(LAYER_REGISTRY))
        raise ConfigurationError(
            f"Unknown layer type '{definition.type}' for layer '{definition.name}' (known: {known})"
        )
    return cls(definition, device=device, data_seed=data_seed)


# --------------------------------------------------------------------------------------
# Base layer
# --------------------------------------------------------------------------------------


class Layer(nn.Module):
    """Base class: subclasses implement ``compute`` (and ``setup`` when they own params)."""

    type_name: ClassVar[str] = ""
    num_bottom: ClassVar[Optional[int]] = None
    num_top: ClassVar[Optional[int]] = None
    default_loss_weight: ClassVar[float] = 0.0
    is_data_source: ClassVar[bool] = False

    def __init__(self, definition: LayerDefinition, *, device: torch.device, data_seed: int) -> None:
        super().__init__()
        self.definition = definition
        self.device = device
        self.data_seed = data_seed
        self._inputs: list[torch.Tensor] = []
        self._outputs: list[torch.Tensor] = []

        if self.num_bottom is not None and len(definition.bottom) != self.num_bottom:
            raise ConfigurationError(
                f"{self.type_name} layer '{definition.name}' takes {self.num_bottom} bottom "
                f"blob(s), got {len(definition.bottom)}"
            )
        if self.num_top is not None and len(definition.top) != self.num_top:
            raise ConfigurationError(
                f"{self.type_name} layer '{definition.name}' produces {self.num_top} top "
                f"blob(s), got {len(definition.top)}"
            )

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def param(self) -> dict[str, Any]:
        return self.definition.param

    def setup(self, bottom: Sequence[Blob], generator: torch.Generator) -> None:
        """Create parameters from bottom shapes; default layers own none."""
        del bottom, generator

    def reshape(self, bottom: Sequence[Blob], top: Sequence[Blob]) -> None:
        """Shape top blobs by running ``compute`` once on the current bottom data."""
        with torch.no_grad():
            outputs = self.compute(*[blob.data for blob in bottom])
        for blob, output in zip(top, outputs):
            blob.reshape_like(output)

    def compute(self, *inputs: torch.Tensor) -> Sequence[torch.Tensor]:
        raise NotImplementedError

    def allow_backward(self, bottom_index: int) -> bool:
        """Whether gradients may flow into the given bottom."""
        del bottom_index
        return True

    def forward_blobs(
        self,
        bottom: Sequence[Blob],
        top: Sequence[Blob],
        need_backward: Optional[Sequence[bool]] = None,
    ) -> None:
        inputs: list[torch.Tensor] = []
        for index, blob in enumerate(bottom):
            tensor = blob.data.detach()
            wants_grad = need_backward[index] if need_backward is not None else self.allow_backward(index)
            if wants_grad and tensor.is_floating_point():
                tensor.requires_grad_(True)
            inputs.append(tensor)

        with torch.enable_grad():
            outputs = list(self.compute(*inputs))

        self._inputs = inputs
        self._outputs = outputs
        for blob, output in zip(top, outputs):
            blob.data = output.detach()

    def backward_blobs(
        self,
        top: Sequence[Blob],
        propagate_down: Sequence[bool],
        bottom: Sequence[Blob],
    ) -> None:
        outputs: list[torch.Tensor] = []
        grads: list[torch.Tensor] = []
        for blob, output in zip(top, self._outputs):
            if output.requires_grad:
                outputs.append(output)
                grads.append(blob.diff.to(dtype=output.dtype).reshape(output.shape))
        if not outputs:
            return

        torch.autograd.backward(outputs, grads)
        for blob, tensor, needed in zip(bottom, self._inputs, propagate_down):
            if needed and tensor.grad is not None:
                blob.diff = blob.diff + tensor.grad.reshape(blob.diff.shape)
        self._inputs = []
        self._outputs = []

    def extra_repr(self) -> str:
        return f"name={self.name!r}, type={self.type_name!r}"


# --------------------------------------------------------------------------------------
# Data layers
# --------------------------------------------------------------------------------------


def _declared_tops(layer: Layer) -> list[dict[str, Any]]:
    tops = layer.param.get("tops")
    if not isinstance(tops, list) or len(tops) != len(layer.definition.top):
        raise ConfigurationError(
            f"{layer.type_name} layer '{layer.name}' must declare one 'tops' entry per top blob"
        )
    for entry in tops:
        if not isinstance(entry, dict) or not entry.get("shape"):
            raise ConfigurationError(
                f"{layer.type_name} layer '{layer.name}': every tops entry needs a shape"
            )
    return tops


@register_layer("DummyData")
class DummyDataLayer(Layer):
    """Deterministic synthetic data source.

    param:
        tops: [{shape: [N, D], filler: {type: gaussian, std: 1.0}},
               {shape: [N], filler: {type: label, num_classes: 10}}]
    """

    num_bottom = 0
    is_data_source = True

    def __init__(self, definition: LayerDefinition, *, device: torch.device, data_seed: int) -> None:
        super().__init__(definition, device=device, data_seed=data_seed)
        self.tops = _declared_tops(self)
        self.generator = torch.Generator().manual_seed(data_seed)

    def reseed(self, seed: int) -> None:
        self.data_seed = seed
        self.generator.manual_seed(seed)

    def reshape(self, bottom: Sequence[Blob], top: Sequence[Blob]) -> None:
        del bottom
        for blob, entry in zip(top, self.tops):
            blob.reshape_like(torch.zeros(tuple(entry["shape"]), device=self.device))

    def allow_backward(self, bottom_index: int) -> bool:
        del bottom_index
        return False

    def forward_blobs(self, bottom, top, need_backward=None) -> None:
        del bottom, need_backward
        # Draw on CPU so every device sees the same stream for the same seed.
        for blob, entry in zip(top, self.tops):
            blob.data = fill(entry["shape"], entry.get("filler"), self.generator).to(self.device)
        self._inputs = []
        self._outputs = []


@register_layer("RemoteData")
class RemoteDataLayer(Layer):
    """Data source fed by a running ``brew data_server``.

    param:
        address: "host:port" of the data server
        tops: [{shape: [...]}, ...]   (used to shape the graph before the first batch)
        timeout: seconds to wait for a batch (default 300)
    """

    num_bottom = 0
    is_data_source = True

    def __init__(self, definition: LayerDefinition, *, device: torch.device, data_seed: int) -> None:
        super().__init__(definition, device=device, data_seed=data_seed)
        self.tops = _declared_tops(self)
        address = self.param.get("address")
        if not address:
            raise ConfigurationError(f"RemoteData layer '{self.name}' requires an address")
        self.address = str(address)
        self.timeout = float(self.param.get("timeout", 300.0))
        self._source = None

    def reshape(self, bottom: Sequence[Blob], top: Sequence[Blob]) -> None:
        del bottom
        for blob, entry in zip(top, self.tops):
            blob.reshape_like(torch.zeros(tuple(entry["shape"]), device=self.device))

    def allow_backward(self, bottom_index: int) -> bool:
        del bottom_index
        return False

    def forward_blobs(self, bottom, top, need_backward=None) -> None:
        del bottom, need_backward
        if self._source is None:
            from brew.distributed.data_server import RemoteBatchSource

            self._source = RemoteBatchSource(self.address, timeout=self.timeout)
        tensors = self._source.next_batch()
        if len(tensors) != len(top):
            raise ConfigurationError(
                f"RemoteData layer '{self.name}' expects {len(top)} tensors per batch, "
                f"server sent {len(tensors)}"
            )
        for blob, tensor in zip(top, tensors):
            blob.data = tensor.to(device=self.device, dtype=torch.float32)
        self._inputs = []
        self._outputs = []


# --------------------------------------------------------------------------------------
# Compute layers
# --------------------------------------------------------------------------------------


@register_layer("InnerProduct")
class InnerProductLayer(Layer):
    """Fully connected layer: ``y = x.flatten(axis) @ W^T + b``."""

    num_bottom = 1
    num_top = 1

    def setup(self, bottom: Sequence[Blob], generator: torch.Generator) -> None:
        num_output = int(self.param.get("num_output", 0))
        if num_output <= 0:
            raise ConfigurationError(f"InnerProduct layer '{self.name}' requires num_output > 0")
        self.axis = int(self.param.get("axis", 1))
        shape = bottom[0].shape
        fan_in = int(math.prod(shape[self.axis:])) if len(shape) > self.axis else 1

        weight = fill(
            (num_output, fan_in),
            self.param.get("weight_filler", {"type": "xavier"}),
            generator,
            fan_in=fan_in,
        )
        self.weight = nn.Parameter(weight.to(self.device))
        if bool(self.param.get("bias_term", True)):
            bias = fill((num_output,), self.param.get("bias_filler"), generator, fan_in=fan_in)
            self.bias = nn.Parameter(bias.to(self.device))
        else:
            self.bias = None

    def compute(self, x: torch.Tensor) -> Sequence[torch.Tensor]:
        flat = x.flatten(self.axis)
        return (F.linear(flat, self.weight, self.bias),)


@register_layer("ReLU")
class ReLULayer(Layer):
    num_bottom = 1
    num_top = 1

    def compute(self, x: torch.Tensor) -> Sequence[torch.Tensor]:
        slope = float(self.param.get("negative_slope", 0.0))
        if slope:
            return (F.leaky_relu(x, slope),)
        return (F.relu(x),)


@register_layer("Sigmoid")
class SigmoidLayer(Layer):
    num_bottom = 1
    num_top = 1

    def compute(self, x: torch.Tensor) -> Sequence[torch.Tensor]:
        return (torch.sigmoid(x),)


@register_layer("TanH")
class TanHLayer(Layer):
    num_bottom = 1
    num_top = 1

    def compute(self, x: torch.Tensor) -> Sequence[torch.Tensor]:
        return (torch.tanh(x),)


@register_layer("Softmax")
class SoftmaxLayer(Layer):
    num_bottom = 1
    num_top = 1

    def compute(self, x: torch.Tensor) -> Sequence[torch.Tensor]:
        return (F.softmax(x, dim=int(self.param.get("axis", 1))),)


# --------------------------------------------------------------------------------------
# Loss / metric layers
# --------------------------------------------------------------------------------------


@register_layer("SoftmaxWithLoss")
class SoftmaxWithLossLayer(Layer):
    """Mean cross-entropy of class scores against integer labels."""

    num_bottom = 2
    num_top = 1
    default_loss_weight = 1.0

    def allow_backward(self, bottom_index: int) -> bool:
        # Labels are not differentiable.
        return bottom_index == 0

    def compute(self, scores: torch.Tensor, labels: torch.Tensor) -> Sequence[torch.Tensor]:
        ignore = int(self.param.get("ignore_label", -100))
        loss = F.cross_entropy(scores.flatten(1), labels.reshape(-1).long(), ignore_index=ignore)
        return (loss,)


@register_layer("EuclideanLoss")
class EuclideanLossLayer(Layer):
    """``sum((a - b)^2) / (2 N)``."""

    num_bottom = 2
    num_top = 1
    default_loss_weight = 1.0

    def compute(self, a: torch.Tensor, b: torch.Tensor) -> Sequence[torch.Tensor]:
        diff = a.reshape(a.shape[0], -1) - b.reshape(b.shape[0], -1)
        return ((diff * diff).sum() / a.shape[0] / 2.0,)


@register_layer("Accuracy")
class AccuracyLayer(Layer):
    num_bottom = 2
    num_top = 1

    def allow_backward(self, bottom_index: int) -> bool:
        del bottom_index
        return False

    def compute(self, scores: torch.Tensor, labels: torch.Tensor) -> Sequence[torch.Tensor]:
        top_k = int(self.param.get("top_k", 1))
        flat = scores.flatten(1)
        top_k = max(1, min(top_k, flat.shape[1]))
        predictions = flat.topk(top_k, dim=1).indices
        correct = (predictions == labels.reshape(-1, 1).long()).any(dim=1)
        return (correct.float().mean(),)
