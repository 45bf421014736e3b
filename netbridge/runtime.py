"""
runtime.py — a layered network on top of PyTorch

The network is described as a list of named layers reading and writing named
blobs, the way the host side expects to inspect it. PyTorch does all of the
actual work: layer kernels come from ``torch.nn.functional`` and gradients
from autograd. This module only keeps the bookkeeping of which tensor is which
blob and which parameters belong to which layer.

Network definition
------------------
>>> definition = {
...     "inputs": [{"name": "data", "shape": [2, 3, 8, 8]}],
...     "layers": [
...         {"name": "conv1", "type": "conv2d", "bottom": ["data"],
...          "top": ["conv1"], "params": {"num_output": 4, "kernel_size": 3}},
...         {"name": "relu1", "type": "relu", "bottom": ["conv1"], "top": ["conv1"]},
...     ],
... }
>>> net = Net(definition)
>>> net.input_blobs[0].data = torch.randn(2, 3, 8, 8)
>>> [tuple(b.data.shape) for b in net.forward_prefilled()]
[(2, 4, 6, 6)]

A top named like one of its bottoms makes the layer in-place: the blob keeps
its name and now refers to the layer output.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F

from netbridge.layout import legacy_shape

logger = logging.getLogger(__name__)

TensorLike = Union[torch.Tensor, np.ndarray, float, int]
PathLike = Union[str, os.PathLike]

MODES = ("cpu", "gpu")
PHASES = ("train", "test")

_LAYER_ALIASES = {
    "convolution": "conv2d",
    "innerproduct": "inner_product",
    "add": "eltwise_sum",
}

LAYER_TYPES = frozenset(
    {
        "conv2d",
        "inner_product",
        "relu",
        "sigmoid",
        "tanh",
        "softmax",
        "max_pool",
        "avg_pool",
        "dropout",
        "batch_norm",
        "concat",
        "eltwise_sum",
        "clamp",
        "flatten",
        "reshape",
        "transpose",
    }
)


def _to_tensor(
    x: TensorLike,
    dtype: Optional[torch.dtype] = None,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    if isinstance(x, torch.Tensor):
        t = x
    elif isinstance(x, np.ndarray):
        t = torch.from_numpy(x)
    elif isinstance(x, (float, int)):
        t = torch.tensor(x)
    else:
        raise TypeError(f"Unsupported tensor-like type: {type(x)}")
    if dtype is not None and device is not None:
        t = t.to(dtype=dtype, device=device)
    elif dtype is not None:
        t = t.to(dtype)
    elif device is not None:
        t = t.to(device)
    return t


class Context:
    """Engine-wide settings: compute mode, device id and phase.

    Defaults are read from ``NETBRIDGE_MODE`` and ``NETBRIDGE_DEVICE_ID``.
    """

    def __init__(
        self,
        mode: Optional[str] = None,
        device_id: Optional[int] = None,
        phase: str = "test",
    ):
        if device_id is None:
            device_id = int(os.environ.get("NETBRIDGE_DEVICE_ID", "0"))
        self._device_id = 0
        self._mode = "cpu"
        self._phase = "test"
        self.set_device(device_id)
        self.set_mode(mode or os.environ.get("NETBRIDGE_MODE", "cpu"))
        self.set_phase(phase)

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def device_id(self) -> int:
        return self._device_id

    @property
    def device(self) -> torch.device:
        if self._mode == "gpu":
            return torch.device("cuda", self._device_id)
        return torch.device("cpu")

    def set_mode(self, mode: str) -> None:
        mode = mode.lower()
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}', expected one of {MODES}")
        if mode == "gpu":
            self._check_gpu(self._device_id)
        self._mode = mode

    def set_phase(self, phase: str) -> None:
        phase = phase.lower()
        if phase not in PHASES:
            raise ValueError(f"Unknown phase '{phase}', expected one of {PHASES}")
        self._phase = phase

    def set_device(self, device_id: int) -> None:
        device_id = int(device_id)
        if device_id < 0:
            raise ValueError(f"Device id must be non-negative, got {device_id}")
        if self._mode == "gpu":
            self._check_gpu(device_id)
        self._device_id = device_id

    @staticmethod
    def _check_gpu(device_id: int) -> None:
        if not torch.cuda.is_available():
            raise RuntimeError("GPU mode requested but CUDA is not available")
        if device_id >= torch.cuda.device_count():
            raise RuntimeError(
                f"CUDA device {device_id} requested but only "
                f"{torch.cuda.device_count()} device(s) found"
            )


class Blob:
    """A named engine tensor together with its gradient."""

    def __init__(self, data: torch.Tensor, diff: Optional[torch.Tensor] = None):
        self.data = data
        self.diff = diff if diff is not None else torch.zeros_like(data.detach())

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(int(d) for d in self.data.shape)

    @property
    def num(self) -> int:
        return legacy_shape(self.shape)[0]

    @property
    def channels(self) -> int:
        return legacy_shape(self.shape)[1]

    @property
    def height(self) -> int:
        return legacy_shape(self.shape)[2]

    @property
    def width(self) -> int:
        return legacy_shape(self.shape)[3]

    @property
    def count(self) -> int:
        return int(self.data.numel())

    def to(self, device: torch.device) -> None:
        trainable = self.data.is_leaf and self.data.requires_grad
        self.data = self.data.detach().to(device)
        if trainable:
            self.data.requires_grad_(True)
        self.diff = self.diff.detach().to(device)

    def __repr__(self) -> str:  # pragma: no cover (debug aid)
        return f"Blob(shape={self.shape})"


@dataclass
class Layer:
    name: str
    type: str
    bottom: List[str]
    top: List[str]
    attrs: Dict[str, Any]
    blobs: List[Blob] = field(default_factory=list)


def load_definition(path: PathLike) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as fp:
        return json.load(fp)


def load_weights(path: PathLike) -> Dict[str, List[torch.Tensor]]:
    """Read trained parameters as ``layer name -> [tensor, ...]``.

    ``.npz`` archives use ``"<layer>/<index>"`` keys; anything else is read with
    ``torch.load`` and must hold a mapping of layer names to tensors or lists
    of tensors.
    """
    path = Path(path)
    if path.suffix == ".npz":
        grouped: Dict[str, Dict[int, torch.Tensor]] = {}
        with np.load(path) as archive:
            for key in archive.files:
                name, _, index = key.rpartition("/")
                if not name or not index.isdigit():
                    raise ValueError(
                        f"Malformed weight key '{key}', expected '<layer>/<index>'"
                    )
                value = np.array(archive[key], dtype=np.float32)
                grouped.setdefault(name, {})[int(index)] = torch.from_numpy(value)
        return {
            name: [blobs[i] for i in sorted(blobs)] for name, blobs in grouped.items()
        }
    state = torch.load(path, map_location="cpu", weights_only=True)
    if not isinstance(state, dict):
        raise ValueError(f"Weights file '{path}' does not hold a mapping")
    weights: Dict[str, List[torch.Tensor]] = {}
    for name, value in state.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        weights[str(name)] = [_to_tensor(v, torch.float32) for v in values]
    return weights


class Net:
    """A network of named layers and blobs executed with PyTorch."""

    def __init__(
        self,
        definition: Union[Dict[str, Any], PathLike],
        context: Optional[Context] = None,
    ):
        if not isinstance(definition, dict):
            definition = load_definition(definition)
        self._ctx = context if context is not None else Context()
        self.name = str(definition.get("name", ""))
        self._blobs: Dict[str, Blob] = {}
        self._layers: List[Layer] = []
        self._input_names: List[str] = []
        self._output_names: List[str] = []
        self._forwarded = False
        # leaf tensors fed to the last run; in-place layers may rebind the input blobs
        self._input_leaves: List[torch.Tensor] = []
        self._build(definition)

    @classmethod
    def from_files(
        cls,
        param_file: PathLike,
        model_file: Optional[PathLike] = None,
        context: Optional[Context] = None,
    ) -> "Net":
        net = cls(param_file, context=context)
        if model_file is not None:
            net.copy_trained_layers_from(model_file)
        return net

    # -- structure -----------------------------------------------------------
    @property
    def context(self) -> Context:
        return self._ctx

    @property
    def input_names(self) -> List[str]:
        return list(self._input_names)

    @property
    def output_names(self) -> List[str]:
        return list(self._output_names)

    @property
    def input_blobs(self) -> List[Blob]:
        return [self._blobs[n] for n in self._input_names]

    @property
    def output_blobs(self) -> List[Blob]:
        return [self._blobs[n] for n in self._output_names]

    @property
    def blobs(self) -> List[Blob]:
        return list(self._blobs.values())

    @property
    def blob_names(self) -> List[str]:
        return list(self._blobs)

    @property
    def layers(self) -> List[Layer]:
        return list(self._layers)

    @property
    def layer_names(self) -> List[str]:
        return [layer.name for layer in self._layers]

    def blob(self, name: str) -> Blob:
        return self._blobs[name]

    def layer_index(self, name: str) -> int:
        for index, layer in enumerate(self._layers):
            if layer.name == name:
                return index
        raise KeyError(name)

    def _build(self, definition: Dict[str, Any]) -> None:
        device = self._ctx.device
        inputs = definition.get("inputs") or []
        if not inputs:
            raise ValueError("Network definition declares no inputs")
        for spec in inputs:
            name = spec["name"]
            shape = [int(d) for d in spec["shape"]]
            self._blobs[name] = Blob(torch.zeros(shape, device=device))
            self._input_names.append(name)

        generator = torch.Generator().manual_seed(int(definition.get("seed", 0)))
        available: Dict[str, None] = {}
        with torch.no_grad():
            for index, spec in enumerate(definition.get("layers", [])):
                layer_type = str(spec.get("type", "")).lower()
                layer = Layer(
                    name=spec.get("name") or f"layer{index}",
                    type=_LAYER_ALIASES.get(layer_type, layer_type),
                    bottom=list(spec.get("bottom", [])),
                    top=list(spec.get("top", [])),
                    attrs=dict(spec.get("params", {})),
                )
                if layer.type not in LAYER_TYPES:
                    raise ValueError(
                        f"Layer '{layer.name}' has unknown type '{spec.get('type')}'"
                    )
                if not layer.top:
                    raise ValueError(f"Layer '{layer.name}' produces no top blob")
                for bottom in layer.bottom:
                    if bottom not in self._blobs:
                        raise ValueError(
                            f"Layer '{layer.name}' consumes unknown blob '{bottom}'"
                        )
                xs = [self._blobs[b].data for b in layer.bottom]
                layer.blobs = [
                    Blob(t.to(device).requires_grad_(trainable))
                    for t, trainable in _init_params(layer, xs, generator)
                ]
                ys = _eval_layer(layer, xs, "test")
                if len(ys) != len(layer.top):
                    raise ValueError(
                        f"Layer '{layer.name}' produces {len(ys)} blob(s) "
                        f"but names {len(layer.top)}"
                    )
                for top, y in zip(layer.top, ys):
                    self._blobs[top] = Blob(torch.zeros_like(y))
                for bottom in layer.bottom:
                    available.pop(bottom, None)
                for top in layer.top:
                    available[top] = None
                self._layers.append(layer)

        outputs = definition.get("outputs")
        if outputs is None:
            outputs = list(available)
        for name in outputs:
            if name not in self._blobs:
                raise ValueError(f"Output '{name}' is not a blob of the network")
        self._output_names = list(outputs)
        logger.debug(
            "Built net '%s': %d layers, %d blobs, inputs=%s outputs=%s",
            self.name,
            len(self._layers),
            len(self._blobs),
            self._input_names,
            self._output_names,
        )

    # -- parameters ----------------------------------------------------------
    def _param_blobs(self) -> Iterator[Blob]:
        for layer in self._layers:
            yield from layer.blobs

    def copy_trained_layers_from(self, path: PathLike) -> None:
        """Copy parameters from a weights file into layers with the same name."""
        self.copy_trained_layers(load_weights(path))
        logger.info("Loaded trained layers from %s", path)

    def copy_trained_layers(self, weights: Dict[str, Sequence[TensorLike]]) -> None:
        """Copy ``layer name -> [tensor, ...]`` into the net.

        An entry goes into the first layer with that name. When several
        layers share the name and the entry holds the parameters of all of
        them, as ``get_weights`` reports them, the values are spread over
        those layers in order.
        """
        for name, values in weights.items():
            targets = [layer for layer in self._layers if layer.name == name]
            if not targets:
                logger.info("Ignoring source layer %s", name)
                continue
            values = list(values)
            if len(values) != len(targets[0].blobs):
                if len(values) != sum(len(layer.blobs) for layer in targets):
                    raise ValueError(
                        f"Layer '{name}' expects {len(targets[0].blobs)} parameter "
                        f"blob(s), got {len(values)}"
                    )
            else:
                targets = targets[:1]
            blobs = [blob for layer in targets for blob in layer.blobs]
            for blob, value in zip(blobs, values):
                t = _to_tensor(value, torch.float32)
                if legacy_shape(t.shape) != legacy_shape(blob.shape):
                    raise ValueError(
                        f"Incompatible shape for layer '{name}': expected "
                        f"{blob.shape}, got {tuple(t.shape)}"
                    )
                trainable = blob.data.requires_grad
                blob.data = (
                    t.reshape(blob.shape)
                    .to(blob.data.device)
                    .clone()
                    .requires_grad_(trainable)
                )
                blob.diff = torch.zeros_like(blob.data.detach())
        self._forwarded = False

    def to(self, device: torch.device) -> "Net":
        for blob in self._blobs.values():
            blob.to(device)
        for blob in self._param_blobs():
            blob.to(device)
        self._forwarded = False
        return self

    # -- execution -----------------------------------------------------------
    def _run(self, until: Optional[int] = None) -> None:
        phase = self._ctx.phase
        self._input_leaves = []
        for name in self._input_names:
            blob = self._blobs[name]
            blob.data = blob.data.detach().requires_grad_(True)
            self._input_leaves.append(blob.data)
        for index, layer in enumerate(self._layers):
            xs = [self._blobs[b].data for b in layer.bottom]
            ys = _eval_layer(layer, xs, phase)
            for top, y in zip(layer.top, ys):
                if y.requires_grad:
                    y.retain_grad()
                self._blobs[top].data = y
            if until is not None and index == until:
                break
        self._forwarded = until is None

    def forward_prefilled(self) -> List[Blob]:
        """Run every layer on the current input blobs."""
        self._run()
        return self.output_blobs

    def backward(self) -> None:
        """Back-propagate the diffs stored in the output blobs.

        Every blob and parameter diff is overwritten.
        """
        if not self._forwarded:
            raise RuntimeError("backward() needs a complete forward pass first")
        outputs = self.output_blobs
        tracked = [
            b
            for b in list(self._blobs.values()) + list(self._param_blobs())
            if b.data.requires_grad
        ]
        for blob in tracked:
            blob.data.grad = None
        for leaf in self._input_leaves:
            leaf.grad = None
        roots = [b.data for b in outputs if b.data.requires_grad]
        grads = [
            b.diff.to(device=b.data.device, dtype=b.data.dtype)
            for b in outputs
            if b.data.requires_grad
        ]
        if roots:
            torch.autograd.backward(roots, grad_tensors=grads, retain_graph=True)
        output_ids = {id(b) for b in outputs}
        for blob in list(self._blobs.values()) + list(self._param_blobs()):
            if id(blob) in output_ids:
                continue
            grad = blob.data.grad if blob.data.requires_grad else None
            if grad is None:
                blob.diff = torch.zeros_like(blob.data.detach())
            else:
                blob.diff = grad.detach().clone()
        # input diffs are taken on the fed tensors, even when a layer rebinds the blob
        for name, leaf in zip(self._input_names, self._input_leaves):
            grad = leaf.grad
            self._blobs[name].diff = (
                torch.zeros_like(leaf.detach()) if grad is None else grad.detach().clone()
            )

    def get_features_prefilled(self, layer_name: str) -> List[Blob]:
        """Run forward up to ``layer_name`` and return that layer's top blobs."""
        index = self.layer_index(layer_name)
        self._run(until=index)
        return [self._blobs[t] for t in self._layers[index].top]

    def calc_gradients_prefilled(
        self, layer_name: str, channels: Sequence[int]
    ) -> List[Blob]:
        """Input gradients of single channels of a layer's first top blob.

        Channels are processed ``num`` at a time: batch item ``k`` of a chunk
        carries the gradient of the spatially summed activation of
        ``chunk[k]`` with respect to input item ``k``. One blob is returned per
        chunk, its diff holding the gradient.
        """
        index = self.layer_index(layer_name)
        channels = [int(c) for c in channels]
        self._run(until=index)
        top = self._blobs[self._layers[index].top[0]].data
        source = self._input_leaves[0]
        if top.dim() < 2:
            raise ValueError(f"Layer '{layer_name}' output has no channel axis")
        num, available = int(top.shape[0]), int(top.shape[1])
        for channel in channels:
            if channel < 0 or channel >= available:
                raise IndexError(
                    f"Channel {channel} out of range for layer '{layer_name}' "
                    f"with {available} channels"
                )
        results: List[Blob] = []
        for start in range(0, len(channels), num):
            chunk = channels[start : start + num]
            seed = torch.zeros_like(top.detach())
            for slot, channel in enumerate(chunk):
                seed[slot, channel] = 1.0
            grad = None
            if top.requires_grad:
                (grad,) = torch.autograd.grad(
                    top, source, grad_outputs=seed, retain_graph=True, allow_unused=True
                )
            if grad is None:
                grad = torch.zeros_like(source.detach())
            results.append(Blob(source.detach().clone(), grad.detach()))
        logger.debug(
            "Computed %d gradient chunk(s) for layer '%s'", len(results), layer_name
        )
        return results


def _pair(value: Any) -> Tuple[int, int]:
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ValueError(f"Expected 2 values, got {value}")
        return int(value[0]), int(value[1])
    return int(value), int(value)


def _pad_arg(
    padding: Union[str, Tuple[int, int, int, int]],
    x: torch.Tensor,
    kernel: Tuple[int, int],
    strides: Tuple[int, int],
) -> Tuple[int, int, int, int]:
    if isinstance(padding, str):
        if padding in ("valid", "none"):
            return (0, 0, 0, 0)
        if padding in ("same-upper", "same-lower", "same"):
            h, w = x.shape[-2], x.shape[-1]
            sh, sw = strides
            kh, kw = kernel
            out_h = math.ceil(h / sh)
            out_w = math.ceil(w / sw)
            pad_h = max((out_h - 1) * sh + kh - h, 0)
            pad_w = max((out_w - 1) * sw + kw - w, 0)
            # the extra pixel goes to the bottom/right unless "same-lower"
            top = pad_h // 2 if padding != "same-lower" else pad_h - pad_h // 2
            bottom = pad_h - top
            left = pad_w // 2 if padding != "same-lower" else pad_w - pad_w // 2
            right = pad_w - left
            return (left, right, top, bottom)
        raise ValueError(f"Unsupported padding string: {padding}")
    if len(padding) != 4:
        raise ValueError("padding must be 4-tuple (left, right, top, bottom)")
    return tuple(int(p) for p in padding)


def _explicit_pad(pad: Any) -> bool:
    return isinstance(pad, str) or (isinstance(pad, (list, tuple)) and len(pad) == 4)


def _init_params(
    layer: Layer, xs: List[torch.Tensor], generator: torch.Generator
) -> List[Tuple[torch.Tensor, bool]]:
    """Initial parameter tensors of a layer, paired with their trainability."""
    attrs = layer.attrs
    std = float(attrs.get("weight_std", 0.01))
    if layer.type == "conv2d":
        channels = int(xs[0].shape[1])
        groups = int(attrs.get("group", 1))
        if channels % groups:
            raise ValueError(
                f"Layer '{layer.name}': {channels} channels not divisible by {groups} groups"
            )
        out = int(attrs["num_output"])
        kh, kw = _pair(attrs["kernel_size"])
        params = [(torch.randn(out, channels // groups, kh, kw, generator=generator) * std, True)]
        if attrs.get("bias_term", True):
            params.append((torch.zeros(out), True))
        return params
    if layer.type == "inner_product":
        fan_in = int(np.prod(xs[0].shape[1:]))
        out = int(attrs["num_output"])
        params = [(torch.randn(out, fan_in, generator=generator) * std, True)]
        if attrs.get("bias_term", True):
            params.append((torch.zeros(out), True))
        return params
    if layer.type == "batch_norm":
        channels = int(xs[0].shape[1])
        params = [(torch.zeros(channels), False), (torch.ones(channels), False)]
        if attrs.get("affine", True):
            params.extend([(torch.ones(channels), True), (torch.zeros(channels), True)])
        return params
    return []


def _eval_layer(layer: Layer, xs: List[torch.Tensor], phase: str) -> List[torch.Tensor]:
    op = layer.type
    attrs = layer.attrs
    ps = [b.data for b in layer.blobs]
    if op == "conv2d":
        x, w = xs[0], ps[0]
        b = ps[1] if len(ps) > 1 else None
        strides = _pair(attrs.get("stride", 1))
        dilations = _pair(attrs.get("dilation", 1))
        groups = int(attrs.get("group", 1))
        pad = attrs.get("pad", 0)
        padding = (0, 0)
        if _explicit_pad(pad):
            x = F.pad(x, _pad_arg(pad, x, (w.shape[-2], w.shape[-1]), strides))
        else:
            padding = _pair(pad)
        return [
            F.conv2d(
                x, w, bias=b, stride=strides, padding=padding,
                dilation=dilations, groups=groups,
            )
        ]
    if op == "inner_product":
        w = ps[0]
        b = ps[1] if len(ps) > 1 else None
        return [F.linear(xs[0].flatten(1), w, b)]
    if op == "relu":
        slope = float(attrs.get("negative_slope", 0.0))
        if slope:
            return [F.leaky_relu(xs[0], negative_slope=slope)]
        return [F.relu(xs[0])]
    if op == "sigmoid":
        return [torch.sigmoid(xs[0])]
    if op == "tanh":
        return [torch.tanh(xs[0])]
    if op == "softmax":
        return [F.softmax(xs[0], dim=int(attrs.get("axis", 1)))]
    if op in ("max_pool", "avg_pool"):
        x = xs[0]
        if attrs.get("global_pooling"):
            window = (int(x.shape[-2]), int(x.shape[-1]))
        else:
            window = _pair(attrs["kernel_size"])
        strides = _pair(attrs.get("stride", 1))
        ceil_mode = bool(attrs.get("ceil_mode", False))
        pad = attrs.get("pad", 0)
        padding = (0, 0)
        if _explicit_pad(pad):
            fill = float("-inf") if op == "max_pool" else 0.0
            x = F.pad(x, _pad_arg(pad, x, window, strides), value=fill)
        else:
            padding = _pair(pad)
        if op == "max_pool":
            return [F.max_pool2d(x, window, strides, padding, ceil_mode=ceil_mode)]
        return [F.avg_pool2d(x, window, strides, padding, ceil_mode=ceil_mode)]
    if op == "dropout":
        ratio = float(attrs.get("ratio", 0.5))
        return [F.dropout(xs[0], p=ratio, training=phase == "train")]
    if op == "batch_norm":
        x = xs[0]
        mean, variance = ps[0], ps[1]
        scale = ps[2] if len(ps) > 2 else None
        bias = ps[3] if len(ps) > 3 else None
        eps = float(attrs.get("eps", 1e-5))
        if phase == "train" and not attrs.get("use_global_stats", False):
            # batch statistics; the stored mean/variance follow them in place
            momentum = float(attrs.get("momentum", 0.1))
            return [
                F.batch_norm(
                    x, mean, variance, scale, bias,
                    training=True, momentum=momentum, eps=eps,
                )
            ]
        return [F.batch_norm(x, mean, variance, scale, bias, training=False, eps=eps)]
    if op == "concat":
        return [torch.cat(xs, dim=int(attrs.get("axis", 1)))]
    if op == "eltwise_sum":
        coeffs = attrs.get("coeff") or [1.0] * len(xs)
        if len(coeffs) != len(xs):
            raise ValueError(f"Layer '{layer.name}' needs one coefficient per bottom")
        out = xs[0] * float(coeffs[0])
        for x, c in zip(xs[1:], coeffs[1:]):
            out = out + x * float(c)
        return [out]
    if op == "clamp":
        lo, hi = attrs.get("min"), attrs.get("max")
        if lo is None and hi is None:
            return [xs[0]]
        return [torch.clamp(xs[0], min=lo, max=hi)]
    if op == "flatten":
        return [xs[0].flatten(int(attrs.get("axis", 1)))]
    if op == "reshape":
        x = xs[0]
        # 0 copies the input dimension, -1 is inferred
        shape = [
            int(x.shape[i]) if int(d) == 0 else int(d)
            for i, d in enumerate(attrs["shape"])
        ]
        return [torch.reshape(x, shape)]
    if op == "transpose":
        perm = attrs.get("permutation")
        if perm is None:
            perm = list(reversed(range(xs[0].ndim)))
        return [xs[0].permute(*perm)]

    raise NotImplementedError(f"Layer type not implemented: {op}")
