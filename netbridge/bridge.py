"""
Command dispatch for host scripts.

Every host call goes through a single entry point, ``call(command, *args)``,
which looks the command up in a handler table. Handlers translate host
arrays into engine tensors, drive the :class:`~netbridge.runtime.Net` and
translate results back.

Usage
-----
>>> from netbridge import call
>>> call("init", "net.json", "weights.pt")
>>> outputs = call("forward", [images])        # images: [W, H, C, N] float32
>>> input_diffs = call("backward", [np.ones_like(outputs[0])])
>>> grads = call("get_gradients", [images], "conv1", [0, 3, 5])
"""

import logging
import random
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch

from netbridge.errors import BridgeError
from netbridge.layout import from_host, host_shape, to_host
from netbridge.runtime import Blob, Context, Net

logger = logging.getLogger(__name__)

UNINITIALIZED_KEY = -2


@dataclass
class BlobRecord:
    diff: np.ndarray
    data: np.ndarray
    blob_names: str


@dataclass
class LayerWeights:
    weights: List[np.ndarray]
    layer_names: str


# command -> (handler method, number of arguments)
_HANDLERS: Dict[str, Tuple[str, int]] = {
    "forward": ("_forward", 1),
    "backward": ("_backward", 1),
    "get_gradients": ("_get_gradients", 3),
    "get_features": ("_get_features", 2),
    "init": ("_init", 2),
    "is_initialized": ("_is_initialized", 0),
    "set_mode_cpu": ("_set_mode_cpu", 0),
    "set_mode_gpu": ("_set_mode_gpu", 0),
    "set_phase_train": ("_set_phase_train", 0),
    "set_phase_test": ("_set_phase_test", 0),
    "set_device": ("_set_device", 1),
    "get_weights": ("_get_weights", 0),
    "get_blobs": ("_get_blobs", 0),
    "get_init_key": ("_get_init_key", 0),
    "reset": ("_reset", 0),
    "read_mean": ("_read_mean", 1),
}

COMMANDS = tuple(_HANDLERS)


class Bridge:
    """Holds the network and engine settings shared by successive host calls."""

    def __init__(self, context: Optional[Context] = None):
        self._ctx = context if context is not None else Context()
        self._net: Optional[Net] = None
        self._init_key = UNINITIALIZED_KEY

    @property
    def context(self) -> Context:
        return self._ctx

    @property
    def net(self) -> Optional[Net]:
        return self._net

    def __call__(self, *args: Any) -> Any:
        if not args:
            logger.error("No API command given")
            raise BridgeError("An API command is required")
        command, rest = args[0], args[1:]
        entry = _HANDLERS.get(command) if isinstance(command, str) else None
        if entry is None:
            logger.error("Unknown command `%s'", command)
            raise BridgeError("API command not recognized")
        method, arity = entry
        if len(rest) != arity:
            logger.error("Only given %d arguments to `%s'", len(rest), command)
            if command == "read_mean":
                raise BridgeError(
                    "Usage: call('read_mean', 'path_to_mean_file')"
                )
            raise BridgeError("Wrong number of arguments")
        handler: Callable[..., Any] = getattr(self, method)
        logger.debug("Dispatching `%s'", command)
        return handler(*rest)

    # -- helpers -------------------------------------------------------------
    def _require_net(self) -> Net:
        if self._net is None:
            raise BridgeError("Initialize the network first by calling init.")
        return self._net

    @staticmethod
    def _cells(value: Any, expected: int, what: str) -> List[np.ndarray]:
        if not isinstance(value, (list, tuple)):
            raise BridgeError(f"The {what} has to be a list of arrays")
        if len(value) != expected:
            raise BridgeError(
                f"The {what} has to hold one array per network blob "
                f"(expected {expected}, got {len(value)})"
            )
        return list(value)

    def _fill_inputs(self, net: Net, bottom: Any, strict_dims: bool) -> None:
        device = self._ctx.device
        cells = self._cells(bottom, len(net.input_blobs), "input")
        for blob, array in zip(net.input_blobs, cells):
            blob.data = from_host(
                array, blob.shape, strict_dims=strict_dims, device=device
            )

    @staticmethod
    def _layer_name(value: Any) -> str:
        if not isinstance(value, str):
            raise BridgeError("The layer name has to be a string")
        return value

    @staticmethod
    def _channel_ids(value: Any) -> List[int]:
        try:
            ids = np.asarray(value, dtype=np.float64).reshape(-1)
        except (TypeError, ValueError) as exc:
            raise BridgeError("The channel ids must be numbers") from exc
        if not np.all(np.isfinite(ids)):
            raise BridgeError("The channel ids must be finite numbers")
        if np.any(ids < 0):
            raise BridgeError("The channel ids must be greater than zero!")
        if ids.size < 1:
            raise BridgeError("Channel list must not be empty.")
        return [int(c + 0.5) for c in ids]

    # -- handlers ------------------------------------------------------------
    def _forward(self, bottom: Sequence[np.ndarray]) -> List[np.ndarray]:
        net = self._require_net()
        self._fill_inputs(net, bottom, strict_dims=False)
        return [to_host(blob.data) for blob in net.forward_prefilled()]

    def _backward(self, top_diff: Sequence[np.ndarray]) -> List[np.ndarray]:
        net = self._require_net()
        device = self._ctx.device
        cells = self._cells(top_diff, len(net.output_blobs), "output diff")
        for blob, array in zip(net.output_blobs, cells):
            blob.diff = from_host(array, blob.shape, device=device)
        try:
            net.backward()
        except RuntimeError as exc:
            raise BridgeError(str(exc)) from exc
        return [to_host(blob.diff) for blob in net.input_blobs]

    def _get_gradients(
        self, bottom: Sequence[np.ndarray], layer_name: Any, channel_ids: Any
    ) -> np.ndarray:
        net = self._require_net()
        name = self._layer_name(layer_name)
        channels = self._channel_ids(channel_ids)
        self._fill_inputs(net, bottom, strict_dims=True)
        try:
            chunks = net.calc_gradients_prefilled(name, channels)
        except KeyError as exc:
            raise BridgeError(
                "Error while calculating. Probably a layer with that name does not exist."
            ) from exc
        except IndexError as exc:
            raise BridgeError(str(exc)) from exc
        return _gather_gradients(chunks, len(channels))

    def _get_features(
        self, bottom: Sequence[np.ndarray], layer_name: Any
    ) -> List[np.ndarray]:
        net = self._require_net()
        name = self._layer_name(layer_name)
        self._fill_inputs(net, bottom, strict_dims=True)
        try:
            tops = net.get_features_prefilled(name)
        except KeyError as exc:
            raise BridgeError(
                "Error while calculating. Probably a layer with that name does not exist."
            ) from exc
        return [to_host(blob.data) for blob in tops]

    def _init(self, param_file: Any, model_file: Any) -> int:
        self._net = Net.from_files(str(param_file), str(model_file), context=self._ctx)
        self._init_key = random.randrange(2**31)
        logger.info(
            "Initialized net '%s' from %s (key %d)",
            self._net.name,
            param_file,
            self._init_key,
        )
        return self._init_key

    def _is_initialized(self) -> bool:
        return self._net is not None

    def _switch_mode(self, mode: str) -> None:
        self._ctx.set_mode(mode)
        if self._net is not None:
            self._net.to(self._ctx.device)
        logger.info("Switched to %s mode", mode)

    def _set_mode_cpu(self) -> None:
        self._switch_mode("cpu")

    def _set_mode_gpu(self) -> None:
        self._switch_mode("gpu")

    def _set_phase_train(self) -> None:
        self._ctx.set_phase("train")

    def _set_phase_test(self) -> None:
        self._ctx.set_phase("test")

    def _set_device(self, device_id: Any) -> None:
        self._ctx.set_device(int(device_id))
        if self._net is not None and self._ctx.mode == "gpu":
            self._net.to(self._ctx.device)

    def _get_weights(self) -> List[LayerWeights]:
        net = self._require_net()
        records: List[LayerWeights] = []
        prev_name = None
        for layer in net.layers:
            if not layer.blobs:
                continue
            weights = [to_host(blob.data) for blob in layer.blobs]
            if records and layer.name == prev_name:
                records[-1].weights.extend(weights)
            else:
                records.append(LayerWeights(weights=weights, layer_names=layer.name))
            prev_name = layer.name
        return records

    def _get_blobs(self) -> List[BlobRecord]:
        net = self._require_net()
        return [
            BlobRecord(diff=to_host(blob.diff), data=to_host(blob.data), blob_names=name)
            for name, blob in zip(net.blob_names, net.blobs)
        ]

    def _get_init_key(self) -> int:
        return self._init_key

    def _reset(self) -> None:
        if self._net is not None:
            self._net = None
            self._init_key = UNINITIALIZED_KEY
            logger.info("Network reset, call init before using it again")

    def _read_mean(self, mean_file: Any) -> np.ndarray:
        logger.info("Loading mean file from %s", mean_file)
        try:
            mean = _load_mean(Path(mean_file))
        except (OSError, ValueError) as exc:
            raise BridgeError("Couldn't read the file") from exc
        warnings.warn(
            "Remember that the mean is stored in [width, height, channels] "
            "format and channels are also BGR!",
            UserWarning,
            stacklevel=3,
        )
        return to_host(mean)


def _load_mean(path: Path) -> torch.Tensor:
    if path.suffix == ".npz":
        with np.load(path) as archive:
            if not archive.files:
                raise ValueError(f"Mean file '{path}' is empty")
            key = "mean" if "mean" in archive.files else archive.files[0]
            values = np.array(archive[key], dtype=np.float32)
    else:
        values = np.asarray(np.load(path), dtype=np.float32)
    if not 1 <= values.ndim <= 4:
        raise ValueError(f"Mean must have 1 to 4 axes, got {values.ndim}")
    if values.ndim == 3:
        # a single (channels, height, width) image
        values = values[None]
    return torch.from_numpy(np.ascontiguousarray(values))


def _gather_gradients(chunks: List[Blob], n_channels: int) -> np.ndarray:
    """Concatenate per-chunk input gradients into a ``[W, H, C, n]`` array."""
    width, height, channels, _ = host_shape(chunks[0].shape)
    per_item = width * height * channels
    out = np.zeros(per_item * n_channels, dtype=np.float32)
    copied = 0
    left = n_channels
    for blob in chunks:
        flat = blob.diff.detach().to(device="cpu", dtype=torch.float32).reshape(-1)
        num_to_copy = min(blob.count, per_item * left)
        out[copied : copied + num_to_copy] = flat[:num_to_copy].numpy()
        copied += num_to_copy
        left = max(0, left - blob.num)
    if copied != per_item * n_channels:
        raise BridgeError(
            f"Gradient size mismatch: copied {copied} of {per_item * n_channels} values"
        )
    return np.asfortranarray(out.reshape((width, height, channels, n_channels), order="F"))


_default_bridge: Optional[Bridge] = None


def default_bridge() -> Bridge:
    global _default_bridge
    if _default_bridge is None:
        _default_bridge = Bridge()
    return _default_bridge


def call(*args: Any) -> Any:
    """Dispatch ``call(command, *args)`` on the process-wide bridge."""
    return default_bridge()(*args)


# --- Minimal test/demo -------------------------------------------------------
if __name__ == "__main__":
    import json
    import tempfile

    logging.basicConfig(level=logging.INFO)
    definition = {
        "inputs": [{"name": "data", "shape": [2, 3, 8, 8]}],
        "layers": [
            {"name": "conv1", "type": "conv2d", "bottom": ["data"],
             "top": ["conv1"], "params": {"num_output": 4, "kernel_size": 3}},
            {"name": "relu1", "type": "relu", "bottom": ["conv1"], "top": ["conv1"]},
        ],
    }
    bridge = Bridge()
    with tempfile.TemporaryDirectory() as tmp:
        param_file = Path(tmp) / "demo.json"
        model_file = Path(tmp) / "demo.pt"
        param_file.write_text(json.dumps(definition), encoding="utf-8")
        torch.save({}, model_file)
        bridge("init", str(param_file), str(model_file))
    images = np.asfortranarray(np.random.rand(8, 8, 3, 2).astype(np.float32))
    out = bridge("forward", [images])
    print("Output shape:", out[0].shape)
    grads = bridge("get_gradients", [images], "conv1", [0, 1, 2])
    print("Gradient shape:", grads.shape)
