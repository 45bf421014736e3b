"""
netbridge — drive a PyTorch-backed layered network from NumPy host scripts

The bridge exposes forward/backward passes, parameter and blob inspection and
per-channel input gradients through string-named commands. Host arrays are
float32 ``[width, height, channels, num]`` column-major arrays; the engine
keeps row-major ``(num, channels, height, width)`` torch tensors.

Usage
-----
>>> import netbridge
>>> netbridge.call("set_mode_cpu")
>>> netbridge.call("init", "deploy.json", "trained.pt")
>>> scores = netbridge.call("forward", [images])
>>> for record in netbridge.call("get_weights"):
...     print(record.layer_names, [w.shape for w in record.weights])
"""

from netbridge.bridge import (
    COMMANDS,
    UNINITIALIZED_KEY,
    BlobRecord,
    Bridge,
    LayerWeights,
    call,
    default_bridge,
)
from netbridge.errors import BridgeError
from netbridge.layout import (
    from_host,
    host_shape,
    legacy_shape,
    prepare_image,
    stack_images,
    to_host,
)
from netbridge.runtime import (
    LAYER_TYPES,
    Blob,
    Context,
    Layer,
    Net,
    load_definition,
    load_weights,
)

__all__ = [
    "COMMANDS",
    "LAYER_TYPES",
    "UNINITIALIZED_KEY",
    "Blob",
    "BlobRecord",
    "Bridge",
    "BridgeError",
    "Context",
    "Layer",
    "LayerWeights",
    "Net",
    "call",
    "default_bridge",
    "from_host",
    "host_shape",
    "legacy_shape",
    "load_definition",
    "load_weights",
    "prepare_image",
    "stack_images",
    "to_host",
]
