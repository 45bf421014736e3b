"""
Host <-> engine array layout conversion.

Five things to be aware of when moving data between the host and the engine:

- the engine stores blobs row-major as ``(num, channels, height, width)``;
- the host works with column-major ``[width, height, channels, num]`` arrays,
  width being the fastest axis, so both sides share the same flat buffer;
- the engine expects BGR channel order, images usually arrive as RGB;
- images need to have the data mean subtracted;
- several images are concatenated along the fourth host axis.

:func:`prepare_image` and :func:`stack_images` take care of the last three.
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F

from netbridge.errors import BridgeError

logger = logging.getLogger(__name__)

HostArray = np.ndarray
Shape = Union[Sequence[int], torch.Size]

_AXIS_NAMES = ("width", "height", "channel size", "batch size")


def legacy_shape(shape: Shape) -> Tuple[int, int, int, int]:
    """Return the ``(num, channels, height, width)`` view of an engine shape."""
    dims = [int(d) for d in shape]
    if len(dims) > 4:
        raise ValueError(f"Blobs with more than 4 axes are not supported: {dims}")
    dims.extend([1] * (4 - len(dims)))
    return dims[0], dims[1], dims[2], dims[3]


def host_shape(shape: Shape) -> Tuple[int, int, int, int]:
    num, channels, height, width = legacy_shape(shape)
    return width, height, channels, num


def to_host(tensor: Union[torch.Tensor, np.ndarray]) -> HostArray:
    """Copy an engine tensor into a float32 ``[W, H, C, N]`` Fortran array."""
    if isinstance(tensor, torch.Tensor):
        values = tensor.detach().to(device="cpu", dtype=torch.float32).numpy()
    else:
        values = np.asarray(tensor, dtype=np.float32)
    dims = host_shape(values.shape)
    flat = np.ascontiguousarray(values).reshape(-1)
    return np.array(flat.reshape(dims, order="F"), dtype=np.float32, order="F")


def from_host(
    array: HostArray,
    shape: Shape,
    *,
    strict_dims: bool = False,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """Copy a host array into an engine tensor of the given ``shape``.

    With ``strict_dims`` every host axis is checked against the blob, otherwise
    only the element count has to match and elements are read in Fortran order.
    Trailing singleton host axes may be omitted.
    """
    if not isinstance(array, np.ndarray) or array.dtype != np.float32:
        raise BridgeError("netbridge requires single-precision float point data")
    count = int(np.prod(legacy_shape(shape)))
    if strict_dims:
        if array.ndim > 4:
            raise BridgeError(f"Expected at most 4 input axes, got {array.ndim}")
        dims = tuple(array.shape) + (1,) * (4 - array.ndim)
        for axis, (got, expected) in enumerate(zip(dims, host_shape(shape))):
            if got != expected:
                raise BridgeError(
                    f"The {_AXIS_NAMES[axis]} of the input images is wrong! "
                    f"(expected {expected}, got {got})"
                )
    elif array.size != count:
        raise BridgeError(
            "Input size does not match the input size of the network "
            f"(expected {count} elements, got {array.size})"
        )
    flat = np.array(array.reshape(-1, order="F"), dtype=np.float32)
    tensor = torch.from_numpy(flat).reshape(tuple(int(d) for d in shape))
    if device is not None:
        tensor = tensor.to(device)
    return tensor


def prepare_image(
    image: np.ndarray,
    mean: Optional[np.ndarray] = None,
    size: Optional[Tuple[int, int]] = None,
) -> HostArray:
    """Turn an ``[height, width, 3]`` RGB image into a ``[W, H, C]`` BGR host array.

    ``mean`` is either a per-channel BGR vector or an ``[height, width, C]`` BGR
    image matching the (resized) input. ``size`` is ``(height, width)``.
    """
    im = np.asarray(image, dtype=np.float32)
    if im.ndim != 3 or im.shape[2] != 3:
        raise ValueError(f"Expected an [height, width, 3] image, got {im.shape}")
    if size is not None:
        t = torch.from_numpy(np.ascontiguousarray(im.transpose(2, 0, 1)))[None]
        t = F.interpolate(t, size=tuple(size), mode="bilinear", align_corners=False)
        im = t[0].numpy().transpose(1, 2, 0)
    im = im[:, :, ::-1]
    if mean is not None:
        m = np.asarray(mean, dtype=np.float32)
        if m.ndim == 1:
            m = m.reshape(1, 1, -1)
        im = im - m
    return np.asfortranarray(im.transpose(1, 0, 2), dtype=np.float32)


def stack_images(images: Sequence[np.ndarray]) -> HostArray:
    """Concatenate ``[W, H, C]`` host images along the fourth (num) axis."""
    if not images:
        raise ValueError("stack_images needs at least one image")
    first = np.shape(images[0])
    for im in images[1:]:
        if np.shape(im) != first:
            raise ValueError(f"Image shapes differ: {first} vs {np.shape(im)}")
    batch = np.stack([np.asarray(im, dtype=np.float32) for im in images], axis=3)
    return np.asfortranarray(batch)
