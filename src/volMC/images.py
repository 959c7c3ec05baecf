from typing import Union
import numpy as np


class InputImage:
    """
    Read/write access to a stack of 2D pixel buffers.

    The stack is stored as a numpy array indexed `[z, y, x]`. Subclasses decide
    how a stored pixel maps to a raw value and to its red, green and blue
    components.

    Attributes
    ----------
    data : np.ndarray
        Pixel data of shape (`depth`, `height`, `width`).
    """

    data: np.ndarray

    def __init__(self, data: np.ndarray):
        self.data = data

    @property
    def shape(self) -> tuple[int, int, int]:
        """Dimensions of the stack as (`width`, `height`, `depth`)."""
        d, h, w = self.data.shape
        return w, h, d

    def get(self, x: int, y: int, z: int) -> int:
        """Raw stored value at (`x`, `y`, `z`)."""
        return int(self.data[z, y, x])

    def get_rgb(self, x: int, y: int, z: int) -> tuple[int, int, int]:
        raise NotImplementedError

    def get_average(self, x: int, y: int, z: int) -> int:
        raise NotImplementedError

    def set(self, x: int, y: int, z: int, v: int):
        self.data[z, y, x] = v

    def get_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        """Raw values of the slices `z0` to `z1 - 1`, as int64."""
        return self.data[z0:z1].astype("int64")

    def get_rgb_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        """
        Color components of the slices `z0` to `z1 - 1`.

        Returns
        -------
        np.ndarray[np.integer]
            Array of shape (`3`, `z1 - z0`, `height`, `width`) holding the red,
            green and blue components.
        """
        raise NotImplementedError


class ByteImage(InputImage):
    """Single-channel 8-bit stack. The three color components are the same byte."""

    def get_rgb(self, x: int, y: int, z: int) -> tuple[int, int, int]:
        v = int(self.data[z, y, x])
        return v, v, v

    def get_average(self, x: int, y: int, z: int) -> int:
        return int(self.data[z, y, x])

    def set(self, x: int, y: int, z: int, v: int):
        self.data[z, y, x] = v & 0xFF

    def get_rgb_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        block = self.get_block(z0, z1)
        return np.stack([block, block, block])


class IntImage(InputImage):
    """Stack of colors packed as `0xRRGGBB` integers."""

    def get_rgb(self, x: int, y: int, z: int) -> tuple[int, int, int]:
        v = int(self.data[z, y, x])
        return (v & 0xFF0000) >> 16, (v & 0xFF00) >> 8, v & 0xFF

    def set(self, x: int, y: int, z: int, v: int):
        self.data[z, y, x] = v & 0xFFFFFF

    def get_average(self, x: int, y: int, z: int) -> int:
        r, g, b = self.get_rgb(x, y, z)
        return (r + g + b) // 3

    def get_rgb_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        block = self.get_block(z0, z1)
        return np.stack(
            [(block & 0xFF0000) >> 16, (block & 0xFF00) >> 8, block & 0xFF]
        )


def pack_rgb(rgb: np.ndarray[np.uint8]) -> np.ndarray[np.uint32]:
    """
    Pack an RGB stack into `0xRRGGBB` integers.

    Parameters
    ----------
    rgb : np.ndarray[np.uint8]
        Color stack of shape (`depth`, `height`, `width`, `3`).

    Returns
    -------
    np.ndarray[np.uint32]
        Packed stack of shape (`depth`, `height`, `width`).
    """
    rgb = rgb.astype("uint32")
    return (rgb[..., 0] << 16) | (rgb[..., 1] << 8) | rgb[..., 2]


def as_input_image(image: Union[np.ndarray, InputImage]) -> InputImage:
    """
    Wrap an array into the `InputImage` matching its type.

    Parameters
    ----------
    image : np.ndarray or InputImage
        - `uint8` array of shape (`depth`, `height`, `width`): single-channel stack.
        - integer array (`uint32`, `int32`, `int64`, ...) of the same shape:
          packed `0xRRGGBB` colors.
        - `uint8` array of shape (`depth`, `height`, `width`, `3`): RGB stack,
          packed on the fly.
        An `InputImage` is returned unchanged.

    Returns
    -------
    InputImage
        `ByteImage` or `IntImage` wrapping the data.

    Raises
    ------
    TypeError
        If the array type or shape is not supported.
    """
    if isinstance(image, InputImage):
        return image
    if not isinstance(image, np.ndarray):
        raise TypeError(f"Expected a numpy array, got {type(image).__name__}.")
    if image.ndim == 4 and image.shape[3] == 3 and image.dtype == np.uint8:
        return IntImage(pack_rgb(image))
    if image.ndim != 3:
        raise TypeError(
            f"Expected a stack of shape (depth, height, width), got shape {image.shape}."
        )
    if image.dtype == np.uint8:
        return ByteImage(image)
    if np.issubdtype(image.dtype, np.integer) and image.dtype.itemsize >= 4:
        return IntImage(image)
    raise TypeError(
        f"Unsupported image dtype '{image.dtype}'. Use uint8 for gray levels or a 32 bits integer type for packed RGB."
    )
