import math
import numpy as np

from volMC.images import InputImage


class Loader:
    """
    Strategy computing scalar and composited color values of voxels.

    A loader is built by `Volume` each time its configuration changes and keeps
    a private copy of the channel flags and lookup tables it was built with, so
    that it can be read concurrently by several extraction workers.

    Attributes
    ----------
    image : InputImage
        Backing pixel storage.
    channels : tuple[bool, bool, bool]
        Enabled red, green and blue channels.
    luts : np.ndarray[np.integer]
        Red, green, blue and alpha lookup tables, shape (`4`, `256`).
    """

    image: InputImage
    channels: tuple[bool, bool, bool]
    luts: np.ndarray[np.integer]

    def __init__(
        self,
        image: InputImage,
        channels: tuple[bool, bool, bool],
        luts: np.ndarray[np.integer],
    ):
        self.image = image
        self.channels = tuple(bool(c) for c in channels)
        self.luts = np.array(luts, dtype="int64")
        self.luts.flags.writeable = False

    def load(self, x: int, y: int, z: int) -> int:
        """Scalar value at (`x`, `y`, `z`), no bounds check."""
        return self.image.get(x, y, z)

    def load_composited(self, x: int, y: int, z: int) -> int:
        """Color at (`x`, `y`, `z`) after the lookup tables, no bounds check."""
        raise NotImplementedError

    def load_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        """Scalar values of the slices `z0` to `z1 - 1`, consistent with `load`."""
        return self.image.get_block(z0, z1)

    def write_no_check(self, x: int, y: int, z: int, v: int):
        self.image.set(x, y, z, v)

    def write(self, x: int, y: int, z: int, v: int):
        """Store `v` at (`x`, `y`, `z`); writes outside of the stack are dropped."""
        w, h, d = self.image.shape
        if 0 <= x < w and 0 <= y < h and 0 <= z < d:
            self.write_no_check(x, y, z, v)

    def _average(self, values) -> int:
        # Unweighted mean over the enabled channels
        total = 0
        count = 0
        for enabled, value in zip(self.channels, values):
            if enabled:
                total += value
                count += 1
        return total // count if count else 0


class PlainLoader(Loader):
    """
    Loader returning the raw value of a single channel.

    Only used with identity lookup tables, hence `load_composited` equals `load`.
    """

    channel: int

    def __init__(
        self,
        image: InputImage,
        channels: tuple[bool, bool, bool],
        luts: np.ndarray[np.integer],
        channel: int = 0,
    ):
        super().__init__(image, channels, luts)
        self.channel = channel

    def load(self, x: int, y: int, z: int) -> int:
        return self.image.get_rgb(x, y, z)[self.channel]

    def load_composited(self, x: int, y: int, z: int) -> int:
        return self.image.get_rgb(x, y, z)[self.channel]

    def load_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        return self.image.get_rgb_block(z0, z1)[self.channel]


class CompositedLoader(Loader):
    """
    Loader packing the looked-up channels into an ARGB integer.

    The alpha byte is the alpha table entry of the average raw value of the
    enabled channels. `load` returns the raw stored value.
    """

    def _composite(self, r: int, g: int, b: int, a: int) -> int:
        return (a << 24) | (r << 16) | (g << 8) | b

    def _lookup(self, rgb) -> tuple[int, int, int]:
        r_lut, g_lut, b_lut, _ = self.luts
        r = int(r_lut[rgb[0]]) if self.channels[0] else 0
        g = int(g_lut[rgb[1]]) if self.channels[1] else 0
        b = int(b_lut[rgb[2]]) if self.channels[2] else 0
        return r, g, b

    def load_composited(self, x: int, y: int, z: int) -> int:
        rgb = self.image.get_rgb(x, y, z)
        r, g, b = self._lookup(rgb)
        a = int(self.luts[3][self._average(rgb)])
        return self._composite(r, g, b, a)


class SaturatedCompositedLoader(CompositedLoader):
    """
    Composited loader stretching the looked-up channels so that the brightest
    one reaches 255. The alpha byte is computed as in `CompositedLoader`.
    """

    def load_composited(self, x: int, y: int, z: int) -> int:
        rgb = self.image.get_rgb(x, y, z)
        r, g, b = self._lookup(rgb)
        a = int(self.luts[3][self._average(rgb)])
        max_c = max(r, g, b)
        scale = 0.0 if max_c == 0 else 255.0 / max_c
        r, g, b = (min(255, math.floor(scale * c + 0.5)) for c in (r, g, b))
        return self._composite(r, g, b, a)


class AverageLoader(Loader):
    """
    Loader averaging the enabled channels into a single byte.

    `load` averages the raw channel values, `load_composited` averages the
    looked-up ones. Disabled channels are excluded from both the sum and the
    count.
    """

    def load(self, x: int, y: int, z: int) -> int:
        return self._average(self.image.get_rgb(x, y, z))

    def load_composited(self, x: int, y: int, z: int) -> int:
        rgb = self.image.get_rgb(x, y, z)
        return self._average(int(lut[c]) for lut, c in zip(self.luts[:3], rgb))

    def load_block(self, z0: int, z1: int) -> np.ndarray[np.integer]:
        rgb = self.image.get_rgb_block(z0, z1)
        mask = np.array(self.channels)
        count = np.count_nonzero(mask)
        if count == 0:
            return np.zeros(rgb.shape[1:], dtype="int64")
        return rgb[mask].sum(axis=0) // count
