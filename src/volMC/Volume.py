from typing import Iterable, Literal, Union
import threading
import warnings
import numpy as np
import scipy.ndimage as ndi

from volMC.images import InputImage, ByteImage, as_input_image
from volMC.loaders import (
    Loader,
    PlainLoader,
    CompositedLoader,
    SaturatedCompositedLoader,
    AverageLoader,
)

SCALAR = "scalar"
PACKED_COLOR = "packed_color"

# Alpha value written by `Volume.set_alpha_fully_opaque`
OPAQUE_ALPHA = 254

Box = tuple[int, int, int, int]


def identity_lut() -> np.ndarray[np.integer]:
    return np.arange(256, dtype="int64")


class Volume:
    """
    Uniform scalar and color access to a stack of image slices.

    The volume wraps a gray-level (8-bit) or packed RGB stack and reads it
    through a `Loader` strategy chosen from the current configuration: enabled
    channels, channel averaging, saturated rendering and lookup tables. The
    loader is rebuilt on every configuration change and is never chosen per
    sample.

    The data type is `SCALAR` if channels are averaged, or if the lookup tables
    of the enabled channels and of the alpha channel are identities and at most
    one channel is used. Otherwise it is `PACKED_COLOR`.

    Attributes
    ----------
    image : InputImage or None
        Backing pixel storage. `None` once the volume is cleared or swapped.
    loader : Loader or None
        Active loader.
    data_type : {"scalar", "packed_color"} or None
        Format in which the data is read.
    width, height, depth : int
        Dimensions of the data, in voxels.
    spacing : np.ndarray[np.floating]
        Voxel size along x, y and z.
    origin : np.ndarray[np.floating]
        Physical coordinates of the voxel (0, 0, 0).
    lock : threading.RLock
        Held during an extraction pass and by every configuration change.
    """

    image: Union[InputImage, None]
    loader: Union[Loader, None]
    data_type: Union[Literal["scalar", "packed_color"], None]
    width: int
    height: int
    depth: int
    spacing: np.ndarray[np.floating]
    origin: np.ndarray[np.floating]
    lock: threading.RLock

    def __init__(
        self,
        image: Union[np.ndarray, InputImage],
        channels: Iterable[bool] = (True, True, True),
        spacing: Iterable[float] = (1.0, 1.0, 1.0),
        origin: Iterable[float] = (0.0, 0.0, 0.0),
        luts: Union[Iterable[Iterable[int]], None] = None,
    ):
        """
        Initialize a volume from an image stack.

        Parameters
        ----------
        image : np.ndarray or InputImage
            Stack indexed `[z, y, x]`. See `volMC.images.as_input_image` for the
            supported array types. The array is not copied, so `write`
            and `write_no_check` modify it in place.
        channels : iterable of bool, optional
            Red, green and blue channels to read. Only relevant for color
            stacks. Default is all three.
        spacing : iterable of float, optional
            Voxel size along x, y and z. Must be strictly positive.
            Default is `(1, 1, 1)`.
        origin : iterable of float, optional
            Physical coordinates of the first voxel. Default is `(0, 0, 0)`.
        luts : iterable of 4 lookup tables or None, optional
            Red, green, blue and alpha tables of 256 entries each. If `None`,
            identity tables are used.

        Raises
        ------
        ValueError
            If the calibration, the channels or the lookup tables are invalid.
        TypeError
            If the image type is not supported.
        """
        spacing = np.array(spacing, dtype="float")
        origin = np.array(origin, dtype="float")
        if spacing.shape != (3,) or np.any(spacing <= 0):
            raise ValueError(
                f"spacing must hold 3 strictly positive values, got {spacing.tolist()}."
            )
        if origin.shape != (3,):
            raise ValueError(f"origin must hold 3 values, got {origin.tolist()}.")
        if luts is None:
            luts = np.stack([identity_lut()] * 4)
        else:
            luts = self._check_luts(*luts)
        self.lock = threading.RLock()
        self.spacing = spacing
        self.origin = origin
        self.luts = luts
        self.average = False
        self.saturated_rendering = False
        self.channels = (True, True, True)
        self.image = None
        self.loader = None
        self.data_type = None
        self.width = self.height = self.depth = 0
        self.set_image(image, channels)

    @staticmethod
    def _check_channels(ch: Iterable[bool]) -> tuple[bool, bool, bool]:
        ch = tuple(ch)
        if len(ch) != 3:
            raise ValueError(
                f"Expected 3 channel flags (red, green, blue), got {len(ch)}."
            )
        return tuple(bool(c) for c in ch)

    @staticmethod
    def _check_luts(*luts: Iterable[int]) -> np.ndarray[np.integer]:
        if len(luts) != 4:
            raise ValueError(f"Expected 4 lookup tables (r, g, b, a), got {len(luts)}.")
        tables = []
        for name, lut in zip("rgba", luts):
            lut = np.asarray(lut)
            if lut.shape != (256,) or not np.issubdtype(lut.dtype, np.integer):
                raise ValueError(
                    f"The {name} lookup table must hold 256 integers, got shape {lut.shape} and dtype '{lut.dtype}'."
                )
            if lut.min() < 0 or lut.max() > 255:
                raise ValueError(f"The {name} lookup table must map to [0, 255].")
            tables.append(lut.astype("int64"))
        return np.stack(tables)

    @staticmethod
    def _warn_missing():
        warnings.warn("No image. Maybe it is swapped?", RuntimeWarning, stacklevel=3)

    # ------------------------------------------------------------------ image

    def set_image(
        self,
        image: Union[np.ndarray, InputImage],
        channels: Iterable[bool] = (True, True, True),
    ):
        """
        Replace the backing stack and the enabled channels.

        Parameters
        ----------
        image : np.ndarray or InputImage
            New stack, indexed `[z, y, x]`. The array is wrapped without a
            copy: `write` modifies it in place.
        channels : iterable of bool, optional
            Red, green and blue channels to read. Default is all three.
        """
        channels = self._check_channels(channels)
        image = as_input_image(image)
        with self.lock:
            self.image = image
            self.channels = channels
            self.width, self.height, self.depth = image.shape
            self._update()

    def clear(self):
        """Release the backing stack. Dimensions and configuration are kept."""
        with self.lock:
            self.image = None
            self.loader = None

    def swap(self, path: str):
        """
        Save the backing stack to `<path>.npy` and release it.

        Parameters
        ----------
        path : str
            File path without extension.
        """
        with self.lock:
            if self.image is None:
                self._warn_missing()
                return
            np.save(path + ".npy", self.image.data)
            self.clear()

    def restore(self, path: str):
        """Reload a stack saved by `swap` with the current channels."""
        self.set_image(np.load(path + ".npy"), self.channels)

    @property
    def available(self) -> bool:
        return self.image is not None and self.loader is not None

    @property
    def shape(self) -> tuple[int, int, int]:
        """Dimensions as (`width`, `height`, `depth`)."""
        return self.width, self.height, self.depth

    @property
    def min_coord(self) -> np.ndarray[np.floating]:
        return self.origin.copy()

    @property
    def max_coord(self) -> np.ndarray[np.floating]:
        return self.origin + np.array(self.shape) * self.spacing

    # ---------------------------------------------------------- configuration

    def n_channels(self) -> int:
        """Number of channels read: 1 for gray-level stacks, else the enabled ones."""
        if self.image is None or isinstance(self.image, ByteImage):
            return 1
        return sum(self.channels)

    def is_default_lut(self) -> bool:
        """
        Check that the tables of the enabled channels and the alpha table are
        identities.
        """
        ident = identity_lut()
        for enabled, lut in zip(self.channels, self.luts[:3]):
            if enabled and not np.array_equal(lut, ident):
                return False
        return np.array_equal(self.luts[3], ident)

    def _init_data_type(self) -> bool:
        previous = self.data_type
        if self.average or (self.is_default_lut() and self.n_channels() < 2):
            self.data_type = SCALAR
        else:
            self.data_type = PACKED_COLOR
        return previous != self.data_type

    def _init_loader(self):
        if self.image is None:
            self.loader = None
            self._warn_missing()
            return
        args = (self.image, self.channels, self.luts)
        if self.data_type == PACKED_COLOR:
            if self.saturated_rendering:
                self.loader = SaturatedCompositedLoader(*args)
            else:
                self.loader = CompositedLoader(*args)
        elif self.average:
            self.loader = AverageLoader(*args)
        else:
            channel = 0
            if not isinstance(self.image, ByteImage):
                for i in range(3):
                    if self.channels[i]:
                        channel = i
            self.loader = PlainLoader(*args, channel=channel)

    def _update(self):
        # The loader snapshots the configuration, so it is rebuilt on every change
        self._init_data_type()
        self._init_loader()

    def set_average(self, a: bool) -> bool:
        """
        Average the enabled channels into one byte per voxel.

        Returns
        -------
        bool
            `True` if the setting has changed.
        """
        a = bool(a)
        with self.lock:
            if self.average == a:
                return False
            self.average = a
            self._update()
            return True

    def set_saturated_rendering(self, b: bool) -> bool:
        """
        Saturate the colors of packed RGB voxels: the looked-up channels are
        scaled so that the largest reaches 255.

        Returns
        -------
        bool
            `True` if the setting has changed.
        """
        b = bool(b)
        with self.lock:
            if self.saturated_rendering == b:
                return False
            self.saturated_rendering = b
            self._update()
            return True

    def set_channels(self, ch: Iterable[bool]) -> bool:
        """
        Choose the red, green and blue channels to read.

        Returns
        -------
        bool
            `True` if the channels have changed.

        Raises
        ------
        ValueError
            If `ch` does not hold exactly 3 flags.
        """
        ch = self._check_channels(ch)
        with self.lock:
            if ch == self.channels:
                return False
            self.channels = ch
            self._update()
            return True

    def set_luts(
        self,
        r: Iterable[int],
        g: Iterable[int],
        b: Iterable[int],
        a: Iterable[int],
    ) -> bool:
        """
        Set the red, green, blue and alpha lookup tables.

        Returns
        -------
        bool
            `True` if any table has changed.

        Raises
        ------
        ValueError
            If a table does not hold 256 integers in [0, 255].
        """
        luts = self._check_luts(r, g, b, a)
        with self.lock:
            if np.array_equal(luts, self.luts):
                return False
            self.luts = luts
            self._update()
            return True

    def set_alpha_fully_opaque(self) -> bool:
        """
        Map every value to an opaque alpha.

        Returns
        -------
        bool
            `True` if the alpha table has changed.
        """
        alpha = np.full(256, OPAQUE_ALPHA, dtype="int64")
        return self.set_luts(*self.luts[:3], alpha)

    def is_average(self) -> bool:
        return self.average

    def is_saturated_rendering(self) -> bool:
        return self.saturated_rendering

    @property
    def red_lut(self) -> np.ndarray[np.integer]:
        return self.luts[0].copy()

    @property
    def green_lut(self) -> np.ndarray[np.integer]:
        return self.luts[1].copy()

    @property
    def blue_lut(self) -> np.ndarray[np.integer]:
        return self.luts[2].copy()

    @property
    def alpha_lut(self) -> np.ndarray[np.integer]:
        return self.luts[3].copy()

    # ---------------------------------------------------------------- access

    def in_bounds(self, x: int, y: int, z: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height and 0 <= z < self.depth

    def intensity(self, x: int, y: int, z: int) -> int:
        """
        Scalar value at (`x`, `y`, `z`), 0 outside of the data or when no image
        is available.
        """
        if not self.in_bounds(x, y, z):
            return 0
        loader = self.loader
        if loader is None:
            self._warn_missing()
            return 0
        return loader.load(x, y, z)

    def color(self, x: int, y: int, z: int) -> int:
        """
        Packed color at (`x`, `y`, `z`), transparent black outside of the data
        or when no image is available.
        """
        if not self.in_bounds(x, y, z):
            return 0
        loader = self.loader
        if loader is None:
            self._warn_missing()
            return 0
        return loader.load_composited(x, y, z)

    def load(self, x: int, y: int, z: int) -> int:
        """Scalar value at (`x`, `y`, `z`) without bounds check."""
        if self.loader is None:
            self._warn_missing()
            return 0
        return self.loader.load(x, y, z)

    def load_composited(self, x: int, y: int, z: int) -> int:
        """Packed color at (`x`, `y`, `z`) without bounds check."""
        if self.loader is None:
            self._warn_missing()
            return 0
        return self.loader.load_composited(x, y, z)

    def get_average(self, x: int, y: int, z: int) -> int:
        """Mean of the red, green and blue components at (`x`, `y`, `z`)."""
        if self.image is None:
            self._warn_missing()
            return 0
        return self.image.get_average(x, y, z)

    def write(self, x: int, y: int, z: int, v: int):
        """Store `v` at (`x`, `y`, `z`); writes outside of the data are dropped."""
        if self.loader is None:
            self._warn_missing()
            return
        self.loader.write(x, y, z, v)

    def write_no_check(self, x: int, y: int, z: int, v: int):
        if self.loader is None:
            self._warn_missing()
            return
        self.loader.write_no_check(x, y, z, v)

    def intensity_field(self) -> np.ndarray[np.floating]:
        """
        Scalar field padded with zeros, as read by `intensity`.

        Returns
        -------
        np.ndarray[np.floating]
            Array of shape (`depth + 3`, `height + 3`, `width + 3`) such that
            `field[z + 1, y + 1, x + 1] == intensity(x, y, z)` for `x` in
            [-1, `width` + 1], and likewise for `y` and `z`.
        """
        w, h, d = self.shape
        field = np.zeros((d + 3, h + 3, w + 3), dtype="float")
        loader = self.loader
        if loader is None:
            self._warn_missing()
            return field
        field[1 : (d + 1), 1 : (h + 1), 1 : (w + 1)] = loader.load_block(0, d)
        return field

    def slice_bounds(self) -> Union[dict[int, list[Box]], None]:
        """Per-slice scan boxes. A plain volume has none, so the full grid is scanned."""
        return None


def regions_from_mask(mask: np.ndarray[np.bool_]) -> list[list[Box]]:
    """
    Bounding boxes of the connected regions of each slice of a mask.

    Parameters
    ----------
    mask : np.ndarray[np.bool_]
        Boolean stack of shape (`depth`, `height`, `width`).

    Returns
    -------
    list[list[tuple[int, int, int, int]]]
        For each slice, the `(x, y, width, height)` boxes of its 2D connected
        components.
    """
    regions = []
    for section in mask:
        labels, _ = ndi.label(section)
        boxes = []
        for sl in ndi.find_objects(labels):
            if sl is None:
                continue
            sy, sx = sl
            boxes.append((sx.start, sy.start, sx.stop - sx.start, sy.stop - sy.start))
        regions.append(boxes)
    return regions


class RegionVolume(Volume):
    """
    Volume exposing the bounding boxes of the non-empty regions of its slices,
    so that the extraction only visits cells around them.

    Attributes
    ----------
    regions : list[list[tuple[int, int, int, int]]] or None
        Per-slice `(x, y, width, height)` boxes. If `None`, they are computed
        from the non-zero voxels of the scalar field when needed.
    """

    regions: Union[list[list[Box]], None]

    def __init__(
        self,
        image: Union[np.ndarray, InputImage],
        regions: Union[list[list[Box]], None] = None,
        **volume_kwargs,
    ):
        super().__init__(image, **volume_kwargs)
        if regions is not None and len(regions) != self.depth:
            raise ValueError(
                f"Expected one list of boxes per slice ({self.depth}), got {len(regions)}."
            )
        self.regions = regions

    def section_boxes(self) -> list[list[Box]]:
        if self.regions is not None:
            return self.regions
        field = self.intensity_field()[1:-2, 1:-2, 1:-2]
        return regions_from_mask(field != 0)

    def slice_bounds(self) -> dict[int, list[Box]]:
        """
        Scan boxes of each cell layer.

        The boxes of a slice are fused with those of the adjacent slices, and
        the first and last layers are replicated at `z = -1` and `z = depth`.

        Returns
        -------
        dict[int, list[tuple[int, int, int, int]]]
            Boxes for each `z` in [-1, `depth`]. Layers without boxes are absent.
        """
        sections = self.section_boxes()
        d = len(sections)
        bounds = {}
        for z in range(d):
            fused = list(sections[z])
            if z > 0:
                fused += sections[z - 1]
            if z < d - 1:
                fused += sections[z + 1]
            if fused:
                bounds[z] = fused
        if d > 0:
            if 0 in bounds:
                bounds[-1] = bounds[0]
            if d - 1 in bounds:
                bounds[d] = bounds[d - 1]
        return bounds
