from functools import partial
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Literal, Union
import os
import threading
import numpy as np
import numba as nb
import pyvista as pv
import meshio as io
from tqdm import tqdm

from volMC.tables import CUBE_VERTICES, EDGE_VERTICES, TRIANGLE_TABLE
from volMC.Cube import Cube, table_index
from volMC.Volume import Volume, Box
from volMC.image_utils import find_isovalue


class ExtractionCancelled(RuntimeError):
    """Raised by `IsosurfaceExtractor.extract` when the pass was cancelled."""


@nb.njit(cache=True, nogil=True)
def _cell_case(
    field: np.ndarray, x: int, y: int, z: int, threshold: float, values: np.ndarray
) -> int:
    n = 0
    for i in range(8):
        v = field[
            z + 1 + CUBE_VERTICES[i, 2],
            y + 1 + CUBE_VERTICES[i, 1],
            x + 1 + CUBE_VERTICES[i, 0],
        ]
        values[i] = v
        if v - threshold > 0:
            n |= 1 << i
    return n


@nb.njit(cache=True, nogil=True)
def _march_slab(
    field: np.ndarray[np.floating],
    threshold: float,
    cell_mask: np.ndarray[np.bool_],
    rows: np.ndarray[np.integer],
    z0: int,
    z1: int,
) -> np.ndarray[np.floating]:
    """
    Triangulate the cell layers `z0` to `z1 - 1` of a padded scalar field.

    Mirrors `Cube.march` over the cells scanned in z, x, y order, so that the
    output matches the one of the pure Python path point for point.

    Parameters
    ----------
    field : np.ndarray[np.floating]
        Padded field from `Volume.intensity_field`.
    threshold : float
        Iso-value.
    cell_mask : np.ndarray[np.bool_]
        Cells to visit, indexed `[z + 1, x + 1, y + 1]`.
    rows : np.ndarray[np.integer]
        Row of `TRIANGLE_TABLE` used for each case number.
    z0, z1 : int
        Range of cell layers.

    Returns
    -------
    np.ndarray[np.floating]
        Triangle points in grid coordinates, shape (`3 * n_triangles`, `3`).
    """
    w = cell_mask.shape[1] - 2
    h = cell_mask.shape[2] - 2
    values = np.empty(8)

    # First pass: count the triangles to allocate the output once
    count = 0
    for z in range(z0, z1):
        for x in range(-1, w + 1):
            for y in range(-1, h + 1):
                if not cell_mask[z + 1, x + 1, y + 1]:
                    continue
                row = rows[_cell_case(field, x, y, z, threshold, values)]
                for k in range(5):
                    if TRIANGLE_TABLE[row, 3 * k] == -1:
                        break
                    count += 1

    out = np.empty((3 * count, 3))
    edges = np.empty((12, 3))
    corners = np.empty((8, 3))
    pos = 0
    for z in range(z0, z1):
        for x in range(-1, w + 1):
            for y in range(-1, h + 1):
                if not cell_mask[z + 1, x + 1, y + 1]:
                    continue
                n = _cell_case(field, x, y, z, threshold, values)
                if n == 0 or n == 255:
                    continue
                for i in range(8):
                    corners[i, 0] = x + CUBE_VERTICES[i, 0]
                    corners[i, 1] = y + CUBE_VERTICES[i, 1]
                    corners[i, 2] = z + CUBE_VERTICES[i, 2]
                for e in range(12):
                    a = EDGE_VERTICES[e, 0]
                    b = EDGE_VERTICES[e, 1]
                    if values[b] < values[a]:
                        a, b = b, a
                    i1 = values[a]
                    i2 = values[b]
                    t = -1.0
                    if i2 != i1:
                        t = (threshold - i1) / (i2 - i1)
                    if 0 <= t <= 1:
                        for c in range(3):
                            edges[e, c] = corners[a, c] + t * (
                                corners[b, c] - corners[a, c]
                            )
                    else:
                        edges[e, :] = -1.0
                row = rows[n]
                for k in range(5):
                    if TRIANGLE_TABLE[row, 3 * k] == -1:
                        break
                    for j in range(3):
                        out[pos, :] = edges[TRIANGLE_TABLE[row, 3 * k + j]]
                        pos += 1
    return out


def scan_schedule(
    bounds: dict[int, list[Box]], width: int, height: int, depth: int
) -> np.ndarray[np.bool_]:
    """
    Cells to visit given per-layer bounding boxes.

    Each `(x, y, w, h)` box of layer `z` marks the cells of origin `x - 1` to
    `x + w` and `y - 1` to `y + h` in that layer. Overlapping boxes mark a cell
    once.

    Parameters
    ----------
    bounds : dict[int, list[tuple[int, int, int, int]]]
        Boxes per cell layer `z` in [-1, `depth`], as returned by
        `RegionVolume.slice_bounds`.
    width, height, depth : int
        Dimensions of the volume.

    Returns
    -------
    np.ndarray[np.bool_]
        Mask of shape (`depth + 2`, `width + 2`, `height + 2`), indexed
        `[z + 1, x + 1, y + 1]`.
    """
    mask = np.zeros((depth + 2, width + 2, height + 2), dtype="bool")
    for z, boxes in bounds.items():
        if not -1 <= z <= depth:
            continue
        for bx, by, bw, bh in boxes:
            x0, x1 = max(bx - 1, -1), min(bx + bw, width)
            y0, y1 = max(by - 1, -1), min(by + bh, height)
            if x0 <= x1 and y0 <= y1:
                mask[z + 1, (x0 + 1) : (x1 + 2), (y0 + 1) : (y1 + 2)] = True
    return mask


def to_physical(
    points: np.ndarray[np.floating],
    spacing: np.ndarray[np.floating],
    origin: np.ndarray[np.floating],
) -> np.ndarray[np.floating]:
    """Map grid coordinates to physical ones: `grid * spacing + origin`, per axis."""
    return points * np.asarray(spacing)[None] + np.asarray(origin)[None]


class IsosurfaceExtractor:
    """
    Marching cubes extraction of the surface where a volume crosses an
    iso-value.

    Every cell of origin (`x`, `y`, `z`) in [-1, `width`] x [-1, `height`] x
    [-1, `depth`] is visited, so that surfaces touching the border of the data
    are closed. The cell layers are split into slabs processed by a pool of
    threads, each with its own `Cube`, and the results are concatenated in z
    order: the output does not depend on the number of workers.

    Attributes
    ----------
    n_workers : int
        Number of worker threads.
    backend : {"numba", "python"}
        `"numba"` samples the field once and runs a compiled kernel;
        `"python"` drives `Cube` objects on `Volume.intensity`.
    ambiguity : {"direct", "mirrored"}
        Table row used for ambiguous cases, see `volMC.Cube.table_index`.
    use_regions : bool
        Restrict the scan to the boxes of a `RegionVolume`.
    slab_size : int
        Number of cell layers per task.
    verbose : bool
        Print a summary and show a progress bar.
    state : {"idle", "scanning", "done"}
        Extraction state.
    """

    n_workers: int
    backend: Literal["numba", "python"]
    ambiguity: Literal["direct", "mirrored"]
    use_regions: bool
    slab_size: int
    verbose: bool
    state: Literal["idle", "scanning", "done"]

    def __init__(
        self,
        n_workers: Union[int, None] = None,
        backend: Literal["numba", "python"] = "numba",
        ambiguity: Literal["direct", "mirrored"] = "direct",
        use_regions: bool = True,
        slab_size: int = 8,
        verbose: bool = False,
    ):
        """
        Parameters
        ----------
        n_workers : int or None, optional
            Number of worker threads. If `None`, the number of CPUs is used.
        backend : {"numba", "python"}, optional
            Default is `"numba"`.
        ambiguity : {"direct", "mirrored"}, optional
            Default is `"direct"`.
        use_regions : bool, optional
            Default is `True`.
        slab_size : int, optional
            Default is `8`.
        verbose : bool, optional
            Default is `False`.

        Raises
        ------
        ValueError
            If an option is not recognised or out of range.
        """
        if backend not in ("numba", "python"):
            raise ValueError(
                f"Unrecognised backend '{backend}'. backend can only be set to 'numba' or 'python'"
            )
        if ambiguity not in ("direct", "mirrored"):
            raise ValueError(
                f"Unrecognised ambiguity '{ambiguity}'. ambiguity can only be set to 'direct' or 'mirrored'"
            )
        if n_workers is None:
            n_workers = os.cpu_count() or 1
        if n_workers < 1:
            raise ValueError(f"n_workers must be positive, got {n_workers}.")
        if slab_size < 1:
            raise ValueError(f"slab_size must be positive, got {slab_size}.")
        self.n_workers = n_workers
        self.backend = backend
        self.ambiguity = ambiguity
        self.use_regions = use_regions
        self.slab_size = slab_size
        self.verbose = verbose
        self.state = "idle"
        self._cancelled = threading.Event()

    def cancel(self):
        """Stop the running extraction before its next slab."""
        self._cancelled.set()

    def cell_mask(self, volume: Volume, threshold: float) -> np.ndarray[np.bool_]:
        """
        Cells visited for `volume`, indexed `[z + 1, x + 1, y + 1]`.

        The region boxes only bound the voxels above a positive threshold, so
        the full grid is scanned otherwise.
        """
        w, h, d = volume.shape
        bounds = volume.slice_bounds() if self.use_regions else None
        if bounds is None or threshold <= 0:
            return np.ones((d + 2, w + 2, h + 2), dtype="bool")
        return scan_schedule(bounds, w, h, d)

    def _python_slab(
        self, volume: Volume, threshold: float, mask: np.ndarray[np.bool_], slab
    ) -> Union[np.ndarray[np.floating], None]:
        z0, z1 = slab
        w, h, _ = volume.shape
        cube = Cube()
        out = []
        for z in range(z0, z1):
            if self._cancelled.is_set():
                return None
            for x in range(-1, w + 1):
                for y in range(-1, h + 1):
                    if mask[z + 1, x + 1, y + 1]:
                        cube.init(x, y, z)
                        cube.march(volume, threshold, out, self.ambiguity)
        return np.array(out, dtype="float").reshape((-1, 3))

    def _numba_slab(
        self,
        field: np.ndarray[np.floating],
        threshold: float,
        mask: np.ndarray[np.bool_],
        rows: np.ndarray[np.integer],
        slab,
    ) -> Union[np.ndarray[np.floating], None]:
        if self._cancelled.is_set():
            return None
        z0, z1 = slab
        return _march_slab(field, threshold, mask, rows, z0, z1)

    def _run(self, task: Callable, slabs: list[tuple[int, int]]) -> list:
        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            return list(
                tqdm(
                    executor.map(task, slabs),
                    total=len(slabs),
                    desc="Marching cubes",
                    disable=not self.verbose,
                )
            )

    def extract(self, volume: Volume, isovalue: float) -> np.ndarray[np.floating]:
        """
        Triangulate the surface where `volume` crosses `isovalue`.

        The surface is placed at `isovalue + 0.5`, halfway between two integer
        intensity levels.

        Parameters
        ----------
        volume : Volume
            Scalar field to triangulate. Its configuration cannot change during
            the pass.
        isovalue : float
            Iso-value.

        Returns
        -------
        np.ndarray[np.floating]
            Triangle soup of shape (`3 * n_triangles`, `3`) in physical
            coordinates: each consecutive triple of points is one triangle.

        Raises
        ------
        ExtractionCancelled
            If `cancel` was called during the pass.
        """
        threshold = float(isovalue) + 0.5
        self._cancelled.clear()
        with volume.lock:
            self.state = "scanning"
            try:
                w, h, d = volume.shape
                spacing, origin = volume.spacing.copy(), volume.origin.copy()
                mask = self.cell_mask(volume, threshold)
                slabs = [
                    (z0, min(z0 + self.slab_size, d + 1))
                    for z0 in range(-1, d + 1, self.slab_size)
                ]
                if self.backend == "numba":
                    rows = np.array(
                        [table_index(n, self.ambiguity) for n in range(256)],
                        dtype="int64",
                    )
                    task = partial(
                        self._numba_slab, volume.intensity_field(), threshold, mask, rows
                    )
                else:
                    task = partial(self._python_slab, volume, threshold, mask)
                results = self._run(task, slabs)
                if any(r is None for r in results) or self._cancelled.is_set():
                    raise ExtractionCancelled("Marching cubes extraction cancelled.")
            except BaseException:
                self.state = "idle"
                raise
            self.state = "done"
        if results:
            grid = np.concatenate(results)
        else:
            grid = np.empty((0, 3))
        triangles = to_physical(grid, spacing, origin)
        if self.verbose:
            print(
                f"Extracted {triangles.shape[0] // 3} triangles from a {w}x{h}x{d} volume at iso-value {isovalue}"
            )
        return triangles


def triangles_to_polydata(triangles: np.ndarray[np.floating]) -> pv.PolyData:
    """
    Wrap a triangle soup into a `pv.PolyData`. Points are not merged.

    Parameters
    ----------
    triangles : np.ndarray[np.floating]
        Points of shape (`3 * n_triangles`, `3`).

    Returns
    -------
    pv.PolyData
        Surface with one triangular face per consecutive triple of points.
    """
    n = triangles.shape[0] // 3
    if n == 0:
        return pv.PolyData()
    faces = np.hstack(
        [np.full((n, 1), 3, dtype="int64"), np.arange(3 * n).reshape((n, 3))]
    ).ravel()
    return pv.PolyData(triangles[: (3 * n)], faces)


def save_triangles(
    filename: str,
    triangles: np.ndarray[np.floating],
    file_format: Union[str, None] = None,
):
    """
    Write a triangle soup with `meshio` (STL, OBJ, VTK, ...).

    Parameters
    ----------
    filename : str
        Output path. The format is deduced from the extension unless
        `file_format` is given.
    triangles : np.ndarray[np.floating]
        Points of shape (`3 * n_triangles`, `3`).
    file_format : str or None, optional
        `meshio` format name. Default is `None`.
    """
    n = triangles.shape[0] // 3
    mesh = io.Mesh(triangles[: (3 * n)], [("triangle", np.arange(3 * n).reshape((n, 3)))])
    mesh.write(filename, file_format=file_format)


def marching_cubes(
    image: Union[np.ndarray, Volume],
    isovalue: Union[float, None] = None,
    spacing: tuple[float, float, float] = (1.0, 1.0, 1.0),
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0),
    verbose: bool = False,
    **extractor_kwargs,
) -> pv.PolyData:
    """
    Extract the iso-surface of an image stack as a `pv.PolyData`.

    Parameters
    ----------
    image : np.ndarray or Volume
        Stack indexed `[z, y, x]`, or an already configured `Volume` (in which
        case `spacing` and `origin` are ignored).
    isovalue : float or None, optional
        Iso-value. If `None`, it is estimated with `find_isovalue`.
    spacing : tuple of 3 float, optional
        Voxel size along x, y and z. Default is `(1, 1, 1)`.
    origin : tuple of 3 float, optional
        Physical coordinates of the first voxel. Default is `(0, 0, 0)`.
    verbose : bool, optional
        If `True`, prints progress messages. Default is `False`.
    **extractor_kwargs
        Forwarded to `IsosurfaceExtractor`.

    Returns
    -------
    pv.PolyData
        Triangle soup of the surface.
    """
    if isinstance(image, Volume):
        volume = image
    else:
        volume = Volume(image, spacing=spacing, origin=origin)
    if isovalue is None:
        isovalue = find_isovalue(volume, verbose=verbose)
    extractor = IsosurfaceExtractor(verbose=verbose, **extractor_kwargs)
    return triangles_to_polydata(extractor.extract(volume, isovalue))
