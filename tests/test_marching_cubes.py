from collections import Counter
import threading
import time
import numpy as np
import pytest
import meshio
import pyvista as pv

from volMC import (
    Volume,
    RegionVolume,
    IsosurfaceExtractor,
    ExtractionCancelled,
    marching_cubes,
    scan_schedule,
    to_physical,
    triangles_to_polydata,
    save_triangles,
)


def single_voxel():
    image = np.zeros((4, 4, 4), dtype="uint8")
    image[1, 1, 1] = 255
    return image


def blobs(seed=0, shape=(7, 6, 5)):
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, size=shape).astype("uint8")
    image[rng.random(shape) < 0.5] = 0
    image[:, :, 0] = 0
    return image


def boundary_edges(triangles):
    """Edges used by a number of triangles other than two."""
    keys = [tuple(np.round(p, 9)) for p in triangles]
    counts = Counter()
    for i in range(0, len(keys), 3):
        a, b, c = keys[i : i + 3]
        for e in [(a, b), (b, c), (c, a)]:
            counts[frozenset(e)] += 1
    return [e for e, n in counts.items() if n != 2]


@pytest.mark.parametrize("backend", ["numba", "python"])
def test_single_voxel_gives_closed_octahedron(backend):
    triangles = IsosurfaceExtractor(backend=backend).extract(Volume(single_voxel()), 100)
    assert triangles.shape == (8 * 3, 3)
    assert boundary_edges(triangles) == []
    offset = 1 - 100.5 / 255
    for p in triangles:
        d = np.abs(p - 1)
        assert np.count_nonzero(d > 1e-12) == 1
        assert d.max() == pytest.approx(offset)


@pytest.mark.parametrize("backend", ["numba", "python"])
def test_uniform_volume_gives_nothing(backend):
    image = np.zeros((3, 3, 3), dtype="uint8")
    triangles = IsosurfaceExtractor(backend=backend).extract(Volume(image), 0)
    assert triangles.shape == (0, 3)


def test_filled_volume_is_closed_by_padding():
    image = np.full((3, 3, 3), 200, dtype="uint8")
    triangles = IsosurfaceExtractor().extract(Volume(image), 100)
    assert triangles.shape[0] > 0
    assert boundary_edges(triangles) == []
    assert triangles.min() > -1 and triangles.max() < 3


def test_step_field_lies_on_a_plane():
    image = np.zeros((4, 4, 4), dtype="uint8")
    image[2:] = 200
    triangles = IsosurfaceExtractor().extract(Volume(image), 100)
    plane = 1 + 100.5 / 200
    below = triangles[triangles[:, 2] < 2]
    assert np.allclose(below[:, 2], plane)
    tri = triangles.reshape((-1, 3, 3))
    on_plane = np.all(np.isclose(tri[:, :, 2], plane), axis=1)
    # 3 x 3 fully covered cells, 2 triangles each
    assert np.count_nonzero(on_plane) == 18


def test_backends_agree():
    volume = Volume(blobs())
    numba_triangles = IsosurfaceExtractor(backend="numba").extract(volume, 127)
    python_triangles = IsosurfaceExtractor(backend="python").extract(volume, 127)
    assert numba_triangles.shape == python_triangles.shape
    assert np.allclose(numba_triangles, python_triangles)


@pytest.mark.parametrize("n_workers, slab_size", [(1, 1), (3, 2), (4, 100)])
def test_output_does_not_depend_on_scheduling(n_workers, slab_size):
    volume = Volume(blobs(1))
    reference = IsosurfaceExtractor(n_workers=1, slab_size=8).extract(volume, 90)
    triangles = IsosurfaceExtractor(n_workers=n_workers, slab_size=slab_size).extract(volume, 90)
    assert np.array_equal(reference, triangles)


@pytest.mark.parametrize("backend", ["numba", "python"])
def test_region_scan_matches_full_scan(backend):
    image = blobs(2, shape=(6, 9, 8))
    full = IsosurfaceExtractor(backend=backend).extract(Volume(image), 60)
    sparse = IsosurfaceExtractor(backend=backend).extract(RegionVolume(image), 60)
    assert np.array_equal(full, sparse)


def test_region_scan_with_given_regions():
    image = np.zeros((3, 6, 6), dtype="uint8")
    image[1, 2:4, 2:4] = 255
    regions = [[], [(2, 2, 2, 2)], []]
    full = IsosurfaceExtractor().extract(Volume(image), 100)
    sparse = IsosurfaceExtractor().extract(RegionVolume(image, regions=regions), 100)
    assert np.array_equal(full, sparse)
    assert boundary_edges(sparse) == []


def test_regions_can_be_disabled():
    image = single_voxel()
    extractor = IsosurfaceExtractor(use_regions=False)
    mask = extractor.cell_mask(RegionVolume(image), 100.5)
    assert mask.all()
    mask = IsosurfaceExtractor().cell_mask(RegionVolume(image), 100.5)
    assert not mask.all()


def test_scan_schedule():
    mask = scan_schedule({0: [(1, 1, 2, 2), (2, 2, 1, 1)]}, 5, 5, 1)
    assert mask.shape == (3, 7, 7)
    assert not mask[0].any() and not mask[2].any()
    # cells of origin 0 to 3 along x and y
    assert np.count_nonzero(mask[1]) == 16
    assert mask[1, 1:5, 1:5].all()


def test_scan_schedule_clips_to_padded_grid():
    mask = scan_schedule({-1: [(0, 0, 3, 3)], 2: [(0, 0, 3, 3)]}, 3, 3, 2)
    assert mask.shape == (4, 5, 5)
    assert mask[0].all()
    assert mask[3].all()


def test_physical_coordinates():
    image = single_voxel()
    grid = IsosurfaceExtractor().extract(Volume(image), 100)
    physical = IsosurfaceExtractor().extract(
        Volume(image, spacing=(0.5, 2, 3), origin=(10, 20, 30)), 100
    )
    assert np.allclose(physical, grid * [0.5, 2, 3] + [10, 20, 30])
    assert np.allclose(to_physical(grid, [0.5, 2, 3], [10, 20, 30]), physical)


def test_mirrored_ambiguity_changes_ambiguous_cells_only():
    image = np.zeros((2, 2, 2), dtype="uint8")
    # v0, v2, v5 and v7 of the cell at the origin: case 165
    image[0, 0, 0] = image[0, 1, 1] = image[1, 0, 1] = image[1, 1, 0] = 255
    volume = Volume(image)
    direct = IsosurfaceExtractor(ambiguity="direct").extract(volume, 100)
    mirrored = IsosurfaceExtractor(ambiguity="mirrored").extract(volume, 100)
    python = IsosurfaceExtractor(ambiguity="mirrored", backend="python").extract(volume, 100)
    assert not np.array_equal(direct, mirrored)
    assert np.allclose(mirrored, python)
    unchanged = IsosurfaceExtractor(ambiguity="mirrored").extract(Volume(single_voxel()), 100)
    assert np.array_equal(unchanged, IsosurfaceExtractor().extract(Volume(single_voxel()), 100))


def test_state_machine():
    extractor = IsosurfaceExtractor()
    assert extractor.state == "idle"
    extractor.extract(Volume(single_voxel()), 100)
    assert extractor.state == "done"


class RecordingVolume(Volume):
    """Volume logging when it is sampled; the first sample stalls the scan."""

    def __init__(self, image):
        super().__init__(image)
        self.started = threading.Event()
        self.calls = 0
        self.last_call = 0.0

    def intensity(self, x, y, z):
        if not self.started.is_set():
            self.started.set()
            time.sleep(0.2)
        self.calls += 1
        self.last_call = time.perf_counter()
        return super().intensity(x, y, z)


def test_configuration_waits_for_running_extraction():
    # blue channel only: averaging the three channels divides it by 3
    image = blobs(3, shape=(16, 16, 16)).astype("uint32")
    reference = IsosurfaceExtractor(backend="python").extract(Volume(image), 90)
    assert reference.shape[0] > 0

    volume = RecordingVolume(image)
    extractor = IsosurfaceExtractor(backend="python", n_workers=1)
    output = []
    thread = threading.Thread(target=lambda: output.append(extractor.extract(volume, 90)))
    thread.start()
    assert volume.started.wait(5)
    assert volume.set_average(True)
    returned = time.perf_counter()
    calls = volume.calls
    assert extractor.state == "done"
    thread.join(10)
    assert not thread.is_alive()
    # no sample was taken once the configuration changed
    assert volume.calls == calls
    assert volume.last_call < returned
    assert np.array_equal(output[0], reference)
    assert IsosurfaceExtractor().extract(volume, 90).shape == (0, 3)


class CancellingVolume(Volume):
    extractor = None

    def intensity(self, x, y, z):
        self.extractor.cancel()
        return super().intensity(x, y, z)


def test_cancel():
    extractor = IsosurfaceExtractor(backend="python", n_workers=1, slab_size=1)
    volume = CancellingVolume(single_voxel())
    volume.extractor = extractor
    with pytest.raises(ExtractionCancelled):
        extractor.extract(volume, 100)
    assert extractor.state == "idle"
    # the next pass starts afresh
    assert extractor.extract(Volume(single_voxel()), 100).shape == (24, 3)


@pytest.mark.parametrize(
    "kwargs",
    [{"backend": "cuda"}, {"ambiguity": "both"}, {"n_workers": 0}, {"slab_size": 0}],
)
def test_invalid_options(kwargs):
    with pytest.raises(ValueError):
        IsosurfaceExtractor(**kwargs)


def test_swapped_volume_gives_nothing():
    volume = Volume(single_voxel())
    volume.clear()
    with pytest.warns(RuntimeWarning):
        triangles = IsosurfaceExtractor().extract(volume, 100)
    assert triangles.shape == (0, 3)


def test_marching_cubes_polydata():
    surface = marching_cubes(single_voxel(), 100, spacing=(1, 1, 2))
    assert isinstance(surface, pv.PolyData)
    assert surface.n_cells == 8
    assert surface.n_points == 24
    assert surface.bounds[5] == pytest.approx(2 * (2 - 100.5 / 255))


def test_marching_cubes_finds_isovalue():
    image = np.full((5, 5, 5), 10, dtype="uint8")
    image[1:4, 1:4, 1:4] = 200
    surface = marching_cubes(image)
    reference = marching_cubes(image, 105)
    assert np.allclose(surface.points, reference.points)


def test_empty_polydata():
    assert triangles_to_polydata(np.empty((0, 3))).n_points == 0


def test_save_triangles(tmp_path):
    triangles = IsosurfaceExtractor().extract(Volume(single_voxel()), 100)
    filename = str(tmp_path / "voxel.vtk")
    save_triangles(filename, triangles)
    mesh = meshio.read(filename)
    assert len(mesh.cells_dict["triangle"]) == 8
