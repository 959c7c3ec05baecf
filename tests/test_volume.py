import warnings
import numpy as np
import pytest

from volMC.Volume import Volume, RegionVolume, regions_from_mask, SCALAR, PACKED_COLOR
from volMC.images import ByteImage, IntImage
from volMC.loaders import (
    PlainLoader,
    CompositedLoader,
    SaturatedCompositedLoader,
    AverageLoader,
)


def packed(r, g, b):
    return (r << 16) | (g << 8) | b


@pytest.fixture
def gray():
    image = np.arange(2 * 3 * 4, dtype="uint8").reshape((2, 3, 4))
    return Volume(image)


@pytest.fixture
def rgb():
    image = np.zeros((2, 2, 2), dtype="uint32")
    image[1, 0, 1] = packed(10, 20, 60)
    return Volume(image)


def test_gray_volume_reads_scalars(gray):
    assert gray.shape == (4, 3, 2)
    assert isinstance(gray.image, ByteImage)
    assert gray.data_type == SCALAR
    assert isinstance(gray.loader, PlainLoader)
    assert gray.intensity(1, 2, 1) == 12 + 2 * 4 + 1


@pytest.mark.parametrize("xyz", [(-1, 0, 0), (0, -1, 0), (0, 0, -1), (4, 0, 0), (0, 3, 0), (0, 0, 2)])
def test_out_of_bounds_sampling_is_zero(gray, xyz):
    assert gray.intensity(*xyz) == 0
    assert gray.color(*xyz) == 0


def test_packed_rgb_defaults_to_composited(rgb):
    assert isinstance(rgb.image, IntImage)
    assert rgb.data_type == PACKED_COLOR
    assert isinstance(rgb.loader, CompositedLoader)
    assert rgb.intensity(1, 0, 1) == packed(10, 20, 60)
    # alpha is the looked-up mean of the raw channels
    assert rgb.color(1, 0, 1) == (30 << 24) | packed(10, 20, 60)


def test_rgb_stack_is_packed():
    image = np.zeros((1, 1, 2, 3), dtype="uint8")
    image[0, 0, 1] = [1, 2, 3]
    volume = Volume(image)
    assert isinstance(volume.image, IntImage)
    assert volume.image.get(1, 0, 0) == packed(1, 2, 3)


def test_single_channel_is_scalar(rgb):
    assert rgb.set_channels((True, False, False))
    assert rgb.data_type == SCALAR
    assert isinstance(rgb.loader, PlainLoader)
    assert rgb.intensity(1, 0, 1) == 10
    assert not rgb.set_channels((True, False, False))
    assert rgb.set_channels([False, True, False])
    assert rgb.intensity(1, 0, 1) == 20


def test_single_channel_with_lut_is_packed(rgb):
    rgb.set_channels((False, False, True))
    ident = np.arange(256)
    assert rgb.set_luts(ident, ident, 255 - ident, ident)
    assert rgb.data_type == PACKED_COLOR
    assert rgb.color(1, 0, 1) == (60 << 24) | (255 - 60)


def test_average(rgb):
    assert rgb.set_average(True)
    assert rgb.is_average()
    assert rgb.data_type == SCALAR
    assert isinstance(rgb.loader, AverageLoader)
    assert rgb.intensity(1, 0, 1) == (10 + 20 + 60) // 3
    rgb.set_channels((True, False, True))
    assert isinstance(rgb.loader, AverageLoader)
    assert rgb.intensity(1, 0, 1) == (10 + 60) // 2
    assert not rgb.set_average(True)


def test_average_composited_uses_luts(rgb):
    rgb.set_average(True)
    ident = np.arange(256)
    rgb.set_luts(255 - ident, ident, ident, ident)
    assert rgb.color(1, 0, 1) == (245 + 20 + 60) // 3


def test_saturated_rendering(rgb):
    assert rgb.set_saturated_rendering(True)
    assert isinstance(rgb.loader, SaturatedCompositedLoader)
    scale = 255 / 60
    r, g = int(np.floor(scale * 10 + 0.5)), int(np.floor(scale * 20 + 0.5))
    assert rgb.color(1, 0, 1) == (30 << 24) | packed(r, g, 255)
    assert rgb.color(0, 0, 0) == 0
    assert not rgb.set_saturated_rendering(True)


def test_saturated_rendering_ignored_in_scalar_mode(gray):
    assert gray.set_saturated_rendering(True)
    assert isinstance(gray.loader, PlainLoader)


def test_luts_on_gray_volume(gray):
    ident = np.arange(256)
    assert gray.set_luts(255 - ident, ident, ident, ident)
    assert gray.data_type == PACKED_COLOR
    assert isinstance(gray.loader, CompositedLoader)
    assert gray.color(2, 0, 0) == (2 << 24) | packed(253, 2, 2)
    assert not gray.set_luts(255 - ident, ident, ident, ident)
    assert gray.set_luts(ident, ident, ident, ident)
    assert gray.data_type == SCALAR


def test_alpha_fully_opaque(gray):
    assert gray.set_alpha_fully_opaque()
    assert np.all(gray.alpha_lut == 254)
    assert gray.data_type == PACKED_COLOR
    assert (gray.color(1, 0, 0) >> 24) == 254
    assert not gray.set_alpha_fully_opaque()


def test_default_lut_ignores_disabled_channels(rgb):
    ident = np.arange(256)
    rgb.set_channels((False, True, False))
    rgb.set_luts(255 - ident, ident, ident, ident)
    assert rgb.is_default_lut()
    assert rgb.data_type == SCALAR


def test_lut_copies_are_independent(gray):
    lut = gray.red_lut
    lut[:] = 0
    assert gray.is_default_lut()


@pytest.mark.parametrize(
    "luts",
    [
        [np.arange(255)] * 4,
        [np.arange(256) + 1] * 4,
        [np.linspace(0, 255, 256)] * 4,
    ],
)
def test_invalid_luts_are_rejected(gray, luts):
    before = gray.luts.copy()
    loader = gray.loader
    with pytest.raises(ValueError):
        gray.set_luts(*luts)
    assert np.array_equal(gray.luts, before)
    assert gray.loader is loader


def test_invalid_channels_are_rejected(rgb):
    with pytest.raises(ValueError):
        rgb.set_channels((True, False))
    assert rgb.channels == (True, True, True)


@pytest.mark.parametrize("spacing", [(1, 1), (1, 0, 1), (1, -2, 1)])
def test_invalid_calibration(spacing):
    with pytest.raises(ValueError):
        Volume(np.zeros((1, 1, 1), dtype="uint8"), spacing=spacing)


@pytest.mark.parametrize("image", [np.zeros((2, 2, 2), dtype="float"), np.zeros((2, 2), dtype="uint8"), [[[0]]]])
def test_unsupported_images(image):
    with pytest.raises(TypeError):
        Volume(image)


def test_calibration():
    volume = Volume(np.zeros((4, 3, 2), dtype="uint8"), spacing=(0.5, 1, 2), origin=(1, 2, 3))
    assert np.allclose(volume.min_coord, [1, 2, 3])
    assert np.allclose(volume.max_coord, [1 + 2 * 0.5, 2 + 3 * 1, 3 + 4 * 2])


def test_write(gray):
    gray.write(1, 1, 0, 200)
    assert gray.intensity(1, 1, 0) == 200
    gray.write(3, 2, 1, 300)
    assert gray.intensity(3, 2, 1) == 300 & 0xFF
    before = gray.image.data.copy()
    for xyz in [(-1, 0, 0), (4, 0, 0), (0, 3, 0), (0, 0, 2), (0, 0, -1)]:
        gray.write(*xyz, 7)
    assert np.array_equal(gray.image.data, before)


def test_unchecked_access_on_gray(gray):
    assert gray.load(1, 2, 1) == 21
    assert gray.load_composited(1, 2, 1) == 21
    assert gray.get_average(1, 2, 1) == 21
    gray.write_no_check(0, 0, 0, 250)
    assert gray.intensity(0, 0, 0) == 250


def test_unchecked_access_on_packed_stack(rgb):
    assert rgb.load(1, 0, 1) == packed(10, 20, 60)
    assert rgb.load_composited(1, 0, 1) == (30 << 24) | packed(10, 20, 60)
    assert rgb.get_average(1, 0, 1) == (10 + 20 + 60) // 3
    rgb.write_no_check(1, 1, 0, packed(3, 6, 9))
    assert rgb.get_average(1, 1, 0) == 6
    assert rgb.intensity(1, 1, 0) == packed(3, 6, 9)


def test_unchecked_access_on_cleared_volume(gray):
    data = gray.image.data
    gray.clear()
    for access in [gray.load, gray.load_composited, gray.get_average]:
        with pytest.warns(RuntimeWarning):
            assert access(1, 2, 1) == 0
    with pytest.warns(RuntimeWarning):
        gray.write_no_check(0, 0, 0, 99)
    assert data[0, 0, 0] == 0


def test_packed_write_keeps_24_bits(rgb):
    rgb.write(0, 0, 0, -1)
    assert rgb.intensity(0, 0, 0) == 0xFFFFFF
    assert rgb.image.get_rgb(0, 0, 0) == (255, 255, 255)
    rgb.write(1, 1, 1, 0x7F000102)
    assert rgb.intensity(1, 1, 1) == packed(0, 1, 2)


def test_writes_go_to_the_given_array():
    image = np.zeros((2, 2, 2), dtype="uint8")
    Volume(image).write(1, 0, 1, 42)
    assert image[1, 0, 1] == 42


def test_intensity_field_matches_intensity(rgb):
    rgb.set_average(True)
    field = rgb.intensity_field()
    assert field.shape == (2 + 3, 2 + 3, 2 + 3)
    for z in range(-1, 3):
        for y in range(-1, 3):
            for x in range(-1, 3):
                assert field[z + 1, y + 1, x + 1] == rgb.intensity(x, y, z)


def test_cleared_volume_degrades_to_zero(gray):
    gray.clear()
    assert not gray.available
    with pytest.warns(RuntimeWarning):
        assert gray.intensity(1, 1, 1) == 0
    with pytest.warns(RuntimeWarning):
        assert gray.color(1, 1, 1) == 0
    with pytest.warns(RuntimeWarning):
        gray.write(1, 1, 1, 3)
    with pytest.warns(RuntimeWarning):
        assert not gray.intensity_field().any()
    # out of bounds sampling stays silent
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert gray.intensity(-1, 0, 0) == 0


def test_swap_and_restore(gray, tmp_path):
    expected = gray.intensity_field()
    path = str(tmp_path / "stack")
    gray.swap(path)
    assert gray.image is None
    assert gray.shape == (4, 3, 2)
    gray.restore(path)
    assert np.array_equal(gray.intensity_field(), expected)


def test_regions_from_mask():
    mask = np.zeros((2, 5, 6), dtype="bool")
    mask[0, 1:3, 2:4] = True
    mask[0, 4, 5] = True
    regions = regions_from_mask(mask)
    assert regions[1] == []
    assert sorted(regions[0]) == [(2, 1, 2, 2), (5, 4, 1, 1)]


def test_region_volume_bounds():
    image = np.zeros((3, 4, 4), dtype="uint8")
    image[1, 1, 2] = 9
    volume = RegionVolume(image)
    bounds = volume.slice_bounds()
    assert bounds[0] == [(2, 1, 1, 1)]
    assert bounds[1] == [(2, 1, 1, 1)]
    assert bounds[2] == [(2, 1, 1, 1)]
    assert bounds[-1] == bounds[0]
    assert bounds[3] == bounds[2]


def test_region_volume_checks_regions():
    with pytest.raises(ValueError):
        RegionVolume(np.zeros((3, 4, 4), dtype="uint8"), regions=[[]])


def test_plain_volume_has_no_bounds(gray):
    assert gray.slice_bounds() is None
