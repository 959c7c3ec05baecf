"""
.. include:: ../../README.md
"""

from .tables import TRIANGLE_TABLE, AMBIGUOUS_TABLE, AMBIGUOUS_CASES
from .images import InputImage, ByteImage, IntImage, as_input_image
from .loaders import (
    Loader,
    PlainLoader,
    CompositedLoader,
    SaturatedCompositedLoader,
    AverageLoader,
)
from .Volume import Volume, RegionVolume, regions_from_mask, SCALAR, PACKED_COLOR
from .Cube import Cube, is_ambiguous, table_index
from .image_utils import hist, otsu_threshold, find_isovalue
from .marching_cubes import (
    IsosurfaceExtractor,
    ExtractionCancelled,
    marching_cubes,
    scan_schedule,
    to_physical,
    triangles_to_polydata,
    save_triangles,
)
