# %%
import numpy as np
from scipy.ndimage import gaussian_filter
from volMC import (
    Volume,
    RegionVolume,
    IsosurfaceExtractor,
    find_isovalue,
    triangles_to_polydata,
    save_triangles,
)

# %% Create a blurred sphere as an 8-bit stack indexed [z, y, x]

n = 64
l = 1
X, Y, Z = np.meshgrid(*[np.linspace(-l, l, n)] * 3, indexing="ij")
inside = (X**2 + Y**2 + Z**2) < (0.6 * l) ** 2
image = (255 * gaussian_filter(inside.astype("float"), 1.5)).astype("uint8")

# %% Extract the iso-surface with an automatic iso-value

volume = Volume(image, spacing=(2 * l / n,) * 3, origin=(-l, -l, -l))
isovalue = find_isovalue(volume, verbose=True)
extractor = IsosurfaceExtractor(verbose=True)
triangles = extractor.extract(volume, isovalue)

triangles_to_polydata(triangles).plot(show_edges=True)

# %% Same surface, scanning only around the non-empty regions of each slice

sparse = RegionVolume(image, spacing=(2 * l / n,) * 3, origin=(-l, -l, -l))
sparse_triangles = extractor.extract(sparse, isovalue)
assert np.array_equal(triangles, sparse_triangles)

save_triangles("sphere.stl", triangles)
