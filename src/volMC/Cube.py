from typing import Literal, Protocol
import numpy as np

from volMC.tables import (
    CUBE_VERTICES,
    EDGE_VERTICES,
    TRIANGLE_TABLE,
    TRIANGLES_PER_CASE,
    AMBIGUOUS_CASES,
)

# Marks an edge without crossing
ABSENT = (-1.0, -1.0, -1.0)


class IntensitySource(Protocol):
    def intensity(self, x: int, y: int, z: int) -> float: ...


def is_ambiguous(case_number: int) -> bool:
    """Check whether a case number admits two face-connectivity triangulations."""
    return case_number in AMBIGUOUS_CASES


def table_index(
    case_number: int, ambiguity: Literal["direct", "mirrored"] = "direct"
) -> int:
    """
    Row of `TRIANGLE_TABLE` used to triangulate a case.

    Parameters
    ----------
    case_number : int
        Case number in [0, 255].
    ambiguity : {"direct", "mirrored"}, optional
        With `"mirrored"`, ambiguous cases read the row `255 - case_number`,
        i.e. the triangulation of the complementary sign pattern. Default is
        `"direct"`, which always reads the row `case_number`.

    Returns
    -------
    int
        Row index in [0, 255].
    """
    if ambiguity == "mirrored" and is_ambiguous(case_number):
        return 255 - case_number
    if ambiguity not in ("direct", "mirrored"):
        raise ValueError(
            f"Unrecognised ambiguity '{ambiguity}'. ambiguity can only be set to 'direct' or 'mirrored'"
        )
    return case_number


def interpolate_edge(
    v1: tuple[float, float, float],
    i1: float,
    v2: tuple[float, float, float],
    i2: float,
    threshold: float,
) -> tuple[tuple[float, float, float], bool]:
    """
    Point of the segment [`v1`, `v2`] where the linearly interpolated intensity
    equals `threshold`.

    The endpoints are ordered by increasing intensity first, so the result does
    not depend on the orientation of the edge.

    Parameters
    ----------
    v1, v2 : tuple of 3 float
        Edge endpoints.
    i1, i2 : float
        Intensities at `v1` and `v2`.
    threshold : float
        Iso-value.

    Returns
    -------
    point : tuple of 3 float
        Crossing point, or `ABSENT`.
    present : bool
        `False` if the edge has no crossing, including flat edges (`i1 == i2`).
    """
    if i2 < i1:
        v1, i1, v2, i2 = v2, i2, v1, i1
    if i2 == i1:
        return ABSENT, False
    t = (threshold - i1) / (i2 - i1)
    if 0 <= t <= 1:
        return tuple(a + t * (b - a) for a, b in zip(v1, v2)), True
    return ABSENT, False


class Cube:
    """
    Unit grid cell reused while marching through a volume.

    Attributes
    ----------
    vertices : list[tuple[int, int, int]]
        The 8 corners, in grid coordinates.
    edges : list[tuple[float, float, float]]
        Crossing point of each of the 12 edges, `ABSENT` if none.
    present : list[bool]
        Whether each edge holds a crossing.
    """

    vertices: list[tuple[int, int, int]]
    edges: list[tuple[float, float, float]]
    present: list[bool]

    def __init__(self):
        self.vertices = [(0, 0, 0)] * 8
        self.edges = [ABSENT] * 12
        self.present = [False] * 12
        self._source = None
        self._intensities = None

    def init(self, x: int, y: int, z: int):
        """Move the cube to the cell whose lowest corner is (`x`, `y`, `z`)."""
        self.vertices = [(x + dx, y + dy, z + dz) for dx, dy, dz in CUBE_VERTICES.tolist()]
        self._source = None
        self._intensities = None

    def intensities(self, sampler: IntensitySource) -> list[float]:
        """Intensities of the 8 corners, sampled once per cell."""
        if self._intensities is None or self._source is not sampler:
            self._intensities = [sampler.intensity(*v) for v in self.vertices]
            self._source = sampler
        return self._intensities

    def compute_edges(self, sampler: IntensitySource, threshold: float):
        """Interpolate the crossing point of every edge."""
        values = self.intensities(sampler)
        for e, (a, b) in enumerate(EDGE_VERTICES.tolist()):
            self.edges[e], self.present[e] = interpolate_edge(
                self.vertices[a], values[a], self.vertices[b], values[b], threshold
            )

    def case_number(self, sampler: IntensitySource, threshold: float) -> int:
        """8-bit mask whose bit `i` is set iff corner `i` lies above `threshold`."""
        n = 0
        for i, value in enumerate(self.intensities(sampler)):
            if value - threshold > 0:
                n |= 1 << i
        return n

    def emit_triangles(
        self,
        case_number: int,
        output: list[tuple[float, float, float]],
        ambiguity: Literal["direct", "mirrored"] = "direct",
    ) -> int:
        """
        Append the triangles of a case to `output`, three points per triangle.

        Parameters
        ----------
        case_number : int
            Case number of the cell, in [0, 255].
        output : list
            Triangle accumulator.
        ambiguity : {"direct", "mirrored"}, optional
            See `table_index`. Default is `"direct"`.

        Returns
        -------
        int
            Number of triangles appended.
        """
        row = TRIANGLE_TABLE[table_index(case_number, ambiguity)]
        count = 0
        for k in range(TRIANGLES_PER_CASE):
            if row[3 * k] == -1:
                break
            for e in row[3 * k : 3 * k + 3]:
                output.append(self.edges[e])
            count += 1
        return count

    def march(
        self,
        sampler: IntensitySource,
        threshold: float,
        output: list[tuple[float, float, float]],
        ambiguity: Literal["direct", "mirrored"] = "direct",
    ) -> int:
        """Triangulate the current cell into `output`; returns the triangle count."""
        n = self.case_number(sampler, threshold)
        if n == 0 or n == 255:
            return 0
        self.compute_edges(sampler, threshold)
        return self.emit_triangles(n, output, ambiguity)
