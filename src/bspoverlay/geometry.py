"""Rebuild convex brush geometry from the planes stored in the BSP.

See `polylib.cpp <https://github.com/ValveSoftware/source-sdk-2013/blob/0565403b153dfcde602f6f58d8f4d13483696a13/src/utils/common/polylib.cpp>`_ for some of the algorithms.

Each plane is turned into a huge polygon, then clipped by every other plane. Whatever remains
of each polygon is one face of the brush. BSP plane data is stored as single-precision floats,
so vertices and planes closer than :py:data:`EPSILON` are treated as identical.
"""
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple
from typing_extensions import Final
from enum import Enum

import attrs

from srctools import logger
from srctools.math import FrozenVec, Vec

from bspoverlay.bsp import Brush, BrushSide, InvalidReference, Plane, PlaneType


__all__ = [
    'EPSILON', 'BrushShape', 'BrushGeometry', 'Polyhedron', 'Polygon', 'Face',
    'build_brush', 'build_brushes',
    'Plane', 'PlaneType',  # Re-export
]

LOGGER = logger.get_logger(__name__)

#: Distance under which vertices and planes are merged.
EPSILON: Final = 1e-4
#: Half the size of the initial polygon for each plane. Maps are far smaller than this.
MAX_EXTENT: Final = 100_000.0
# Any vertex this far out must be from an initial polygon, so the brush is not closed.
UNBOUNDED_LIMIT: Final = MAX_EXTENT / 2


class BrushShape(Enum):
    """Classification of a brush, used to pick the style to draw with."""
    BOX = 'box'  #: Six axis-aligned sides.
    COMPLEX = 'complex'  #: Anything else.


@attrs.define(eq=False)
class Polygon:
    """A face during construction, the vertices are recomputed as planes are clipped."""
    #: The plane this face is pointing along.
    plane: Plane
    #: Vertex loop around this polygon.
    vertices: List[FrozenVec] = attrs.field(factory=list)

    @classmethod
    def from_plane(cls, plane: Plane) -> 'Polygon':
        """Create a huge square lying on the plane."""
        normal = plane.normal
        # Pick whichever axis is least aligned with the normal to build the basis.
        if abs(normal.z) < 0.9:
            up = FrozenVec(0, 0, 1)
        else:
            up = FrozenVec(1, 0, 0)
        u = normal.cross(up).norm() * MAX_EXTENT
        v = normal.cross(u)
        center = normal * plane.dist
        return cls(plane, [
            center - u - v,
            center + u - v,
            center + u + v,
            center - u + v,
        ])

    def clip(self, plane: Plane, epsilon: float = EPSILON) -> None:
        """Remove the part of this polygon in front of the provided plane."""
        new_verts: List[FrozenVec] = []
        for i, vert in enumerate(self.vertices):
            prev = self.vertices[i - 1]
            inside = plane.distance_to(vert) <= epsilon
            prev_inside = plane.distance_to(prev) <= epsilon
            if inside != prev_inside:
                mid = plane.intersect_line(prev, vert)
                if mid is not None:
                    new_verts.append(mid)
            if inside:
                new_verts.append(vert)
        self.vertices = new_verts

    def merge_vertices(self, epsilon: float = EPSILON) -> None:
        """Remove consecutive vertices which are at the same position."""
        merged: List[FrozenVec] = []
        for vert in self.vertices:
            if not merged or (vert - merged[-1]).mag() > epsilon:
                merged.append(vert)
        while len(merged) > 1 and (merged[0] - merged[-1]).mag() <= epsilon:
            merged.pop()
        self.vertices = merged


@attrs.frozen
class Face:
    """A face of a polyhedron, wound counter-clockwise when viewed from outside."""
    plane: Plane
    indices: Tuple[int, ...]


def _unique_planes(planes: Iterable[Plane], epsilon: float) -> List[Plane]:
    """Normalise planes, discarding duplicates and ones with no normal."""
    result: List[Plane] = []
    for plane in planes:
        mag = plane.normal.mag()
        if mag < epsilon:
            LOGGER.debug('Discarding plane with zero normal: {}', plane)
            continue
        if abs(mag - 1.0) > 1e-6:
            plane = Plane(plane.normal / mag, plane.dist / mag, plane.type)
        for other in result:
            if (
                (other.normal - plane.normal).mag() < epsilon
                and abs(other.dist - plane.dist) < epsilon
            ):
                break
        else:
            result.append(plane)
    return result


def _find_vertex(vertices: List[FrozenVec], point: FrozenVec, epsilon: float) -> int:
    """Find a matching vertex, or append it. Brushes have few vertices, so just search."""
    for i, vert in enumerate(vertices):
        if (vert - point).mag() <= epsilon:
            return i
    vertices.append(point)
    return len(vertices) - 1


@attrs.define(eq=False)
class Polyhedron:
    """A closed convex solid, with vertices shared between faces."""
    vertices: List[FrozenVec]
    faces: List[Face]

    @classmethod
    def from_planes(cls, planes: Iterable[Plane], epsilon: float = EPSILON) -> Optional['Polyhedron']:
        """Compute the solid bounded by the back side of all the planes.

        Returns ``None`` if the planes do not enclose a volume, either because the solid is
        empty or because it is not closed on all sides.
        """
        unique = _unique_planes(planes, epsilon)
        polys = []
        for plane in unique:
            poly = Polygon.from_plane(plane)
            for other in unique:
                if other is not plane:
                    poly.clip(other, epsilon)
                    if not poly.vertices:
                        break
            poly.merge_vertices(epsilon)
            if len(poly.vertices) >= 3:
                polys.append(poly)

        if len(polys) < 4:
            return None

        vertices: List[FrozenVec] = []
        faces: List[Face] = []
        for poly in polys:
            indices: List[int] = []
            for vert in poly.vertices:
                if (
                    abs(vert.x) > UNBOUNDED_LIMIT
                    or abs(vert.y) > UNBOUNDED_LIMIT
                    or abs(vert.z) > UNBOUNDED_LIMIT
                ):
                    return None
                ind = _find_vertex(vertices, vert, epsilon)
                if not indices or indices[-1] != ind:
                    indices.append(ind)
            while len(indices) > 1 and indices[0] == indices[-1]:
                indices.pop()
            if len(set(indices)) < 3:
                continue
            faces.append(Face(poly.plane, tuple(indices)))

        if len(faces) < 4:
            return None
        result = cls(vertices, [])
        for face in faces:
            # Make every face wind counter-clockwise seen from outside.
            if result._area_vec(face.indices).dot(face.plane.normal) < 0:
                face = Face(face.plane, face.indices[::-1])
            result.faces.append(face)

        if result.volume() <= epsilon:
            return None
        return result

    def _area_vec(self, indices: Sequence[int]) -> Vec:
        """Compute twice the vector area of a loop of vertices."""
        total = Vec()
        for i, ind in enumerate(indices):
            total += self.vertices[indices[i - 1]].cross(self.vertices[ind])
        return total

    def __iter__(self) -> Iterator[List[FrozenVec]]:
        """Iterate over the vertex loops of each face."""
        for face in self.faces:
            yield self.face_vertices(face)

    def face_vertices(self, face: Face) -> List[FrozenVec]:
        """Return the positions of the vertices around a face."""
        return [self.vertices[ind] for ind in face.indices]

    def edges(self) -> Set[Tuple[int, int]]:
        """Return each edge as a pair of vertex indices, lowest first."""
        edges = set()
        for face in self.faces:
            for i, ind in enumerate(face.indices):
                prev = face.indices[i - 1]
                edges.add((min(prev, ind), max(prev, ind)))
        return edges

    def area(self, face: Face) -> float:
        """Compute the area of a face."""
        return abs(self._area_vec(face.indices).dot(face.plane.normal)) / 2.0

    def volume(self) -> float:
        """Compute the enclosed volume.

        Each face forms a pyramid with the origin, with the plane distance as the height.
        """
        total = 0.0
        for face in self.faces:
            height = face.plane.normal.dot(self.vertices[face.indices[0]])
            total += height * self._area_vec(face.indices).dot(face.plane.normal) / 2.0
        return total / 3.0

    def bbox(self) -> Tuple[FrozenVec, FrozenVec]:
        """Return the minimum and maximum corners."""
        return FrozenVec.bbox(self.vertices)


@attrs.frozen
class BrushGeometry:
    """A rebuilt solid brush, ready to be drawn."""
    #: Index of the brush in the BSP's brush lump.
    brush_index: int
    poly: Polyhedron
    shape: BrushShape


def build_brush(
    index: int,
    brushes: Sequence[Brush],
    brush_sides: Sequence[BrushSide],
    planes: Sequence[Plane],
    epsilon: float = EPSILON,
) -> Optional[BrushGeometry]:
    """Rebuild the geometry for a single brush.

    Returns ``None`` if the brush is not solid, or its planes do not form a closed solid.
    Box detection uses the total number of sides, but bevel planes are otherwise ignored.

    :raises InvalidReference: If the brush, its sides or their planes do not exist.
    """
    try:
        brush = brushes[index]
    except IndexError:
        raise InvalidReference(f'Brush {index} does not exist.') from None
    if not brush.is_solid:
        return None

    first = brush.first_side
    end = first + brush.num_sides
    if first < 0 or brush.num_sides < 0 or end > len(brush_sides):
        raise InvalidReference(f'Brush {index} has out of range sides.')

    is_box = brush.num_sides == 6
    half_spaces: List[Plane] = []
    for side in brush_sides[first:end]:
        if side.is_bevel:
            continue
        try:
            plane = planes[side.plane_num]
        except IndexError:
            raise InvalidReference(f'Plane {side.plane_num} does not exist.') from None
        if not plane.is_axial:
            is_box = False
        half_spaces.append(plane)

    poly = Polyhedron.from_planes(half_spaces, epsilon)
    if poly is None:
        LOGGER.debug('Brush {} is degenerate, skipping.', index)
        return None
    return BrushGeometry(index, poly, BrushShape.BOX if is_box else BrushShape.COMPLEX)


def build_brushes(
    indices: Iterable[int],
    brushes: Sequence[Brush],
    brush_sides: Sequence[BrushSide],
    planes: Sequence[Plane],
    epsilon: float = EPSILON,
) -> Iterator[BrushGeometry]:
    """Rebuild each brush, skipping ones which are not solid or degenerate."""
    for index in indices:
        geo = build_brush(index, brushes, brush_sides, planes, epsilon)
        if geo is not None:
            yield geo
