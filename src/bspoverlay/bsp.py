"""Read the brush-related parts of Source BSP files.

Only the lumps needed to reconstruct solid brushes and landmarks are parsed, everything else in
the file is skipped. The lump and content enums are shared with :external:py:mod:`srctools.bsp`,
but the records are decoded directly into small immutable classes here. A :py:class:`BSPData` is
only returned once the whole file has been read, so a failed read leaves nothing half-built.
"""
from typing import IO, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union
from typing_extensions import Final, Protocol
from enum import Enum
import lzma
import struct

import attrs

from srctools import StringPath, logger
from srctools.binformat import decompress_lzma, read_array
from srctools.bsp import BSP_LUMPS, BSP_MAGIC, LUMP_COUNT, PlaneType
from srctools.const import BSPContents
from srctools.math import FrozenVec, Vec

from bspoverlay import OverlayError
from bspoverlay.binformat import iter_records, read_exact, read_struct


__all__ = [
    'BSP_LUMPS', 'GameVersion', 'SUPPORTED_VERSIONS', 'AXIAL_PLANES',
    'BSPError', 'NotThisFormat', 'UnsupportedVersion', 'TruncatedFile', 'InvalidReference',
    'LumpInfo', 'BSPHeader', 'BSPData',
    'Plane', 'PlaneType', 'Node', 'NodeIndex', 'LeafIndex', 'NodeRef',
    'LeafBrushRange', 'LeafV0', 'LeafV1',
    'Brush', 'BrushSide', 'BSPContents',
    'read_header', 'read_bsp', 'read_bsp_file',
]

LOGGER = logger.get_logger(__name__)

HEADER_1: Final = struct.Struct('<4si')  # Magic and version.
HEADER_LUMP: Final = struct.Struct('<4i')  # Offset, length, version, uncompressed size.
HEADER_2: Final = struct.Struct('<i')  # Map revision.
HEADER_SIZE: Final = HEADER_1.size + LUMP_COUNT * HEADER_LUMP.size + HEADER_2.size
#: The version numbers used by regular Source games.
SUPPORTED_VERSIONS: Final[FrozenSet[int]] = frozenset({19, 20})
#: Plane types which lie exactly along an axis.
AXIAL_PLANES: Final[FrozenSet[PlaneType]] = frozenset({PlaneType.X, PlaneType.Y, PlaneType.Z})

ST_PLANE: Final = struct.Struct('<ffffi')
ST_NODE: Final = struct.Struct('<iii6hHHh2x')
ST_LEAF_V0: Final = struct.Struct('<ihh6h4Hh24s2x')
ST_LEAF_V1: Final = struct.Struct('<ihh6h4Hh2x')
ST_LEAFBRUSH: Final = struct.Struct('<H')
ST_BRUSH: Final = struct.Struct('<iiI')
ST_BRUSHSIDE: Final = struct.Struct('<HhhH')


class BSPError(OverlayError):
    """Raised when a BSP file could not be parsed."""


class NotThisFormat(BSPError):
    """The file does not start with the BSP magic number."""
    default_message = 'Not a bsp file.'


class UnsupportedVersion(BSPError):
    """The BSP version is not one we know how to read."""
    default_message = 'Unsupported bsp version.'


class TruncatedFile(BSPError):
    """A lump or header extends past the end of the file."""
    default_message = 'Unexpected EOF.'


class InvalidReference(BSPError):
    """A record refers to another record which does not exist."""
    default_message = 'Invalid index in bsp data.'


class GameVersion(Enum):
    """Identifies specific games which we need to detect and specially handle."""
    NORMAL = 'normal'  # Anything else.
    #: Dark Messiah packs additional data into the version number.
    DARK_MESSIAH = 'dark_messiah'


def _plane_type_default(self: 'Plane') -> PlaneType:
    """Compute the plane type parameter if not provided."""
    return PlaneType.from_normal(self.normal)


@attrs.frozen
class Plane:
    """A plane. Brushes are solid behind each of their planes, the normal points outward."""
    normal: FrozenVec = attrs.field(converter=FrozenVec)
    dist: float = attrs.field(converter=float)
    type: PlaneType = attrs.Factory(_plane_type_default, takes_self=True)

    def distance_to(self, point: Union[Vec, FrozenVec]) -> float:
        """Return the signed distance of the point in front of the plane."""
        return self.normal.dot(point) - self.dist

    def intersect_line(self, start: FrozenVec, end: FrozenVec) -> Optional[FrozenVec]:
        """Find where the line segment crosses this plane.

        Returns ``None`` if the segment is parallel to the plane.
        """
        dist_start = self.distance_to(start)
        dist_end = self.distance_to(end)
        if abs(dist_start - dist_end) < 1e-12:
            return None
        frac = dist_start / (dist_start - dist_end)
        return start + (end - start) * frac

    @property
    def is_axial(self) -> bool:
        """Check if the plane is exactly aligned to an axis."""
        return self.type in AXIAL_PLANES


del _plane_type_default


@attrs.frozen
class NodeIndex:
    """A child reference pointing to another node."""
    index: int


@attrs.frozen
class LeafIndex:
    """A child reference pointing to a leaf."""
    index: int


NodeRef = Union[NodeIndex, LeafIndex]


def decode_child(raw: int) -> NodeRef:
    """Convert the signed child index stored in the file.

    Non-negative values are nodes, negative values are ``-1 - leaf``.
    """
    if raw >= 0:
        return NodeIndex(raw)
    else:
        return LeafIndex(-1 - raw)


@attrs.frozen
class Node:
    """A tree node in the visleaf/BSP data, splitting space in two."""
    plane_num: int
    children: Tuple[NodeRef, NodeRef]


class LeafBrushRange(Protocol):
    """Both leaf layouts expose the slice of the leaf-brush array they contain."""
    @property
    def first_leaf_brush(self) -> int: ...
    @property
    def num_leaf_brushes(self) -> int: ...


@attrs.frozen
class LeafV1:
    """A leaf in the visleaf/BSP data, in the version 20 layout."""
    contents: int
    cluster_id: int
    first_leaf_brush: int
    num_leaf_brushes: int


@attrs.frozen
class LeafV0:
    """A leaf in the version 19 layout, which additionally stores ambient lighting."""
    contents: int
    cluster_id: int
    first_leaf_brush: int
    num_leaf_brushes: int
    ambient: bytes = attrs.field(default=bytes(24), repr=False)


@attrs.frozen
class Brush:
    """A brush definition, referencing a range of brush sides."""
    first_side: int
    num_sides: int
    contents: BSPContents

    @property
    def is_solid(self) -> bool:
        """Only solid brushes are drawn."""
        return BSPContents.SOLID in self.contents


@attrs.frozen
class BrushSide:
    """A side of the original brush geometry which the map is constructed from."""
    plane_num: int
    texinfo: int
    dispinfo: int
    #: Bevel planes are only used for collision, and are not part of the visible brush.
    is_bevel: bool


@attrs.frozen
class LumpInfo:
    """Represents a lump header in a BSP file."""
    offset: int
    length: int
    version: int
    # Originally the fourCC, this is the uncompressed size if the lump is LZMA compressed.
    uncomp_size: int

    @property
    def is_compressed(self) -> bool:
        """Check if the lump header indicates LZMA compression."""
        return self.uncomp_size > 0


@attrs.frozen
class BSPHeader:
    """The fixed header at the start of the BSP file."""
    magic: bytes
    version: int
    lumps: Dict[BSP_LUMPS, LumpInfo] = attrs.field(repr=False)
    map_revision: int


@attrs.define(eq=False)
class BSPData:
    """All the records required to rebuild brushes, read from a single BSP file."""
    header: BSPHeader
    planes: List[Plane]
    nodes: List[Node]
    leafs: Sequence[LeafBrushRange]
    leaf_brushes: List[int]
    brushes: List[Brush]
    brush_sides: List[BrushSide]
    entity_text: str

    @property
    def version(self) -> int:
        """The version ID in the file."""
        return self.header.version


def is_version_supported(version: int, game: GameVersion) -> bool:
    """Check if we know how to read this BSP version.

    Dark Messiah stores additional data in the high bits of the version, which is only accepted
    if the caller knows that game is running.
    """
    if version in SUPPORTED_VERSIONS:
        return True
    return game is GameVersion.DARK_MESSIAH and (version >> 16) != 20


def read_header(file: IO[bytes], game: GameVersion = GameVersion.NORMAL) -> BSPHeader:
    """Read and validate the header at the start of the file."""
    try:
        magic, version = read_struct(HEADER_1, file)
    except EOFError as exc:
        raise TruncatedFile() from exc
    if magic != BSP_MAGIC:
        raise NotThisFormat()
    if not is_version_supported(version, game):
        LOGGER.debug('Rejected BSP version {} ({})', version, game.value)
        raise UnsupportedVersion()

    lumps: Dict[BSP_LUMPS, LumpInfo] = {}
    try:
        for index in range(LUMP_COUNT):
            offset, length, lump_ver, uncomp_size = read_struct(HEADER_LUMP, file)
            lumps[BSP_LUMPS(index)] = LumpInfo(offset, length, lump_ver, uncomp_size)
        [map_revision] = read_struct(HEADER_2, file)
    except EOFError as exc:
        raise TruncatedFile() from exc
    return BSPHeader(magic, version, lumps, map_revision)


def _read_lump(file: IO[bytes], header: BSPHeader, lump: BSP_LUMPS) -> bytes:
    """Seek to and read the raw data for a lump."""
    info = header.lumps[lump]
    if info.offset < 0 or info.length < 0:
        raise TruncatedFile()
    try:
        file.seek(info.offset)
        data = read_exact(file, info.length)
    except (EOFError, OSError, ValueError) as exc:
        raise TruncatedFile() from exc
    if info.is_compressed and data[:4] == b'LZMA':
        LOGGER.debug('Decompressing lump {} ({} bytes)', lump.name, len(data))
        try:
            data = decompress_lzma(data)
        except (ValueError, struct.error, lzma.LZMAError) as exc:
            raise TruncatedFile('Corrupt compressed lump.') from exc
    return data


def _parse_planes(data: bytes) -> List[Plane]:
    planes = []
    for x, y, z, dist, typ in iter_records(ST_PLANE, data):
        normal = FrozenVec(x, y, z)
        try:
            plane_type = PlaneType(typ)
        except ValueError:
            plane_type = PlaneType.from_normal(normal)
        planes.append(Plane(normal, dist, plane_type))
    return planes


def _parse_nodes(data: bytes) -> List[Node]:
    return [
        Node(plane_num, (decode_child(child_a), decode_child(child_b)))
        for (
            plane_num, child_a, child_b,
            min_x, min_y, min_z,
            max_x, max_y, max_z,
            first_face, face_count, area_ind,
        ) in iter_records(ST_NODE, data)
    ]


def _parse_leafs(data: bytes, version: int) -> Union[List[LeafV0], List[LeafV1]]:
    """Parse leafs, using the layout appropriate for the version."""
    if version < 20:
        return [
            LeafV0(contents, cluster, first_brush, num_brushes, ambient)
            for (
                contents, cluster, area_flags,
                min_x, min_y, min_z, max_x, max_y, max_z,
                first_face, num_faces, first_brush, num_brushes,
                water_ind, ambient,
            ) in iter_records(ST_LEAF_V0, data)
        ]
    else:
        return [
            LeafV1(contents, cluster, first_brush, num_brushes)
            for (
                contents, cluster, area_flags,
                min_x, min_y, min_z, max_x, max_y, max_z,
                first_face, num_faces, first_brush, num_brushes,
                water_ind,
            ) in iter_records(ST_LEAF_V1, data)
        ]


def _parse_brushes(data: bytes) -> List[Brush]:
    return [
        Brush(first_side, side_count, BSPContents(contents))
        for first_side, side_count, contents in iter_records(ST_BRUSH, data)
    ]


def _parse_brush_sides(data: bytes) -> List[BrushSide]:
    # The bevel member should be bool, but it has other bits set randomly.
    return [
        BrushSide(plane_num, texinfo, dispinfo, bool(bevel & 1))
        for plane_num, texinfo, dispinfo, bevel in iter_records(ST_BRUSHSIDE, data)
    ]


def _parse_entity_text(data: bytes) -> str:
    """The entity lump is a null-terminated string."""
    end = data.find(b'\0')
    if end != -1:
        data = data[:end]
    return data.decode('utf8', 'surrogateescape')


def read_bsp(file: IO[bytes], game: GameVersion = GameVersion.NORMAL) -> BSPData:
    """Read the header and all brush-related lumps from a binary stream.

    :raises BSPError: If the file is not a valid BSP, or is truncated.
    """
    header = read_header(file, game)
    planes = _parse_planes(_read_lump(file, header, BSP_LUMPS.PLANES))
    nodes = _parse_nodes(_read_lump(file, header, BSP_LUMPS.NODES))
    leafs = _parse_leafs(_read_lump(file, header, BSP_LUMPS.LEAFS), header.version)
    leaf_brushes = read_array(ST_LEAFBRUSH, _read_lump(file, header, BSP_LUMPS.LEAFBRUSHES))
    brushes = _parse_brushes(_read_lump(file, header, BSP_LUMPS.BRUSHES))
    brush_sides = _parse_brush_sides(_read_lump(file, header, BSP_LUMPS.BRUSHSIDES))
    entity_text = _parse_entity_text(_read_lump(file, header, BSP_LUMPS.ENTITIES))
    LOGGER.debug(
        'Read BSP v{}: {} planes, {} nodes, {} leafs, {} brushes',
        header.version, len(planes), len(nodes), len(leafs), len(brushes),
    )
    return BSPData(
        header,
        planes, nodes, leafs, leaf_brushes,
        brushes, brush_sides,
        entity_text,
    )


def read_bsp_file(filename: StringPath, game: GameVersion = GameVersion.NORMAL) -> BSPData:
    """Open a BSP file on disk and read it.

    :raises FileNotFoundError: etc if the file could not be opened.
    """
    with open(filename, 'rb') as file:
        return read_bsp(file, game)
