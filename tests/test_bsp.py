"""Test the BSP parser's functionality."""
from io import BytesIO

import pytest
from srctools.math import FrozenVec

from bspoverlay.bsp import (
    AXIAL_PLANES, BSP_LUMPS, HEADER_1, HEADER_LUMP, HEADER_SIZE, BSPContents, GameVersion,
    LeafIndex, LeafV0, LeafV1, NodeIndex, NotThisFormat, Plane, PlaneType, TruncatedFile,
    UnsupportedVersion,
    decode_child, is_version_supported, read_bsp, read_bsp_file, read_header,
)

from helpers import assert_vec, build_bsp, box_planes, cube_bsp


def test_header_size() -> None:
    """The header has a fixed size, 64 lumps."""
    assert HEADER_SIZE == 1036


def test_read_header() -> None:
    """Test the lump offsets are read correctly."""
    data = build_bsp(planes=[(1.0, 0.0, 0.0, 32.0, 0)])
    header = read_header(BytesIO(data))
    assert header.magic == b'VBSP'
    assert header.version == 20
    assert header.map_revision == 1
    assert len(header.lumps) == 64
    # Entities are first, then planes.
    ent_lump = header.lumps[BSP_LUMPS.ENTITIES]
    assert ent_lump.offset == HEADER_SIZE
    assert ent_lump.length == 1  # Just the null.
    plane_lump = header.lumps[BSP_LUMPS.PLANES]
    assert plane_lump.offset == HEADER_SIZE + 1
    assert plane_lump.length == 20
    assert not plane_lump.is_compressed


def test_bad_magic() -> None:
    """Test files with the wrong identifier are rejected."""
    with pytest.raises(NotThisFormat, match='Not a bsp file.'):
        read_bsp(BytesIO(build_bsp(magic=b'IBSP')))


@pytest.mark.parametrize('version', [17, 18, 21, 29, (20 << 16) | 20])
def test_unsupported_version(version: int) -> None:
    """Only versions 19 and 20 are accepted normally."""
    with pytest.raises(UnsupportedVersion, match='Unsupported bsp version.'):
        read_bsp(BytesIO(build_bsp(version=version)))


def test_dark_messiah_version() -> None:
    """Dark Messiah's packed versions are only accepted for that game."""
    version = (2 << 16) | 15
    assert not is_version_supported(version, GameVersion.NORMAL)
    assert is_version_supported(version, GameVersion.DARK_MESSIAH)
    # Unless the upper bits are 20.
    assert not is_version_supported((20 << 16) | 15, GameVersion.DARK_MESSIAH)
    # Regular versions are fine for both.
    assert is_version_supported(19, GameVersion.DARK_MESSIAH)
    assert is_version_supported(20, GameVersion.NORMAL)

    data = read_bsp(BytesIO(build_bsp(version=version)), GameVersion.DARK_MESSIAH)
    assert data.version == version


@pytest.mark.parametrize('size', [0, 3, 8, HEADER_SIZE - 1])
def test_truncated_header(size: int) -> None:
    """Files shorter than the header fail."""
    data = build_bsp()[:size]
    with pytest.raises(TruncatedFile, match='Unexpected EOF.'):
        read_bsp(BytesIO(data))


@pytest.mark.parametrize('amount', [1, 4, 8])
def test_truncated_lump(amount: int) -> None:
    """If a lump extends past the end of the file, the read fails."""
    data = cube_bsp()
    # Brush sides are the last non-empty lump.
    data = data[:-amount]
    with pytest.raises(TruncatedFile):
        read_bsp(BytesIO(data))


def test_decode_child() -> None:
    """Negative children are leafs."""
    assert decode_child(0) == NodeIndex(0)
    assert decode_child(12) == NodeIndex(12)
    assert decode_child(-1) == LeafIndex(0)
    assert decode_child(-5) == LeafIndex(4)


@pytest.mark.parametrize('version, leaf_type', [(19, LeafV0), (20, LeafV1)])
def test_leaf_layouts(version: int, leaf_type: type) -> None:
    """Test both leaf layouts expose the leaf brushes."""
    data = read_bsp(BytesIO(build_bsp(
        version=version,
        nodes=[(0, -1, -3)],
        leafs=[(0, 2), (2, 0), (2, 3)],
        leaf_brushes=[5, 6, 7, 8, 9],
    )))
    assert len(data.leafs) == 3
    for leaf in data.leafs:
        assert type(leaf) is leaf_type
    assert [(leaf.first_leaf_brush, leaf.num_leaf_brushes) for leaf in data.leafs] == [
        (0, 2), (2, 0), (2, 3),
    ]
    assert data.leaf_brushes == [5, 6, 7, 8, 9]
    [node] = data.nodes
    assert node.plane_num == 0
    assert node.children == (LeafIndex(0), LeafIndex(2))


def test_read_brushes() -> None:
    """Test the brush lumps are parsed."""
    data = read_bsp(BytesIO(build_bsp(
        planes=[
            (0.0, 0.0, 1.0, 64.0, 2),
            (0.6, 0.8, 0.0, -12.5, 4),
        ],
        brushes=[(0, 2, 1), (2, 1, 0x20 | 0x80000000)],
        brush_sides=[(0, False), (1, True), (1, False)],
    )))
    assert data.planes == [
        Plane(FrozenVec(0, 0, 1), 64.0, PlaneType.Z),
        Plane(FrozenVec(0.6, 0.8, 0), -12.5, PlaneType.ANY_Y),
    ]
    first, second = data.brushes
    assert first.first_side == 0
    assert first.num_sides == 2
    assert first.is_solid
    assert second.first_side == 2
    assert not second.is_solid
    assert BSPContents.WATER in second.contents

    assert [side.plane_num for side in data.brush_sides] == [0, 1, 1]
    assert [side.is_bevel for side in data.brush_sides] == [False, True, False]


def test_invalid_plane_type() -> None:
    """An unknown plane type is recomputed from the normal."""
    data = read_bsp(BytesIO(build_bsp(planes=[(1.0, 0.0, 0.0, 0.0, 12)])))
    assert data.planes[0].type is PlaneType.X


def test_plane_type_from_normal() -> None:
    assert PlaneType.from_normal(FrozenVec(0, -1, 0)) is PlaneType.Y
    assert PlaneType.from_normal(FrozenVec(0.6, 0.0, 0.8)) is PlaneType.ANY_Z
    assert PlaneType.from_normal(FrozenVec(0.8, 0.6, 0.0)) is PlaneType.ANY_X
    assert PlaneType.X in AXIAL_PLANES
    assert PlaneType.ANY_Z not in AXIAL_PLANES
    assert Plane(FrozenVec(0, 1, 0), 4).is_axial
    assert not Plane(FrozenVec(0.6, 0.0, 0.8), 4).is_axial
    # Constructing without a type computes it.
    assert Plane(FrozenVec(0, 0, -1), 8).type is PlaneType.Z


def test_plane_intersect() -> None:
    plane = Plane(FrozenVec(0, 0, 1), 16.0)
    assert plane.distance_to(FrozenVec(5, 5, 20)) == pytest.approx(4.0)
    assert_vec(plane.intersect_line(FrozenVec(0, 0, 0), FrozenVec(0, 32, 32)), 0, 16, 16)
    assert plane.intersect_line(FrozenVec(0, 0, 0), FrozenVec(32, 32, 0)) is None


def test_entity_text() -> None:
    """The entity lump is read up to the null terminator."""
    data = read_bsp(BytesIO(build_bsp(entities='{\n"classname" "worldspawn"\n}\n')))
    assert data.entity_text == '{\n"classname" "worldspawn"\n}\n'


def test_lzma_lumps() -> None:
    """Compressed lumps are decompressed transparently."""
    planes = box_planes((-8.0, -8.0, -8.0), (8.0, 8.0, 8.0))
    compressed = build_bsp(
        planes=planes,
        brushes=[(0, 6, 1)],
        brush_sides=[(i, False) for i in range(6)],
        entities='{\n"classname" "worldspawn"\n}\n',
        compress=[BSP_LUMPS.PLANES, BSP_LUMPS.BRUSHSIDES, BSP_LUMPS.ENTITIES],
    )
    header = read_header(BytesIO(compressed))
    assert header.lumps[BSP_LUMPS.PLANES].is_compressed
    data = read_bsp(BytesIO(compressed))
    assert len(data.planes) == 6
    assert [side.plane_num for side in data.brush_sides] == list(range(6))
    assert data.entity_text == '{\n"classname" "worldspawn"\n}\n'


def test_corrupt_lzma_lump() -> None:
    """A compressed lump too short for its own header aborts the load."""
    data = bytearray(build_bsp(
        planes=box_planes((-8.0, -8.0, -8.0), (8.0, 8.0, 8.0)),
        compress=[BSP_LUMPS.PLANES],
    ))
    info = read_header(BytesIO(data)).lumps[BSP_LUMPS.PLANES]
    # Cut the lump off after the signature and part of the size fields.
    HEADER_LUMP.pack_into(
        data, HEADER_1.size + BSP_LUMPS.PLANES.value * HEADER_LUMP.size,
        info.offset, 6, 0, info.uncomp_size,
    )
    with pytest.raises(TruncatedFile, match="Corrupt compressed lump"):
        read_bsp(BytesIO(data))


def test_read_file(tmp_path) -> None:
    """Test reading from disk."""
    path = tmp_path / 'map.bsp'
    path.write_bytes(cube_bsp())
    data = read_bsp_file(path)
    assert len(data.brushes) == 2
    with pytest.raises(FileNotFoundError):
        read_bsp_file(tmp_path / 'missing.bsp')
