"""Helpers for performing tests."""
from typing import Collection, Dict, Iterable, Optional, Sequence, Tuple
import builtins
import math

import pytest
from srctools import math as vec_mod
from srctools.binformat import compress_lzma

from bspoverlay.bsp import (
    BSP_LUMPS, HEADER_1, HEADER_2, HEADER_LUMP, HEADER_SIZE,
    ST_BRUSH, ST_BRUSHSIDE, ST_LEAF_V0, ST_LEAF_V1, ST_LEAFBRUSH, ST_NODE, ST_PLANE,
)
from bspoverlay.entities import Landmark


__all__ = [
    'EPSILON', 'assert_vec', 'build_bsp', 'box_planes', 'cube_bsp',
    'entity_block', 'landmark_block',
]

EPSILON = 1e-6

PlaneTup = Tuple[float, float, float, float, int]
NodeTup = Tuple[int, int, int]  # Plane, child A, child B
LeafTup = Tuple[int, int]  # First leaf brush, count.
BrushTup = Tuple[int, int, int]  # First side, count, contents
SideTup = Tuple[int, bool]  # Plane, bevel


def assert_vec(
    vec: vec_mod.VecBase,
    x: float = 0.0, y: float = 0.0, z: float = 0.0,
    msg: object = '',
    tol: float = EPSILON,
    type: Optional[type] = None,
) -> None:
    """Asserts that Vec is equal to (x,y,z)."""
    # Don't show in pytest tracebacks.
    __tracebackhide__ = True

    assert builtins.type(vec).__name__ in ('Vec', 'FrozenVec'), vec
    if type is not None:
        assert builtins.type(vec) is type, f'{builtins.type(vec)} != {type}: {msg}'

    if not math.isclose(vec.x, x, abs_tol=tol):
        failed = 'x'
    elif not math.isclose(vec.y, y, abs_tol=tol):
        failed = 'y'
    elif not math.isclose(vec.z, z, abs_tol=tol):
        failed = 'z'
    else:
        # Success!
        return

    new_msg = f"{vec!r}.{failed} != ({x}, {y}, {z})"
    if msg:
        new_msg += ': ' + str(msg)
    pytest.fail(new_msg)


def box_planes(
    mins: Tuple[float, float, float],
    maxs: Tuple[float, float, float],
) -> Sequence[PlaneTup]:
    """Produce the six outward-facing planes of an axis-aligned box."""
    planes = []
    for axis in range(3):
        pos = [0.0, 0.0, 0.0]
        neg = [0.0, 0.0, 0.0]
        pos[axis] = 1.0
        neg[axis] = -1.0
        planes.append((*pos, maxs[axis], axis))
        planes.append((*neg, -mins[axis], axis))
    return planes


def entity_block(**keys: str) -> str:
    """Format an entity in the lump layout."""
    return '{\n' + ''.join(f'"{key}" "{value}"\n' for key, value in keys.items()) + '}\n'


def landmark_block(name: str, x: float, y: float, z: float) -> str:
    return entity_block(
        origin=f'{x:g} {y:g} {z:g}',
        targetname=name,
        classname='info_landmark',
    )


def _pack(fmt, records: Iterable[tuple]) -> bytes:
    return b''.join(fmt.pack(*rec) for rec in records)


def build_bsp(
    *,
    magic: bytes = b'VBSP',
    version: int = 20,
    planes: Sequence[PlaneTup] = (),
    nodes: Sequence[NodeTup] = (),
    leafs: Sequence[LeafTup] = (),
    leaf_brushes: Sequence[int] = (),
    brushes: Sequence[BrushTup] = (),
    brush_sides: Sequence[SideTup] = (),
    entities: str = '',
    compress: Collection[BSP_LUMPS] = (),
    truncate: int = 0,
) -> bytes:
    """Construct a BSP file containing the brush lumps.

    :param compress: These lumps will be LZMA compressed.
    :param truncate: Remove this many bytes from the end of the file.
    """
    if version < 20:
        leaf_data = _pack(ST_LEAF_V0, [
            (1, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, first, count, -1, bytes(24))
            for first, count in leafs
        ])
    else:
        leaf_data = _pack(ST_LEAF_V1, [
            (1, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, first, count, -1)
            for first, count in leafs
        ])
    lump_data: Dict[BSP_LUMPS, bytes] = {
        BSP_LUMPS.PLANES: _pack(ST_PLANE, planes),
        BSP_LUMPS.NODES: _pack(ST_NODE, [
            (plane, a, b, 0, 0, 0, 0, 0, 0, 0, 0, 0)
            for plane, a, b in nodes
        ]),
        BSP_LUMPS.LEAFS: leaf_data,
        BSP_LUMPS.LEAFBRUSHES: _pack(ST_LEAFBRUSH, [(ind, ) for ind in leaf_brushes]),
        BSP_LUMPS.BRUSHES: _pack(ST_BRUSH, brushes),
        BSP_LUMPS.BRUSHSIDES: _pack(ST_BRUSHSIDE, [
            (plane, 0, 0, int(bevel)) for plane, bevel in brush_sides
        ]),
        BSP_LUMPS.ENTITIES: entities.encode('utf8') + b'\0',
    }

    header = [HEADER_1.pack(magic, version)]
    body = []
    offset = HEADER_SIZE
    for lump in BSP_LUMPS:
        data = lump_data.get(lump, b'')
        uncomp_size = 0
        if lump in compress:
            uncomp_size = len(data)
            data = compress_lzma(data)
        header.append(HEADER_LUMP.pack(offset, len(data), 0, uncomp_size))
        body.append(data)
        offset += len(data)
    header.append(HEADER_2.pack(1))
    result = b''.join(header + body)
    if truncate:
        result = result[:-truncate]
    return result


def cube_bsp(
    landmarks: Sequence[Landmark] = (),
    *,
    version: int = 20,
    size: float = 64.0,
) -> bytes:
    """Build a map containing a single box brush, with both children of the root node a leaf.

    The second leaf also contains a non-solid brush.
    """
    planes = list(box_planes((0.0, 0.0, 0.0), (size, size, size)))
    return build_bsp(
        version=version,
        planes=planes,
        nodes=[(0, -1, -2)],
        leafs=[(0, 1), (1, 2)],
        leaf_brushes=[0, 0, 1],
        brushes=[(0, 6, 1), (0, 6, 0x20)],
        brush_sides=[(i, False) for i in range(6)],
        entities=''.join(
            landmark_block(mark.name, *mark.pos)
            for mark in landmarks
        ) + entity_block(classname='worldspawn'),
    )
