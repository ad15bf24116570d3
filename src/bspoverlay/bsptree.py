"""Traverse the BSP tree, to find all the brushes which are part of the world.

Maps can have very deep trees, so this uses an explicit stack instead of recursion.
"""
from typing import List, Sequence, Set

from srctools import logger

from bspoverlay.bsp import InvalidReference, LeafBrushRange, LeafIndex, Node, NodeIndex, NodeRef


__all__ = ['collect_brushes']

LOGGER = logger.get_logger(__name__)


def _leaf_brushes(
    leaf_ind: int,
    leafs: Sequence[LeafBrushRange],
    leaf_brushes: Sequence[int],
) -> Sequence[int]:
    """Fetch the brush indexes contained in a leaf."""
    try:
        leaf = leafs[leaf_ind]
    except IndexError:
        raise InvalidReference(f'Leaf {leaf_ind} does not exist.') from None
    first = leaf.first_leaf_brush
    end = first + leaf.num_leaf_brushes
    if first < 0 or end > len(leaf_brushes):
        raise InvalidReference(f'Leaf {leaf_ind} has out of range brushes.')
    return leaf_brushes[first:end]


def collect_brushes(
    nodes: Sequence[Node],
    leafs: Sequence[LeafBrushRange],
    leaf_brushes: Sequence[int],
) -> List[int]:
    """Starting from the root node, find every brush contained in a leaf.

    The same brush usually appears in many leafs, so this returns each index once, sorted.

    :raises InvalidReference: If a node or leaf refers to a missing record, or a node is
        reached more than once.
    """
    if not nodes:
        return []
    result: Set[int] = set()
    visited: Set[int] = set()  # Guard against cycles in corrupt files.
    stack: List[int] = []
    current: NodeRef = NodeIndex(0)

    while True:
        # Descend down the first child as far as possible.
        while isinstance(current, NodeIndex):
            ind = current.index
            if ind in visited:
                raise InvalidReference(f'Node {ind} is reached twice.')
            try:
                node = nodes[ind]
            except IndexError:
                raise InvalidReference(f'Node {ind} does not exist.') from None
            visited.add(ind)
            stack.append(ind)
            current = node.children[0]

        assert isinstance(current, LeafIndex), current
        result.update(_leaf_brushes(current.index, leafs, leaf_brushes))

        if not stack:
            break
        current = nodes[stack.pop()].children[1]

    LOGGER.debug('Found {} brushes in {} nodes', len(result), len(visited))
    return sorted(result)
