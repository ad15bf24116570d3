"""Scan the entity lump for ``info_landmark`` entities.

The entity lump is the keyvalues text of every entity in the map. Rather than parsing the whole
lump, this searches for the classname directly and only parses the blocks that match, which is
much faster on large maps.
"""
from typing import Iterator, List, Optional, Tuple
from typing_extensions import Final
import re

import attrs

from srctools import logger
from srctools.math import FrozenVec, parse_vec_str

from bspoverlay import OverlayError


__all__ = ['Landmark', 'MalformedEntityLump', 'find_landmarks', 'LANDMARK_CLASS']

LOGGER = logger.get_logger(__name__)

LANDMARK_CLASS: Final = 'info_landmark'
BLOCK_START: Final = '{\n'
BLOCK_END: Final = '\n}'
# Matches the size of the buffer the engine uses for names.
MAX_NAME_LEN: Final = 255

ORIGIN_RE: Final = re.compile(r'\s*"origin"\s+"([^"]*)"')
TARGETNAME_RE: Final = re.compile(r'\s*"targetname"\s+"([^"\s]+)')


class MalformedEntityLump(OverlayError):
    """A landmark entity was found, but its block is never closed."""
    default_message = 'Bad entity lump.'


@attrs.frozen
class Landmark:
    """A named reference point, used to align maps connected by level transitions."""
    name: str
    pos: FrozenVec = attrs.field(converter=FrozenVec, factory=FrozenVec)


def _parse_origin(line: str) -> Optional[FrozenVec]:
    """Parse an ``"origin" "x y z"`` line, or return None."""
    match = ORIGIN_RE.match(line)
    if match is None:
        return None
    x, y, z = parse_vec_str(match.group(1), None, None, None)
    if x is None or y is None or z is None:
        return None
    return FrozenVec(x, y, z)


def _parse_targetname(line: str) -> Optional[str]:
    """Parse a ``"targetname" "name"`` line, or return None."""
    match = TARGETNAME_RE.match(line)
    if match is None:
        return None
    return match.group(1)[:MAX_NAME_LEN]


def _iter_blocks(text: str, classname: str) -> Iterator[Tuple[int, int]]:
    """Find the start and end of each entity block containing the classname.

    :raises MalformedEntityLump: If a block is never closed.
    """
    search = f'"classname" "{classname}"'
    pos = 0
    while True:
        found = text.find(search, pos)
        if found == -1:
            return
        # The match may be anywhere inside the entity, go back to the opening brace.
        start = text.rfind(BLOCK_START, 0, found)
        if start == -1:
            start = 0
        else:
            start += len(BLOCK_START)
        end = text.find(BLOCK_END, found)
        if end == -1:
            raise MalformedEntityLump()
        yield start, end
        pos = end + len(BLOCK_END)


def find_landmarks(text: str, classname: str = LANDMARK_CLASS) -> List[Landmark]:
    """Find all landmark entities in the entity lump text, in the order they appear.

    Landmarks without a name are skipped, a missing origin defaults to the world origin.

    :raises MalformedEntityLump: If a landmark block is never closed.
    """
    landmarks: List[Landmark] = []
    for start, end in _iter_blocks(text, classname):
        pos: Optional[FrozenVec] = None
        name: Optional[str] = None
        for line in text[start:end].split('\n'):
            if pos is None:
                pos = _parse_origin(line)
                if pos is not None:
                    continue
            if name is None:
                name = _parse_targetname(line)
            if pos is not None and name is not None:
                break
        if name is not None:
            landmarks.append(Landmark(name, pos if pos is not None else FrozenVec()))
        else:
            LOGGER.debug('Skipping unnamed landmark at offset {}', start)
    return landmarks
