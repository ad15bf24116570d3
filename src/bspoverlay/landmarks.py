"""Compute the offset between a loaded overlay and the map the game is currently running.

Maps connected by a level transition share ``info_landmark`` entities with the same name. The
difference between their positions in each map is the translation between the two coordinate
spaces.
"""
from typing import Optional, Sequence
from typing_extensions import Protocol

import attrs

from srctools import logger
from srctools.math import FrozenVec

from bspoverlay.entities import Landmark


__all__ = ['EngineState', 'StaticEngineState', 'LandmarkOffsetResolver', 'landmark_delta']

LOGGER = logger.get_logger(__name__)


class EngineState(Protocol):
    """Queries about the map currently running in the game."""
    def loaded_map(self) -> str:
        """Return the name of the loaded map, or an empty string if none is loaded."""
        ...

    def loaded_landmarks(self) -> Sequence[Landmark]:
        """Return the landmarks in the loaded map, in entity order."""
        ...


@attrs.frozen
class StaticEngineState:
    """Engine state with a fixed map, for use outside the game."""
    map_name: str = ''
    landmarks: Sequence[Landmark] = attrs.field(default=(), converter=tuple)

    def loaded_map(self) -> str:
        return self.map_name

    def loaded_landmarks(self) -> Sequence[Landmark]:
        return self.landmarks


def landmark_delta(loaded: Sequence[Landmark], file: Sequence[Landmark]) -> FrozenVec:
    """Compute the offset from the file's landmarks to the loaded map's landmarks.

    The first landmark in the loaded list which has a counterpart in the file is used.
    If no names are shared, there is no offset.
    """
    file_pos = {}
    for mark in file:
        file_pos.setdefault(mark.name, mark.pos)
    for mark in loaded:
        try:
            pos = file_pos[mark.name]
        except KeyError:
            continue
        return mark.pos - pos
    return FrozenVec()


@attrs.define
class LandmarkOffsetResolver:
    """Computes and caches the landmark offset, keyed on the currently loaded map.

    This does no locking itself, the owner must serialise calls.
    """
    engine: EngineState
    _cached_from: str = attrs.field(default='', init=False)
    _cached_offset: FrozenVec = attrs.field(factory=FrozenVec, init=False)

    @property
    def cached_offset(self) -> FrozenVec:
        """The last computed offset, without recomputing."""
        return self._cached_offset

    def invalidate(self) -> None:
        """Force the offset to be recomputed on the next call."""
        self._cached_from = ''

    def offset(self, loaded_file: Optional[str], file_landmarks: Sequence[Landmark]) -> FrozenVec:
        """Compute the offset for the overlay file and its landmarks.

        :param loaded_file: The filename of the overlay, or ``None``/empty if nothing is loaded.
        :param file_landmarks: Landmarks read from the overlay file.
        """
        in_map = self.engine.loaded_map()
        if not loaded_file or not in_map:
            return FrozenVec()
        if self._cached_from and self._cached_from == in_map:
            return self._cached_offset

        loaded_landmarks = self.engine.loaded_landmarks()
        if in_map in loaded_file and list(loaded_landmarks) == list(file_landmarks):
            # The overlay is the map being played, so they share coordinates.
            # This doesn't set the cache key, since the map might change to a different file.
            self._cached_offset = FrozenVec()
        else:
            self._cached_offset = landmark_delta(loaded_landmarks, file_landmarks)
            self._cached_from = in_map
            LOGGER.debug('Landmark offset to "{}" = {}', in_map, self._cached_offset)
        return self._cached_offset
