"""Load the brushes from another map, to draw on top of the current one.

:py:class:`MapOverlay` owns the loaded geometry. Loading and the offset calculation can be
called from different threads, so both are guarded by a lock. Geometry is only replaced once a
load has fully succeeded.
"""
from typing import Any, List, Optional, Sequence, Tuple
from typing_extensions import Protocol
from pathlib import Path
import threading

import attrs

from srctools import StringPath, logger
from srctools.math import FrozenVec

from bspoverlay import OverlayError
from bspoverlay.bsp import GameVersion, read_bsp
from bspoverlay.bsptree import collect_brushes
from bspoverlay.entities import Landmark, find_landmarks
from bspoverlay.geometry import BrushGeometry, BrushShape, Polyhedron, build_brushes
from bspoverlay.landmarks import EngineState, LandmarkOffsetResolver


__all__ = [
    'MapOverlay', 'MeshBuilder', 'ShapeStyle', 'CannotOpenFile',
    'STYLE_BOX', 'STYLE_COMPLEX', 'style_for',
]

LOGGER = logger.get_logger(__name__)


class CannotOpenFile(OverlayError):
    """The map file does not exist, or could not be read."""
    default_message = 'Cannot open file.'


@attrs.frozen
class ShapeStyle:
    """How to draw a brush."""
    #: Outline colour, as RGBA.
    color: Tuple[int, int, int, int]
    #: If false, the faces are drawn on top of everything else.
    ztest: bool = True

    def with_ztest(self, ztest: bool) -> 'ShapeStyle':
        """Return a copy with a different ztest setting."""
        return attrs.evolve(self, ztest=ztest)


STYLE_BOX = ShapeStyle((0, 255, 255, 20))
STYLE_COMPLEX = ShapeStyle((255, 0, 255, 20))


class MeshBuilder(Protocol):
    """Creates and tracks render meshes for the overlay."""
    def create_mesh(self, poly: Polyhedron, style: ShapeStyle) -> Any:
        """Build a mesh, returning a handle for it."""
        ...

    def is_valid(self, handle: Any) -> bool:
        """Check if a mesh handle can still be drawn.

        Handles may be invalidated when the renderer is reset.
        """
        ...


def style_for(shape: BrushShape, ztest: bool) -> ShapeStyle:
    """Pick the style used to draw a brush."""
    style = STYLE_BOX if shape is BrushShape.BOX else STYLE_COMPLEX
    return style.with_ztest(ztest)


class MapOverlay:
    """Holds the brushes loaded from a map file, and where to draw them."""
    #: If set, use this offset instead of computing one from landmarks.
    override_offset: Optional[FrozenVec]

    def __init__(
        self,
        game_dir: StringPath,
        engine: EngineState,
        renderer: Optional[MeshBuilder] = None,
        game: GameVersion = GameVersion.NORMAL,
    ) -> None:
        self.game_dir = Path(game_dir)
        self.renderer = renderer
        self.game = game
        self.override_offset = None
        self._lock = threading.Lock()
        self._resolver = LandmarkOffsetResolver(engine)
        self._geometry: Tuple[BrushGeometry, ...] = ()
        self._meshes: Tuple[Any, ...] = ()
        self._landmarks: Tuple[Landmark, ...] = ()
        self._loaded_file = ''
        self._ztest = True

    def __repr__(self) -> str:
        return f'<MapOverlay {self._loaded_file!r}: {len(self._geometry)} brushes>'

    @property
    def geometry(self) -> Tuple[BrushGeometry, ...]:
        """The brushes from the last successful load."""
        return self._geometry

    @property
    def landmarks(self) -> Tuple[Landmark, ...]:
        """The landmarks in the last loaded file."""
        return self._landmarks

    @property
    def loaded_file(self) -> str:
        """The name of the loaded file, or an empty string if none is loaded."""
        return self._loaded_file

    @property
    def ztest(self) -> bool:
        """The ztest setting used for the last load."""
        return self._ztest

    def map_path(self, filename: str) -> Path:
        """Compute the location of a map in the game folder."""
        return self.game_dir / 'maps' / f'{filename}.bsp'

    def load(self, filename: str, ztest: bool = True) -> None:
        """Load the brushes from the specified map.

        If this file is already loaded with the same settings, nothing is done.
        If the load fails, the previously loaded map is kept.

        :raises OverlayError: If the file could not be loaded.
        """
        with self._lock, logger.context(filename):
            if filename == self._loaded_file and ztest == self._ztest and self._geometry:
                LOGGER.debug('Already loaded, skipping.')
                return

            path = self.map_path(filename)
            try:
                file = open(path, 'rb')
            except OSError as exc:
                LOGGER.debug('Could not open "{}": {}', path, exc)
                raise CannotOpenFile() from exc
            with file:
                data = read_bsp(file, self.game)

            landmarks = find_landmarks(data.entity_text)
            indices = collect_brushes(data.nodes, data.leafs, data.leaf_brushes)
            geometry: List[BrushGeometry] = list(build_brushes(
                indices, data.brushes, data.brush_sides, data.planes,
            ))
            meshes: List[Any] = []
            if self.renderer is not None:
                for geo in geometry:
                    meshes.append(self.renderer.create_mesh(geo.poly, style_for(geo.shape, ztest)))

            self._geometry = tuple(geometry)
            self._meshes = tuple(meshes)
            self._landmarks = tuple(landmarks)
            self._loaded_file = filename
            self._ztest = ztest
            self._resolver.invalidate()
            LOGGER.info(
                'Loaded {}/{} brushes, {} landmarks',
                len(geometry), len(indices), len(landmarks),
            )

    def try_load(self, filename: str, ztest: bool = True) -> Tuple[bool, str]:
        """Load a map, returning whether it succeeded and an error message if not."""
        try:
            self.load(filename, ztest)
        except OverlayError as exc:
            return False, exc.message
        return True, ''

    def clear(self) -> None:
        """Remove all loaded geometry."""
        with self._lock:
            self._reset()

    def _reset(self) -> None:
        """Drop the loaded map. The lock must be held."""
        self._geometry = ()
        self._meshes = ()
        self._loaded_file = ''
        self._resolver.invalidate()

    def landmark_offset(self) -> FrozenVec:
        """Compute the offset from the loaded file to the map currently being played."""
        with self._lock:
            return self._resolver.offset(self._loaded_file, self._landmarks)

    def current_offset(self) -> FrozenVec:
        """The offset to draw the overlay at, either the override or the landmark offset."""
        override = self.override_offset
        if override is not None:
            return override
        return self.landmark_offset()

    def pin_offset(self) -> FrozenVec:
        """Set the override to the last computed landmark offset, so it can be adjusted."""
        with self._lock:
            self.override_offset = self._resolver.cached_offset
        return self.override_offset

    def draw(self, renderer: MeshBuilder) -> Sequence[Tuple[Any, FrozenVec]]:
        """Return each mesh to draw, along with the offset to draw it at.

        If any mesh has been invalidated by the renderer, the overlay is cleared.
        A map loaded while the meshes were being checked is left alone.
        """
        meshes = self._meshes
        if not all(renderer.is_valid(mesh) for mesh in meshes):
            with self._lock:
                if self._meshes is meshes:
                    LOGGER.info('Meshes were invalidated, clearing overlay.')
                    self._reset()
            return []
        if not meshes:
            return []
        offset = self.current_offset()
        return [(mesh, offset) for mesh in meshes]
