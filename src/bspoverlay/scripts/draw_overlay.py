"""Load the brushes from a map, as the overlay command in game does, then summarise them.

Arguments are ``<map | 0> [x y z] [ztest=1]``. Passing ``0`` alone clears the overlay. If an
offset is given it overrides the one computed from landmarks.
"""
from typing import List, Optional, Tuple
from collections import Counter
import argparse
import os

import attrs

from srctools import logger
from srctools.math import FrozenVec

from bspoverlay.bsp import GameVersion
from bspoverlay.geometry import BrushShape
from bspoverlay.landmarks import StaticEngineState
from bspoverlay.overlay import MapOverlay


__all__ = ['Command', 'parse_command', 'run_command', 'summarise', 'main']

LOGGER = logger.get_logger(__name__)
USAGE = '<map | 0> [x y z] [ztest=1]'


@attrs.frozen
class Command:
    """The action requested by the command arguments."""
    #: The map to load, or None to clear.
    filename: Optional[str]
    ztest: bool = True
    offset: Optional[FrozenVec] = None


def _parse_int(value: str) -> int:
    """Parse an integer the way the console does, where junk is zero."""
    try:
        return int(value)
    except ValueError:
        return 0


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_command(args: List[str]) -> Command:
    """Convert the positional arguments into a command.

    :raises ValueError: If the wrong number of arguments are given.
    """
    if len(args) not in (1, 2, 4, 5):
        raise ValueError(f'Usage: {USAGE}')
    if len(args) == 1 and args[0] == '0':
        return Command(None)

    ztest = True
    if len(args) in (2, 5):
        ztest = _parse_int(args[-1]) != 0

    offset = None
    if len(args) >= 4:
        offset = FrozenVec(_parse_float(args[1]), _parse_float(args[2]), _parse_float(args[3]))
    return Command(args[0], ztest, offset)


def run_command(overlay: MapOverlay, command: Command) -> Tuple[bool, str]:
    """Apply a command to the overlay, returning whether it succeeded.

    The offset override is only changed if the map loads successfully.
    """
    if command.filename is None:
        overlay.clear()
        return True, ''
    ok, err = overlay.try_load(command.filename, command.ztest)
    if ok:
        overlay.override_offset = command.offset
    return ok, err


def summarise(overlay: MapOverlay) -> List[str]:
    """Describe the loaded overlay."""
    if not overlay.loaded_file:
        return ['No map loaded.']
    counts = Counter(geo.shape for geo in overlay.geometry)
    lines = [
        f'Map "{overlay.loaded_file}" (ztest={int(overlay.ztest)}):',
        f'  {counts[BrushShape.BOX]} box brushes, '
        f'{counts[BrushShape.COMPLEX]} complex brushes',
        f'  {len(overlay.landmarks)} landmarks:',
    ]
    for mark in overlay.landmarks:
        lines.append(f'    "{mark.name}" at ({mark.pos})')
    lines.append(f'Offset: ({overlay.current_offset()})')
    return lines


def main(argv: Optional[List[str]] = None) -> int:
    """Main script."""
    parser = argparse.ArgumentParser(description=__doc__, usage=f'%(prog)s [options] {USAGE}')
    parser.add_argument(
        "-g", "--game-dir",
        help="the game folder containing the maps/ folder. Defaults to the current directory.",
        default=os.getcwd(),
    )
    parser.add_argument(
        "-m", "--current-map",
        help="treat this map as the one currently being played, "
             "to compute the landmark offset.",
        default='',
    )
    parser.add_argument(
        "--dark-messiah",
        help="accept the BSP versions used by Dark Messiah.",
        action='store_true',
    )
    parser.add_argument(
        "args",
        nargs='+',
        help="the map name, then optionally an offset and the ztest flag.",
    )
    result = parser.parse_args(argv)

    try:
        command = parse_command(result.args)
    except ValueError as exc:
        parser.error(str(exc))

    game = GameVersion.DARK_MESSIAH if result.dark_messiah else GameVersion.NORMAL
    engine = StaticEngineState()
    if result.current_map:
        # Read the landmarks of the "current" map, using another overlay to do the work.
        reference = MapOverlay(result.game_dir, engine, game=game)
        ok, err = reference.try_load(result.current_map)
        if not ok:
            LOGGER.warning('{}: {}', result.current_map, err)
            return 1
        engine = StaticEngineState(result.current_map, reference.landmarks)

    overlay = MapOverlay(result.game_dir, engine, game=game)
    ok, err = run_command(overlay, command)
    if not ok:
        LOGGER.warning('{}', err)
        return 1
    for line in summarise(overlay):
        print(line)
    return 0


if __name__ == '__main__':
    logger.init_logging()
    raise SystemExit(main())
