"""Extract brush geometry and landmarks from Source BSP files, for drawing as an overlay.

Vectors, the logger and the BSP enums come from :external:py:mod:`srctools`.
"""
from typing import TYPE_CHECKING
import sys as _sys


__version__: str
if not TYPE_CHECKING:
    try:
        from ._version import __version__
    except ImportError:
        __version__ = '<unknown>'
    else:
        # Discard the now-useless module. Use globals so static analysis ignores this.
        del _sys.modules[globals().pop('_version').__name__]

__all__ = [
    '__version__', 'OverlayError',

    # Submodules:
    'binformat', 'bsp', 'bsptree', 'entities', 'geometry',  # pyright: ignore
    'landmarks', 'overlay',  # pyright: ignore
]


class OverlayError(Exception):
    """Base class for all errors which abort loading a map overlay.

    The string form is a short message suitable for showing directly to users.
    """
    #: Message used when none is passed.
    default_message = 'Failed to load map.'

    def __init__(self, message: str = '') -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        """The user-facing message."""
        return str(self.args[0])
