"""Strict reading helpers for the BSP reader.

:external:py:mod:`srctools.binformat` assumes the data is all there. Map files here may be
truncated or half-written, so these check every read and raise :external:py:class:`EOFError`
when the file runs out. The reader turns that into ``TruncatedFile``.
"""
from typing import IO, Any, List, Tuple
from struct import Struct


__all__ = ['read_exact', 'read_struct', 'iter_records']


def read_exact(file: IO[bytes], size: int) -> bytes:
    """Read exactly ``size`` bytes.

    :raises EOFError: If the file ends first, or the size is negative.
    """
    if size < 0:
        raise EOFError(f'Negative read size: {size}')
    data = file.read(size)
    if len(data) < size:
        raise EOFError(f'Wanted {size} bytes, file ended after {len(data)}')
    return data


def read_struct(fmt: Struct, file: IO[bytes]) -> Tuple[Any, ...]:
    """Unpack one structure from the current position."""
    return fmt.unpack(read_exact(file, fmt.size))


def iter_records(fmt: Struct, data: bytes) -> List[Tuple[Any, ...]]:
    """Unpack every whole record in the lump.

    A trailing partial record is dropped, as the engine does.
    """
    usable = len(data) - len(data) % fmt.size
    return list(fmt.iter_unpack(memoryview(data)[:usable]))
