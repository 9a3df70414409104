"""
Chunk planning.

A chunk's byte range is a pure function of (index, file_size, chunk_size);
nothing here is ever persisted.
"""
from typing import Iterable, Iterator, Tuple


def _check(file_size: int, chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if file_size < 0:
        raise ValueError(f"file_size must not be negative, got {file_size}")


def plan(file_size: int, chunk_size: int) -> int:
    """Number of chunks needed to cover file_size bytes."""
    _check(file_size, chunk_size)
    return (file_size + chunk_size - 1) // chunk_size


def range_of(index: int, file_size: int, chunk_size: int) -> Tuple[int, int]:
    """Half-open byte range [start, end) of chunk `index`."""
    total_chunks = plan(file_size, chunk_size)
    if index < 0 or index >= total_chunks:
        raise ValueError(f"chunk index {index} is outside [0, {total_chunks})")
    start = index * chunk_size
    return start, min(start + chunk_size, file_size)


def chunk_length(index: int, file_size: int, chunk_size: int) -> int:
    start, end = range_of(index, file_size, chunk_size)
    return end - start


def iter_ranges(file_size: int, chunk_size: int) -> Iterator[Tuple[int, int, int]]:
    """Yield (index, start, end) for every planned chunk, in order."""
    for index in range(plan(file_size, chunk_size)):
        start, end = range_of(index, file_size, chunk_size)
        yield index, start, end


def bytes_covered(indices: Iterable[int], file_size: int, chunk_size: int) -> int:
    """Total bytes covered by a set of chunk indices (duplicates counted once)."""
    return sum(chunk_length(i, file_size, chunk_size) for i in set(indices))


def progress_percent(indices: Iterable[int], file_size: int, chunk_size: int) -> float:
    """Byte-weighted progress in [0, 100]. An empty file is trivially complete."""
    if file_size == 0:
        return 100.0
    percent = bytes_covered(indices, file_size, chunk_size) / file_size * 100
    return max(0.0, min(100.0, percent))
