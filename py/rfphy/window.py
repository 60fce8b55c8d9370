from __future__ import annotations

from .errors import InvalidParameter

from typing import Sequence, Tuple

def find_opt(field: Sequence[int]) -> Tuple[int, int]:
    '''Find the longest run of passing (zero) entries.  Returns (start,
    length); the first of several equal runs wins, and a field with no
    passes gives (0, 0).  Callers wanting circular behaviour duplicate the
    field.'''
    max_start, max_count = 0, 0
    start, count = -1, 0
    for i, sample in enumerate(field):
        if sample == 0:
            if start == -1:
                start = i
            count += 1
            continue
        if count > max_count:
            max_start, max_count = start, count
        start, count = -1, 0

    if count > max_count:
        max_start, max_count = start, count

    return max_start, max_count

def window_center(start: int, length: int, size: int|None = None) -> int:
    center = start + length // 2
    if size is not None:
        if size <= 0 or size & size - 1:
            raise InvalidParameter(f'Window size {size} is not a power of two')
        center &= size - 1
    return center

def test_find_opt() -> None:
    field = [1, 0, 0, 0, 1, 1, 0, 0, 0, 0, 1]
    assert find_opt(field) == (6, 4)
    assert window_center(*find_opt(field)) == 8

def test_find_opt_all_fail() -> None:
    assert find_opt([1] * 16) == (0, 0)
    assert find_opt([]) == (0, 0)

def test_find_opt_first_run_wins() -> None:
    assert find_opt([0, 0, 1, 0, 0]) == (0, 2)
    # A run reaching the end of the field counts.
    assert find_opt([1, 0, 1, 0, 0, 0]) == (3, 3)

def test_circular_center() -> None:
    # Passing phases 30, 31, 0, 1 of 32, duplicated to make the run
    # contiguous.
    phases = [0 if p in (30, 31, 0, 1) else 1 for p in range(32)]
    start, length = find_opt(phases * 2)
    assert (start, length) == (30, 4)
    assert window_center(start, length, 32) == 0

def test_center_size_must_be_power_of_two() -> None:
    import pytest
    with pytest.raises(InvalidParameter):
        window_center(30, 4, 24)
    with pytest.raises(InvalidParameter):
        window_center(0, 2, 0)
