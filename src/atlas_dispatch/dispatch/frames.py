"""Frame range specification parsing.

A frame range is a whitespace-separated list of tokens, each either a single
frame number (``120``) or an inclusive range (``1-100``). Ranges written
backwards (``100-1``) cover the same frames as their ascending form.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from atlas_dispatch.dispatch.errors import ParseError

_SINGLE_FRAME = re.compile(r"[0-9]+")
_FRAME_RANGE = re.compile(r"([0-9]+)-([0-9]+)")


def resolve_frames(spec: str, *, limit: int | None = None) -> set[int]:
    """Resolve a frame range specification into a set of frame numbers.

    Args:
        spec: Frame range string, e.g. ``"1-10 15 20-18"``.
        limit: Optional upper bound on the number of resolved frames. Checked
            before ranges are materialized so huge ranges fail cheaply.

    Raises:
        ParseError: A token is neither ``N`` nor ``A-B``, or ``limit`` is exceeded.
    """

    intervals = [_parse_token(token) for token in spec.split()]

    if limit is not None:
        upper_bound = _interval_size(intervals)
        if upper_bound > limit:
            raise ParseError(
                f"Frame range resolves to {upper_bound} frames, limit is {limit}.",
            )

    frames: set[int] = set()
    for start, end in intervals:
        frames.update(range(start, end + 1))
    return frames


def count_frames(spec: str) -> int:
    """Number of distinct frames ``spec`` resolves to, without materializing it."""

    return _interval_size([_parse_token(token) for token in spec.split()])


def format_frames(frames: Iterable[int]) -> str:
    """Canonical form: ascending, deduplicated, space-separated."""

    return " ".join(str(frame) for frame in sorted(set(frames)))


def describe_frames(frames: Iterable[int]) -> str:
    """Compact display form collapsing consecutive runs, e.g. ``1-4 7 9-10``."""

    parts: list[str] = []
    for start, end in _runs(sorted(set(frames))):
        parts.append(str(start) if start == end else f"{start}-{end}")
    return " ".join(parts)


def _parse_token(token: str) -> tuple[int, int]:
    if _SINGLE_FRAME.fullmatch(token):
        frame = int(token)
        return frame, frame
    match = _FRAME_RANGE.fullmatch(token)
    if match is None:
        raise ParseError(f"Invalid frame range token: {token!r}", token=token)
    first, second = int(match.group(1)), int(match.group(2))
    return min(first, second), max(first, second)


def _merge_intervals(intervals: list[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            continue
        merged.append((start, end))
    return merged


def _runs(ordered: list[int]) -> list[tuple[int, int]]:
    runs: list[tuple[int, int]] = []
    for frame in ordered:
        if runs and frame == runs[-1][1] + 1:
            runs[-1] = (runs[-1][0], frame)
            continue
        runs.append((frame, frame))
    return runs


def _interval_size(intervals: list[tuple[int, int]]) -> int:
    return sum(end - start + 1 for start, end in _merge_intervals(intervals))
