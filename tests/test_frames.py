from __future__ import annotations

import allure
import pytest

from atlas_dispatch.dispatch.errors import ParseError
from atlas_dispatch.dispatch.frames import (
    count_frames,
    describe_frames,
    format_frames,
    resolve_frames,
)

pytestmark = [
    allure.epic("Job Decomposition"),
    allure.feature("Frame Range Resolver"),
]


@pytest.mark.parametrize(
    ("spec", "expected"),
    [
        ("1-3 5", {1, 2, 3, 5}),
        ("7", {7}),
        ("0", {0}),
        ("1-3 2-4", {1, 2, 3, 4}),
        ("5 5 5", {5}),
        ("3-3", {3}),
        ("  1-2\t\n4  ", {1, 2, 4}),
        ("007", {7}),
    ],
)
def test_resolve_frames_examples(spec: str, expected: set[int]) -> None:
    assert resolve_frames(spec) == expected


def test_descending_range_is_normalized() -> None:
    assert resolve_frames("100-0") == set(range(0, 101))
    assert resolve_frames("10-8") == {8, 9, 10}


@pytest.mark.parametrize("spec", ["", "   ", "\t\n"])
def test_empty_spec_yields_no_frames(spec: str) -> None:
    assert resolve_frames(spec) == set()


@pytest.mark.parametrize(
    "token",
    ["a", "1-", "-1", "1-2-3", "1,2", "1.5", "+3", "１"],
)
def test_invalid_token_raises_parse_error_naming_it(token: str) -> None:
    with pytest.raises(ParseError) as error:
        resolve_frames(f"1-3 {token}")

    assert error.value.token == token
    assert token in str(error.value)
    assert isinstance(error.value, ValueError)


def test_limit_is_checked_before_ranges_are_materialized() -> None:
    with pytest.raises(ParseError, match="limit is 10"):
        resolve_frames("0-999999999999", limit=10)


def test_limit_counts_overlapping_ranges_once() -> None:
    assert resolve_frames("1-10 5-10 10", limit=10) == set(range(1, 11))


def test_count_frames_merges_overlaps() -> None:
    assert count_frames("1-10 5-15 20") == 16
    assert count_frames("") == 0
    assert count_frames("0-999999999999") == 1_000_000_000_000


def test_format_frames_is_canonical_and_round_trips() -> None:
    spec = "10-8 1 3-4 4"
    frames = resolve_frames(spec)

    assert format_frames(frames) == "1 3 4 8 9 10"
    assert resolve_frames(format_frames(frames)) == frames


def test_describe_frames_collapses_runs() -> None:
    assert describe_frames({1, 2, 3, 4, 7, 9, 10}) == "1-4 7 9-10"
    assert describe_frames(set()) == ""
    assert describe_frames([5]) == "5"


def test_resolution_is_deterministic() -> None:
    assert resolve_frames("1-50 25-75") == resolve_frames("1-50 25-75")
