#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
# ]
# ///

"""
Include/exclude filtering of value sets by exact or regular-expression filters.

Values are compared through a caller-supplied projection to a string key, so
the same filters can select BAM paths, file names, or sample names.
"""

from __future__ import annotations

import os
import re
from typing import TYPE_CHECKING, NamedTuple, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

V = TypeVar("V")


class InvalidFilterError(ValueError):
    """A non-exact filter could not be compiled as a regular expression."""


class FilterSpec(NamedTuple):
    """One filter string and whether it is compared literally."""

    filter: str
    exact: bool = False


# ------------------------------ PROJECTIONS -------------------------------- #


def IDENTITY(value: str) -> str:  # noqa: N802
    """Project a string onto itself."""
    return value


def BASENAME(value: str) -> str:  # noqa: N802
    """Project a path onto its final component."""
    return os.path.basename(value)


# ------------------------------- PREDICATES -------------------------------- #


def _compile(filt: str) -> re.Pattern[str]:
    try:
        return re.compile(filt)
    except re.error as exc:
        msg = f"Invalid filter pattern {filt!r}: {exc}"
        logger.error(msg)
        raise InvalidFilterError(msg) from exc


def matches(key: str | None, filt: str, exact: bool) -> bool:  # noqa: FBT001
    """
    True when `filt` selects `key`.

    Exact mode is plain string equality. Otherwise `filt` is a regular
    expression searched anywhere within `key`.
    """
    if key is None:
        return False
    if exact:
        return key == filt
    return _compile(filt).search(key) is not None


def _build_predicate(
    filters: Iterable[str],
    exact: bool,  # noqa: FBT001
) -> Callable[[str | None], bool]:
    """Compile every filter once and return an OR-predicate over them."""
    filters = list(filters)
    if exact:
        literals = set(filters)
        return lambda key: key is not None and key in literals

    # compile up front so a bad filter fails even on an empty value set
    patterns = [_compile(f) for f in filters]
    return lambda key: key is not None and any(
        p.search(key) is not None for p in patterns
    )


# ------------------------------- SET FILTERS ------------------------------- #


def include_matching(
    values: Iterable[V],
    project: Callable[[V], str | None],
    filters: Iterable[str],
    exact: bool,  # noqa: FBT001
) -> set[V]:
    """Return the values whose projected key matches at least one filter."""
    selected = _build_predicate(filters, exact)
    return {v for v in values if selected(project(v))}


def exclude_matching(
    values: Iterable[V],
    project: Callable[[V], str | None],
    filters: Iterable[str],
    exact: bool,  # noqa: FBT001
) -> set[V]:
    """Return the values whose projected key matches none of the filters."""
    selected = _build_predicate(filters, exact)
    return {v for v in values if not selected(project(v))}


def partition_matching(
    values: Iterable[V],
    project: Callable[[V], str | None],
    filters: Iterable[str],
    exact: bool,  # noqa: FBT001
) -> tuple[list[V], list[V]]:
    """
    Split `values` into (matching, non-matching) lists, preserving input order.

    Each value is projected and tested exactly once, so the two halves are
    always complementary even when `project` maps several values to one key.
    """
    selected = _build_predicate(filters, exact)
    kept: list[V] = []
    rejected: list[V] = []
    for v in values:
        (kept if selected(project(v)) else rejected).append(v)
    return kept, rejected
