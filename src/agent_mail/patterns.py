"""Path-pattern normalization and the glob overlap test used by file reservations.

Two patterns *overlap* when at least one concrete relative path matches both.
Patterns are split on ``/`` into segments:

- a literal or single-segment glob (``*``, ``?``, ``[...]``) matches exactly one
  path segment and never crosses ``/``;
- ``**`` matches zero or more whole segments;
- ``{a,b}`` groups (non-nested) expand into alternatives before matching.

The test runs a two-pointer automaton over both segment lists and, for a pair
of single-segment globs, the same automaton over characters. Each level is an
explicit reachability search over ``(i, j)`` states, so work is bounded by the
product of the pattern lengths and there is no recursion depth to exhaust.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator
from functools import lru_cache
from itertools import product
from typing import Union

from .errors import PathEscapeError, ValidationError

GLOBSTAR = "**"
MAX_BRACE_ALTERNATIVES = 64
MAX_PATTERN_LENGTH = 512

_DRIVE_RE = re.compile(r"^[A-Za-z]:")

# Character tokens inside one segment
STAR = ("*",)
ANY = ("?",)
Token = tuple
Segment = Union[str, tuple[Token, ...]]


def _split(raw: str) -> list[str]:
    text = (raw or "").strip().replace("\\", "/")
    if not text:
        raise ValidationError("Pattern must not be empty.", error_type="INVALID_PATTERN")
    if len(text) > MAX_PATTERN_LENGTH:
        raise ValidationError(
            f"Pattern exceeds {MAX_PATTERN_LENGTH} characters.",
            error_type="INVALID_PATTERN",
            data={"pattern": text[:64]},
        )
    if text.startswith(("/", "~")) or _DRIVE_RE.match(text):
        raise PathEscapeError(
            f"Pattern '{text}' must be relative to the project root.",
            data={"pattern": text},
        )
    directory = text.endswith("/")
    segments: list[str] = []
    for part in text.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise PathEscapeError(
                f"Pattern '{text}' may not contain '..' segments.",
                data={"pattern": text},
            )
        if part == GLOBSTAR and segments and segments[-1] == GLOBSTAR:
            continue
        segments.append(part)
    if not segments:
        raise ValidationError(f"Pattern '{text}' names no path.", error_type="INVALID_PATTERN")
    if directory and segments[-1] != GLOBSTAR:
        segments.append(GLOBSTAR)
    return segments


def expand_braces(pattern: str) -> list[str]:
    """Expand non-nested ``{a,b}`` groups into concrete alternatives (order preserved)."""
    pieces: list[list[str]] = []
    literal_start = 0
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "}":
            raise ValidationError(
                f"Unbalanced '}}' in pattern '{pattern}'.", error_type="INVALID_PATTERN"
            )
        if char != "{":
            index += 1
            continue
        close = index + 1
        while close < len(pattern) and pattern[close] not in "{}":
            close += 1
        if close >= len(pattern):
            raise ValidationError(
                f"Unbalanced '{{' in pattern '{pattern}'.", error_type="INVALID_PATTERN"
            )
        if pattern[close] == "{":
            raise ValidationError(
                f"Nested braces are not supported in pattern '{pattern}'.",
                error_type="INVALID_PATTERN",
            )
        pieces.append([pattern[literal_start:index]])
        pieces.append(pattern[index + 1 : close].split(","))
        literal_start = index = close + 1
    pieces.append([pattern[literal_start:]])

    total = 1
    for options in pieces:
        total *= len(options)
        if total > MAX_BRACE_ALTERNATIVES:
            raise ValidationError(
                f"Pattern '{pattern}' expands to more than {MAX_BRACE_ALTERNATIVES} alternatives.",
                error_type="INVALID_PATTERN",
            )
    expanded: list[str] = []
    for combo in product(*pieces):
        candidate = "".join(combo)
        if candidate not in expanded:
            expanded.append(candidate)
    return expanded


def _parse_class(segment: str, start: int) -> tuple[Token, int]:
    index = start + 1
    negated = False
    if index < len(segment) and segment[index] in "!^":
        negated = True
        index += 1
    ranges: list[tuple[str, str]] = []
    first = True
    while index < len(segment) and (first or segment[index] != "]"):
        first = False
        low = segment[index]
        if index + 2 < len(segment) and segment[index + 1] == "-" and segment[index + 2] != "]":
            high = segment[index + 2]
            if low > high:
                raise ValidationError(
                    f"Invalid range '{low}-{high}' in '{segment}'.", error_type="INVALID_PATTERN"
                )
            ranges.append((low, high))
            index += 3
        else:
            ranges.append((low, low))
            index += 1
    if index >= len(segment):
        raise ValidationError(
            f"Unbalanced '[' in pattern segment '{segment}'.", error_type="INVALID_PATTERN"
        )
    return ("[", negated, tuple(ranges)), index + 1


@lru_cache(maxsize=4096)
def _tokenize(segment: str) -> tuple[Token, ...]:
    tokens: list[Token] = []
    index = 0
    while index < len(segment):
        char = segment[index]
        if char == "*":
            if not tokens or tokens[-1] != STAR:
                tokens.append(STAR)
            index += 1
        elif char == "?":
            tokens.append(ANY)
            index += 1
        elif char == "[":
            token, index = _parse_class(segment, index)
            tokens.append(token)
        else:
            tokens.append(("=", char))
            index += 1
    return tuple(tokens)


def _to_segments(alternative: str) -> tuple[Segment, ...]:
    return tuple(part if part == GLOBSTAR else _tokenize(part) for part in _split(alternative))


def normalize_pattern(raw: str) -> str:
    """Validate ``raw`` and return its canonical form.

    Backslashes become ``/``, empty and ``.`` segments are dropped, repeated
    ``**`` collapse, and a trailing ``/`` means the directory and everything
    below it (``dir/`` -> ``dir/**``). Absolute paths and ``..`` raise
    ``PathEscapeError``; malformed globs raise ``ValidationError``.
    """
    normalized = "/".join(_split(raw))
    for alternative in expand_braces(normalized):
        _to_segments(alternative)
    return normalized


@lru_cache(maxsize=2048)
def compile_pattern(pattern: str) -> tuple[tuple[Segment, ...], ...]:
    """Return the segment lists of every brace alternative of ``pattern``."""
    normalized = normalize_pattern(pattern)
    return tuple(_to_segments(alternative) for alternative in expand_braces(normalized))


def _reachable(final: tuple[int, int], moves: Callable[[int, int], Iterable[tuple[int, int]]]) -> bool:
    stack = [(0, 0)]
    seen = {(0, 0)}
    while stack:
        state = stack.pop()
        if state == final:
            return True
        for nxt in moves(*state):
            if nxt not in seen:
                seen.add(nxt)
                stack.append(nxt)
    return False


def _class_contains(token: Token, char: str) -> bool:
    _, negated, ranges = token
    inside = any(low <= char <= high for low, high in ranges)
    return inside != negated


def _chars_intersect(left: Token, right: Token) -> bool:
    if left == ANY or right == ANY:
        return True
    if left[0] == "=" and right[0] == "=":
        return left[1] == right[1]
    if left[0] == "=":
        return _class_contains(right, left[1])
    if right[0] == "=":
        return _class_contains(left, right[1])
    left_negated, right_negated = left[1], right[1]
    if left_negated and right_negated:
        return True
    if not left_negated and not right_negated:
        return any(
            a_low <= b_high and b_low <= a_high
            for a_low, a_high in left[2]
            for b_low, b_high in right[2]
        )
    positive, negated = (right, left) if left_negated else (left, right)
    # The smallest character of a positive range outside the negated set is
    # either the range's low end or one past the end of a negated range.
    for low, high in positive[2]:
        candidates = [low]
        for _, excluded_high in negated[2]:
            if ord(excluded_high) < 0x10FFFF and low <= chr(ord(excluded_high) + 1) <= high:
                candidates.append(chr(ord(excluded_high) + 1))
        if any(_class_contains(negated, candidate) for candidate in candidates):
            return True
    return False


@lru_cache(maxsize=8192)
def _segments_intersect(left: tuple[Token, ...], right: tuple[Token, ...]) -> bool:
    def moves(i: int, j: int) -> Iterator[tuple[int, int]]:
        a = left[i] if i < len(left) else None
        b = right[j] if j < len(right) else None
        if a == STAR:
            yield i + 1, j
            if b is not None:
                yield i, j + 1
        if b == STAR:
            yield i, j + 1
            if a is not None:
                yield i + 1, j
        if a is not None and b is not None and a != STAR and b != STAR and _chars_intersect(a, b):
            yield i + 1, j + 1

    return _reachable((len(left), len(right)), moves)


def _paths_intersect(left: tuple[Segment, ...], right: tuple[Segment, ...]) -> bool:
    def moves(i: int, j: int) -> Iterator[tuple[int, int]]:
        a = left[i] if i < len(left) else None
        b = right[j] if j < len(right) else None
        if a == GLOBSTAR:
            yield i + 1, j
            if b is not None:
                yield i, j + 1
        if b == GLOBSTAR:
            yield i, j + 1
            if a is not None:
                yield i + 1, j
        if (
            a is not None
            and b is not None
            and a != GLOBSTAR
            and b != GLOBSTAR
            and _segments_intersect(a, b)  # type: ignore[arg-type]
        ):
            yield i + 1, j + 1

    return _reachable((len(left), len(right)), moves)


def patterns_overlap(left: str, right: str) -> bool:
    """True when some relative path matches both patterns."""
    return any(
        _paths_intersect(a, b)
        for a in compile_pattern(left)
        for b in compile_pattern(right)
    )


def _literal_segments(path: str) -> tuple[Segment, ...]:
    text = (path or "").strip().replace("\\", "/")
    parts = [part for part in text.split("/") if part not in ("", ".")]
    if not parts:
        raise ValidationError("Path must not be empty.")
    if text.startswith(("/", "~")) or _DRIVE_RE.match(text) or ".." in parts:
        raise PathEscapeError(f"Path '{text}' must be relative to the project root.", data={"path": text})
    return tuple(tuple(("=", char) for char in part) for part in parts)


def normalize_path(path: str) -> str:
    """Validate a concrete relative path and return it with clean separators."""
    return "/".join("".join(token[1] for token in segment) for segment in _literal_segments(path))


def path_matches(pattern: str, path: str) -> bool:
    """True when the concrete relative ``path`` is covered by ``pattern``.

    Glob characters in ``path`` are taken literally.
    """
    target = _literal_segments(path)
    return any(_paths_intersect(alternative, target) for alternative in compile_pattern(pattern))


def pattern_within(pattern: str, prefix: str) -> bool:
    """True when ``pattern`` sits under the directory ``prefix`` or can cover a path below it.

    Prefixes compare whole segments: ``src`` does not take in ``srcfoo/**``.
    """
    normalized_prefix = (prefix or "").strip().replace("\\", "/").strip("/")
    if normalized_prefix in ("", "."):
        return True
    normalized_prefix = normalize_path(normalized_prefix)
    normalized = normalize_pattern(pattern)
    if normalized == normalized_prefix or normalized.startswith(normalized_prefix + "/"):
        return True
    scope = _literal_segments(normalized_prefix) + (GLOBSTAR,)
    return any(_paths_intersect(alternative, scope) for alternative in compile_pattern(pattern))
