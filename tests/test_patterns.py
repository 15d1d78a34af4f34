from __future__ import annotations

import time

import pytest

from agent_mail.errors import PathEscapeError, ValidationError
from agent_mail.patterns import (
    expand_braces,
    normalize_path,
    normalize_pattern,
    path_matches,
    pattern_within,
    patterns_overlap,
)

OVERLAPPING = [
    ("src/**", "src/auth/login.ts"),
    ("src/**", "src/auth/**"),
    ("src/**", "src"),
    ("src/*.ts", "src/app.ts"),
    ("*.ts", "index.ts"),
    ("src/**/test_*.py", "src/pkg/sub/test_models.py"),
    ("src/*/views.py", "src/**"),
    ("**", "deep/nested/file.txt"),
    ("src/a?.ts", "src/ab.ts"),
    ("src/[a-c].py", "src/b.py"),
    ("src/[!a].py", "src/[a-c].py"),
    ("src/{api,web}/**", "src/web/index.ts"),
    ("*a", "b*"),
    ("a*b", "ab"),
    ("docs/", "docs/guide/intro.md"),
]

DISJOINT = [
    ("src/**", "docs/**"),
    ("*.ts", "src/*.ts"),
    ("src/*.ts", "src/*.py"),
    ("src/[a-c].py", "src/d.py"),
    ("src/[!a].py", "src/a.py"),
    ("src/{api,web}/**", "src/cli/main.py"),
    ("a/*/c", "a/c"),
    ("a?", "a"),
    ("src/auth/login.ts", "src/auth/logout.ts"),
]


@pytest.mark.parametrize(("left", "right"), OVERLAPPING)
def test_overlapping_patterns(left, right):
    assert patterns_overlap(left, right)
    assert patterns_overlap(right, left)


@pytest.mark.parametrize(("left", "right"), DISJOINT)
def test_disjoint_patterns(left, right):
    assert not patterns_overlap(left, right)
    assert not patterns_overlap(right, left)


def test_single_segment_glob_does_not_cross_directories():
    assert not patterns_overlap("src/*", "src/auth/login.ts")
    assert patterns_overlap("src/*", "src/auth")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("src\\auth\\", "src/auth/**"),
        ("./src//app.ts", "src/app.ts"),
        ("src/**/**/x.py", "src/**/x.py"),
        ("  docs/  ", "docs/**"),
        ("src/./lib/", "src/lib/**"),
        ("**", "**"),
    ],
)
def test_normalize_pattern(raw, expected):
    assert normalize_pattern(raw) == expected


@pytest.mark.parametrize("raw", ["/etc/passwd", "~/notes.md", "C:\\Users\\me", "src/../secrets", "..", "{a,..}/x"])
def test_escaping_patterns_are_rejected(raw):
    with pytest.raises(PathEscapeError):
        normalize_pattern(raw)


@pytest.mark.parametrize("raw", ["", "   ", ".", "./", "src/[ab", "src/{a", "src/a}", "{a,{b,c}}", "src/[z-a].py"])
def test_malformed_patterns_are_rejected(raw):
    with pytest.raises(ValidationError):
        normalize_pattern(raw)


def test_path_escape_is_a_validation_error():
    assert issubclass(PathEscapeError, ValidationError)
    with pytest.raises(ValidationError):
        normalize_pattern("/abs")


def test_brace_expansion():
    assert expand_braces("src/{api,web}/*.ts") == ["src/api/*.ts", "src/web/*.ts"]
    assert expand_braces("{a,b}/{c,d}") == ["a/c", "a/d", "b/c", "b/d"]
    assert expand_braces("plain/path") == ["plain/path"]
    assert expand_braces("lib{,64}") == ["lib", "lib64"]


def test_brace_expansion_is_bounded():
    with pytest.raises(ValidationError) as excinfo:
        expand_braces("{a,b,c,d}/{a,b,c,d}/{a,b,c,d}/{a,b}")
    assert excinfo.value.error_type == "INVALID_PATTERN"


def test_path_matches_concrete_paths():
    assert path_matches("src/**", "src/auth/login.ts")
    assert path_matches("src/*.ts", "src/app.ts")
    assert not path_matches("src/*.ts", "src/auth/login.ts")
    assert path_matches("src/[*].ts", "src/*.ts")
    assert not path_matches("src/*.ts", "src/a?.py")


def test_normalize_path():
    assert normalize_path("./src//auth/login.ts") == "src/auth/login.ts"
    with pytest.raises(PathEscapeError):
        normalize_path("../outside.txt")
    with pytest.raises(ValidationError):
        normalize_path("")


def test_pattern_within_prefix():
    assert pattern_within("src/auth/**", "src")
    assert pattern_within("**/*.md", "docs")
    assert pattern_within("src/auth/login.ts", "src/auth/")
    assert not pattern_within("docs/**", "src")
    assert not pattern_within("*.ts", "src")


def test_pattern_within_compares_whole_segments():
    assert not pattern_within("srcfoo/**", "src")
    assert not pattern_within("src-old/a.py", "src")
    assert pattern_within("src", "src")
    assert pattern_within("src/a.py", "./src")
    assert pattern_within("src*/**", "src")


def test_pathological_patterns_terminate_quickly():
    left = "a*a*a*a*a*a*a*a*a*a*a*a*b"
    right = "a*a*a*a*a*a*a*a*a*a*a*a*c"
    deep_left = "/".join(["**", "x"] * 20)
    deep_right = "/".join(["y"] * 60) + "/z"
    started = time.perf_counter()
    assert not patterns_overlap(left, right)
    assert not patterns_overlap(deep_left, deep_right)
    assert patterns_overlap(deep_left, "/".join(["x"] * 20))
    assert time.perf_counter() - started < 2.0
