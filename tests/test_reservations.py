"""File reservation lifecycle: grant, conflict, renew, expire, release.

Two agents are enough for most cases: Ann holds, Bob asks. Expiry is
simulated by moving ``expires_ts`` into the past rather than sleeping.
"""

from __future__ import annotations

import asyncio

import pytest

from agent_mail import identity, reservations
from agent_mail.errors import FileReservationConflict, NotRegisteredError, PathEscapeError, ValidationError
from agent_mail.models import FileReservation
from agent_mail.utils import iso


async def _register(*names: str, project_key: str | None = None) -> None:
    for name in names:
        await identity.register(project_key, name=name, program="codex-cli", model="gpt-5")


@pytest.mark.asyncio
async def test_conflict_names_holder_until_release(isolated_env):
    await _register("Ann", "Bob")
    ann_lease = await reservations.reserve(
        None, "Ann", "src/auth/**", reason="refactor login", ttl_seconds=600
    )
    assert ann_lease.lock_type == "exclusive"

    with pytest.raises(FileReservationConflict) as excinfo:
        await reservations.reserve(None, "Bob", "src/auth/login.ts")
    conflict = excinfo.value
    assert conflict.error_type == "FILE_RESERVATION_CONFLICT"
    assert conflict.pattern == "src/auth/login.ts"
    assert conflict.holder["agent"] == "Ann"
    assert conflict.holder["path_pattern"] == "src/auth/**"
    assert conflict.holder["reason"] == "refactor login"
    assert conflict.holder["expires_ts"] == iso(ann_lease.expires_ts)
    # A refused request stores nothing
    assert [lease.agent for lease in await reservations.list_reservations()] == ["Ann"]

    assert await reservations.release(None, "Ann", "src/auth/**") == 1
    bob_lease = await reservations.reserve(None, "Bob", "src/auth/login.ts")
    assert bob_lease.agent == "Bob"


@pytest.mark.asyncio
async def test_shared_reservations_coexist_but_block_exclusive(isolated_env):
    await _register("Ann", "Bob", "Cid")
    await reservations.reserve(None, "Ann", "docs/**", lock_type="shared")
    await reservations.reserve(None, "Bob", "docs/guide.md", lock_type="SHARED")

    with pytest.raises(FileReservationConflict) as excinfo:
        await reservations.reserve(None, "Cid", "docs/guide.md")
    assert [holder["agent"] for holder in excinfo.value.holders] == ["Ann", "Bob"]

    lease = await reservations.reserve(None, "Cid", "docs/api.md", lock_type="shared")
    assert lease.lock_type == "shared"


@pytest.mark.asyncio
async def test_shared_request_blocked_by_exclusive_holder(isolated_env):
    await _register("Ann", "Bob")
    await reservations.reserve(None, "Ann", "src/**")
    with pytest.raises(FileReservationConflict):
        await reservations.reserve(None, "Bob", "src/app.py", lock_type="shared")


@pytest.mark.asyncio
async def test_disjoint_patterns_do_not_conflict(isolated_env):
    await _register("Ann", "Bob")
    await reservations.reserve(None, "Ann", "src/**")
    await reservations.reserve(None, "Bob", "docs/**")
    await reservations.reserve(None, "Bob", "srcs/**")
    with pytest.raises(FileReservationConflict):
        await reservations.reserve(None, "Bob", "src/{api,web}/*.ts")


@pytest.mark.asyncio
async def test_agent_never_conflicts_with_itself(isolated_env):
    await _register("Ann")
    await reservations.reserve(None, "Ann", "src/**")
    await reservations.reserve(None, "Ann", "src/app.py")
    await reservations.reserve(None, "Ann", "src/**", lock_type="shared")
    held = await reservations.list_reservations()
    assert [(lease.path_pattern, lease.lock_type) for lease in held] == [
        ("src/**", "exclusive"),
        ("src/app.py", "exclusive"),
        ("src/**", "shared"),
    ]


@pytest.mark.asyncio
async def test_same_pattern_renews_in_place(isolated_env):
    await _register("Ann")
    first = await reservations.reserve(None, "Ann", "src/**", reason="first pass", ttl_seconds=60)
    renewed = await reservations.reserve(None, "Ann", "./src/**", ttl_seconds=3600)
    assert renewed.id == first.id
    assert renewed.expires_ts > first.expires_ts
    assert renewed.reason == "first pass"
    assert len(await reservations.list_reservations()) == 1


@pytest.mark.asyncio
async def test_patterns_are_stored_normalized(isolated_env):
    await _register("Ann")
    lease = await reservations.reserve(None, "Ann", "src\\auth\\")
    assert lease.path_pattern == "src/auth/**"


@pytest.mark.asyncio
async def test_expired_reservations_neither_block_nor_list(isolated_env, backdate):
    await _register("Ann", "Bob")
    stale = await reservations.reserve(None, "Ann", "src/**", ttl_seconds=60)
    await backdate(FileReservation, "expires_ts", stale.id, seconds_ago=5)

    assert await reservations.list_reservations() == []
    assert await reservations.holders(None, "src/app.py") == []
    lease = await reservations.reserve(None, "Bob", "src/app.py")
    assert lease.agent == "Bob"
    # Expired rows are swept on release but not counted
    assert await reservations.release(None, "Ann") == 0


@pytest.mark.asyncio
async def test_release_counts(isolated_env):
    await _register("Ann")
    for pattern in ("src/**", "docs/*.md", "tests/**"):
        await reservations.reserve(None, "Ann", pattern)
    assert await reservations.release(None, "Ann", "lib/**") == 0
    assert await reservations.release(None, "Ann", "docs/*.md") == 1
    assert await reservations.release(None, "Ann") == 2
    assert await reservations.list_reservations() == []


@pytest.mark.asyncio
async def test_list_reservations_filters(isolated_env):
    await _register("Ann", "Bob")
    await reservations.reserve(None, "Ann", "src/auth/**")
    await reservations.reserve(None, "Bob", "docs/**", lock_type="shared")
    await reservations.reserve(None, "Ann", "**/*.md", lock_type="shared")

    assert [lease.path_pattern for lease in await reservations.list_reservations(agent_name="ann")] == [
        "src/auth/**",
        "**/*.md",
    ]
    assert [lease.path_pattern for lease in await reservations.list_reservations(prefix="src")] == [
        "src/auth/**",
        "**/*.md",
    ]
    assert [lease.path_pattern for lease in await reservations.list_reservations(prefix="docs/")] == [
        "docs/**",
        "**/*.md",
    ]
    assert [lease.path_pattern for lease in await reservations.list_reservations(prefix="lib")] == ["**/*.md"]


@pytest.mark.asyncio
async def test_holders_of_concrete_path(isolated_env):
    await _register("Ann", "Bob")
    await reservations.reserve(None, "Ann", "src/auth/**")
    await reservations.reserve(None, "Bob", "docs/**", lock_type="shared")
    await reservations.reserve(None, "Ann", "**/*.md", lock_type="shared")

    assert [lease.path_pattern for lease in await reservations.holders(None, "src/auth/login.ts")] == ["src/auth/**"]
    assert [lease.agent for lease in await reservations.holders(None, "docs/a.md")] == ["Bob", "Ann"]
    assert [lease.path_pattern for lease in await reservations.holders(None, "README.md")] == ["**/*.md"]
    assert await reservations.holders(None, "lib/x.py") == []
    with pytest.raises(PathEscapeError):
        await reservations.holders(None, "../x.py")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("pattern", "kwargs"),
    [
        ("src/**", {"ttl_seconds": 0}),
        ("src/**", {"ttl_seconds": -5}),
        ("src/**", {"ttl_seconds": True}),
        ("src/**", {"ttl_seconds": 604801}),
        ("src/**", {"lock_type": "readonly"}),
        ("/etc/passwd", {}),
        ("src/../../secrets", {}),
        ("src/[ab", {}),
    ],
)
async def test_invalid_requests_leave_store_unchanged(isolated_env, pattern, kwargs):
    await _register("Ann")
    with pytest.raises(ValidationError):
        await reservations.reserve(None, "Ann", pattern, **kwargs)
    assert await reservations.list_reservations() == []


@pytest.mark.asyncio
async def test_unregistered_agent_cannot_reserve(isolated_env):
    await _register("Ann")
    with pytest.raises(NotRegisteredError):
        await reservations.reserve(None, "Zed", "src/**")


@pytest.mark.asyncio
async def test_reservations_are_scoped_per_project(isolated_env):
    other = isolated_env.parent / "other"
    other.mkdir()
    await _register("Ann")
    await _register("Bob", project_key=str(other))
    await reservations.reserve(None, "Ann", "src/**")
    lease = await reservations.reserve(str(other), "Bob", "src/**")
    assert lease.agent == "Bob"
    assert [lease.agent for lease in await reservations.list_reservations(str(other))] == ["Bob"]


@pytest.mark.asyncio
async def test_concurrent_exclusive_requests_grant_exactly_one(isolated_env):
    names = ("Ann", "Bob", "Cid", "Dee", "Eve")
    await _register(*names)
    results = await asyncio.gather(
        *(reservations.reserve(None, name, "src/shared.py") for name in names),
        return_exceptions=True,
    )
    granted = [result for result in results if isinstance(result, reservations.Lease)]
    refused = [result for result in results if isinstance(result, FileReservationConflict)]
    assert len(granted) == 1
    assert len(refused) == 4
    assert all(conflict.holder["agent"] == granted[0].agent for conflict in refused)
