"""Lease manager: advisory, TTL-bound reservations over path patterns.

Exclusive reservations block every overlapping reservation of another agent;
shared reservations only block overlapping exclusive ones. An agent never
conflicts with itself. Expired rows are ignored by every query, so a crashed
holder simply lapses once its TTL passes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, cast

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .db import ensure_schema, get_session, retry_on_db_lock, write_transaction
from .errors import FileReservationConflict, ValidationError
from .identity import find_project, require_agent, touch
from .models import Agent, FileReservation
from .patterns import normalize_path, normalize_pattern, path_matches, pattern_within, patterns_overlap
from .utils import iso, naive_utc

_logger = logging.getLogger(__name__)

LOCK_TYPES = ("exclusive", "shared")


@dataclass(slots=True, frozen=True)
class Lease:
    id: int
    agent: str
    path_pattern: str
    exclusive: bool
    reason: str
    created_ts: datetime
    expires_ts: datetime

    @property
    def lock_type(self) -> str:
        return "exclusive" if self.exclusive else "shared"

    @classmethod
    def from_row(cls, reservation: FileReservation, agent_name: str) -> Lease:
        assert reservation.id is not None
        return cls(
            id=reservation.id,
            agent=agent_name,
            path_pattern=reservation.path_pattern,
            exclusive=reservation.exclusive,
            reason=reservation.reason,
            created_ts=reservation.created_ts,
            expires_ts=reservation.expires_ts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent": self.agent,
            "path_pattern": self.path_pattern,
            "lock_type": self.lock_type,
            "exclusive": self.exclusive,
            "reason": self.reason,
            "created_ts": iso(self.created_ts),
            "expires_ts": iso(self.expires_ts),
        }


def _validate_lock_type(lock_type: str) -> bool:
    normalized = (lock_type or "").strip().lower()
    if normalized not in LOCK_TYPES:
        raise ValidationError(
            f"lock_type must be one of {', '.join(LOCK_TYPES)}; got '{lock_type}'.",
            data={"lock_type": lock_type},
        )
    return normalized == "exclusive"


def _validate_ttl(ttl_seconds: Optional[int]) -> int:
    settings = get_settings().reservations
    if ttl_seconds is None:
        return settings.default_ttl_seconds
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValidationError(
            f"ttl_seconds must be a positive integer; got {ttl_seconds!r}.",
            data={"ttl_seconds": ttl_seconds},
        )
    if ttl_seconds > settings.max_ttl_seconds:
        raise ValidationError(
            f"ttl_seconds may not exceed {settings.max_ttl_seconds}.",
            data={"ttl_seconds": ttl_seconds, "max_ttl_seconds": settings.max_ttl_seconds},
        )
    return ttl_seconds


async def _active_rows(
    session: AsyncSession,
    project_id: int,
    now: datetime,
) -> list[tuple[FileReservation, str]]:
    result = await session.execute(
        select(FileReservation, Agent.name)
        .join(Agent, cast(Any, Agent.id == FileReservation.agent_id))
        .where(
            cast(Any, FileReservation.project_id == project_id),
            cast(Any, FileReservation.expires_ts > now),
        )
        .order_by(cast(Any, FileReservation.created_ts).asc(), cast(Any, FileReservation.id).asc())
    )
    return [(row[0], row[1]) for row in result.all()]


@retry_on_db_lock()
async def reserve(
    project_key: Optional[str],
    agent_name: str,
    pattern: str,
    *,
    lock_type: str = "exclusive",
    reason: str = "",
    ttl_seconds: Optional[int] = None,
) -> Lease:
    """Grant a reservation or raise ``FileReservationConflict`` naming every blocking holder.

    The conflict scan and the insert share one ``BEGIN IMMEDIATE`` transaction.
    Re-reserving the same pattern with the same lock type renews the existing
    row (new expiry and reason) instead of stacking a duplicate.
    """
    normalized = normalize_pattern(pattern)
    exclusive = _validate_lock_type(lock_type)
    ttl = _validate_ttl(ttl_seconds)
    reason = (reason or "").strip()

    async with write_transaction() as session:
        project, agent = await require_agent(session, project_key, agent_name)
        assert project.id is not None and agent.id is not None
        now = naive_utc()
        expires = now + timedelta(seconds=ttl)

        renewable: Optional[FileReservation] = None
        blockers: list[dict[str, Any]] = []
        for row, holder_name in await _active_rows(session, project.id, now):
            if row.agent_id == agent.id:
                if row.path_pattern == normalized and row.exclusive == exclusive:
                    renewable = row
                continue
            if not (exclusive or row.exclusive):
                continue
            if patterns_overlap(normalized, row.path_pattern):
                blockers.append(Lease.from_row(row, holder_name).to_dict())

        if blockers:
            _logger.info(
                "reservations.conflict",
                extra={
                    "agent": agent.name,
                    "pattern": normalized,
                    "holders": [blocker["agent"] for blocker in blockers],
                },
            )
            raise FileReservationConflict(normalized, blockers)

        if renewable is not None:
            renewable.expires_ts = expires
            renewable.reason = reason or renewable.reason
            reservation = renewable
        else:
            reservation = FileReservation(
                project_id=project.id,
                agent_id=agent.id,
                path_pattern=normalized,
                exclusive=exclusive,
                reason=reason,
                created_ts=now,
                expires_ts=expires,
            )
        session.add(reservation)
        touch(session, agent, now)
        await session.flush()
        lease = Lease.from_row(reservation, agent.name)

    _logger.info(
        "reservations.granted",
        extra={
            "agent": lease.agent,
            "pattern": lease.path_pattern,
            "lock_type": lease.lock_type,
            "renewed": renewable is not None,
            "expires_ts": iso(lease.expires_ts),
        },
    )
    return lease


@retry_on_db_lock()
async def release(project_key: Optional[str], agent_name: str, pattern: Optional[str] = None) -> int:
    """Delete the agent's reservations on ``pattern`` (all of them when omitted).

    Returns how many live reservations were released; releasing nothing is a
    successful no-op returning 0.
    """
    normalized = normalize_pattern(pattern) if pattern is not None else None
    async with write_transaction() as session:
        _, agent = await require_agent(session, project_key, agent_name)
        now = naive_utc()
        conditions = [cast(Any, FileReservation.agent_id == agent.id)]
        if normalized is not None:
            conditions.append(cast(Any, FileReservation.path_pattern == normalized))
        live = await session.execute(
            select(func.count()).select_from(FileReservation).where(
                *conditions, cast(Any, FileReservation.expires_ts > now)
            )
        )
        released = int(live.scalar_one())
        await session.execute(delete(FileReservation).where(*conditions))
        touch(session, agent, now)
    _logger.info(
        "reservations.released",
        extra={"agent": agent.name, "pattern": normalized or "*", "released": released},
    )
    return released


async def list_reservations(
    project_key: Optional[str] = None,
    *,
    agent_name: Optional[str] = None,
    prefix: Optional[str] = None,
) -> list[Lease]:
    """Active reservations of a project in creation order, optionally narrowed by holder or path prefix."""
    await ensure_schema()
    async with get_session() as session:
        project = await find_project(session, project_key)
        if project is None or project.id is None:
            return []
        rows = await _active_rows(session, project.id, naive_utc())
    leases = [Lease.from_row(row, holder) for row, holder in rows]
    if agent_name:
        wanted = agent_name.strip().lower()
        leases = [lease for lease in leases if lease.agent.lower() == wanted]
    if prefix:
        leases = [lease for lease in leases if pattern_within(lease.path_pattern, prefix)]
    return leases


async def holders(project_key: Optional[str], path: str) -> list[Lease]:
    """Active reservations covering the concrete relative ``path``."""
    target = normalize_path(path)
    leases = await list_reservations(project_key)
    return [lease for lease in leases if path_matches(lease.path_pattern, target)]
