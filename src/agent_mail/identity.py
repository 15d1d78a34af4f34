"""Identity registry: projects and the agents registered against them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, cast

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .db import ensure_schema, get_session, retry_on_db_lock, write_transaction
from .errors import ConflictError, NotRegisteredError, ValidationError
from .models import Agent, FileReservation, Project
from .utils import (
    generate_agent_name,
    naive_utc,
    project_slug,
    sanitize_agent_name,
    validate_agent_name_format,
)

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Registration:
    project: Project
    agent: Agent
    created: bool


def resolve_human_key(project_key: Optional[str] = None) -> str:
    """Absolute, symlink-free path identifying a project (defaults to ``PROJECT_KEY``)."""
    key = (project_key or "").strip() or get_settings().project_key
    return str(Path(key).expanduser().resolve())


async def find_project(session: AsyncSession, project_key: Optional[str] = None) -> Optional[Project]:
    """Look a project up by path or slug without creating it."""
    raw = (project_key or "").strip()
    human_key = resolve_human_key(raw or None)
    conditions = [Project.human_key == human_key]
    if raw:
        conditions.append(Project.slug == raw)
    result = await session.execute(select(Project).where(or_(*conditions)))
    return result.scalars().first()


async def ensure_project_row(session: AsyncSession, project_key: Optional[str] = None) -> Project:
    """Return the project for ``project_key``, inserting it on first use (caller owns the transaction)."""
    project = await find_project(session, project_key)
    if project is not None:
        return project
    human_key = resolve_human_key(project_key)
    project = Project(slug=project_slug(human_key), human_key=human_key)
    session.add(project)
    await session.flush()
    _logger.info("identity.project_created", extra={"slug": project.slug, "human_key": human_key})
    return project


@retry_on_db_lock()
async def ensure_project(project_key: Optional[str] = None) -> Project:
    async with write_transaction() as session:
        return await ensure_project_row(session, project_key)


async def find_agent(session: AsyncSession, project_id: int, name: str) -> Optional[Agent]:
    result = await session.execute(
        select(Agent).where(
            cast(Any, Agent.project_id == project_id),
            cast(Any, func.lower(Agent.name) == name.lower()),
        )
    )
    return result.scalars().first()


async def require_agent(
    session: AsyncSession,
    project_key: Optional[str],
    name: Optional[str],
) -> tuple[Project, Agent]:
    """Resolve a registered, non-retired agent or raise ``NotRegisteredError``."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise NotRegisteredError("An agent name is required; register first.")
    project = await find_project(session, project_key)
    agent = await find_agent(session, project.id, cleaned) if project and project.id is not None else None
    if project is None or agent is None or agent.retired_ts is not None:
        raise NotRegisteredError(
            f"Agent '{cleaned}' is not registered in project '{resolve_human_key(project_key)}'.",
            data={"agent": cleaned},
        )
    return project, agent


def touch(session: AsyncSession, agent: Agent, now: Optional[datetime] = None) -> None:
    """Record activity; last_active_ts moves only inside the caller's write transaction."""
    agent.last_active_ts = now or naive_utc()
    session.add(agent)


def _clean_required(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"'{field}' must not be empty.", data={"field": field})
    return cleaned


async def _generate_unique_name(session: AsyncSession, project: Project, attempts: int) -> str:
    assert project.id is not None
    for _ in range(attempts):
        candidate = generate_agent_name()
        if await find_agent(session, project.id, candidate) is None:
            return candidate
    raise ConflictError(
        f"Unable to generate a unique agent name after {attempts} attempts; pass an explicit name.",
        error_type="NAME_SPACE_EXHAUSTED",
        data={"attempts": attempts},
    )


async def _register_once(
    project_key: Optional[str],
    name: Optional[str],
    program: str,
    model: str,
    task_description: Optional[str],
) -> Registration:
    settings = get_settings()
    now = naive_utc()
    async with write_transaction() as session:
        project = await ensure_project_row(session, project_key)
        assert project.id is not None
        existing = await find_agent(session, project.id, name) if name else None
        if existing is not None:
            existing.program = program
            existing.model = model
            if task_description is not None:
                existing.task_description = task_description
            existing.retired_ts = None
            touch(session, existing, now)
            return Registration(project=project, agent=existing, created=False)

        agent = Agent(
            project_id=project.id,
            name=name or await _generate_unique_name(session, project, settings.agent_name_max_attempts),
            program=program,
            model=model,
            task_description=task_description or "",
            inception_ts=now,
            last_active_ts=now,
        )
        session.add(agent)
        await session.flush()
        return Registration(project=project, agent=agent, created=True)


@retry_on_db_lock()
async def register(
    project_key: Optional[str] = None,
    *,
    name: Optional[str] = None,
    program: str,
    model: str,
    task_description: Optional[str] = None,
) -> Registration:
    """Register a new identity or resume an existing one.

    Without ``name`` an Adjective+Noun name is generated, retrying on collision
    up to ``AGENT_NAME_MAX_ATTEMPTS`` times. With a name that already exists in
    the project the call is a session resume: program, model and (when given)
    the task description are refreshed and ``created`` is False.
    """
    program = _clean_required(program, "program")
    model = _clean_required(model, "model")
    desired: Optional[str] = None
    if name is not None:
        desired = sanitize_agent_name(name)
        if not desired or not validate_agent_name_format(desired):
            raise ValidationError(
                f"Invalid agent name '{name}': use 1-64 ASCII letters or digits, starting with a letter.",
                error_type="INVALID_AGENT_NAME",
                data={"provided_name": name},
            )
    await ensure_schema()
    for attempt in range(3):
        try:
            registration = await _register_once(project_key, desired, program, model, task_description)
            break
        except IntegrityError:
            # A concurrent registration committed the same name (or project) first;
            # the next pass resumes it.
            if attempt >= 2:
                raise
            _logger.info("identity.register_race", extra={"agent_name": desired, "attempt": attempt + 1})
    _logger.info(
        "identity.registered",
        extra={
            "agent": registration.agent.name,
            "project": registration.project.slug,
            "agent_created": registration.created,
        },
    )
    return registration


@retry_on_db_lock()
async def whoami(project_key: Optional[str] = None, name: Optional[str] = None) -> Agent:
    """Return the identity named by ``name`` or the ``AGENT_MAIL_AGENT`` session hint."""
    hint = (name or "").strip() or get_settings().agent_name_hint
    if not hint:
        raise NotRegisteredError("No agent identity given and AGENT_MAIL_AGENT is not set.")
    async with write_transaction() as session:
        _, agent = await require_agent(session, project_key, hint)
        touch(session, agent)
        return agent


async def get_agent(project_key: Optional[str], name: str) -> Agent:
    await ensure_schema()
    async with get_session() as session:
        _, agent = await require_agent(session, project_key, name)
        return agent


async def list_agents(project_key: Optional[str] = None, *, include_retired: bool = False) -> list[Agent]:
    """Agents of a project, most recently active first."""
    await ensure_schema()
    async with get_session() as session:
        project = await find_project(session, project_key)
        if project is None:
            return []
        stmt = select(Agent).where(cast(Any, Agent.project_id == project.id))
        if not include_retired:
            stmt = stmt.where(cast(Any, Agent.retired_ts).is_(None))
        stmt = stmt.order_by(cast(Any, Agent.last_active_ts).desc(), cast(Any, Agent.id).desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())


@retry_on_db_lock()
async def deregister(project_key: Optional[str], name: str) -> tuple[Agent, int]:
    """Retire an identity and drop its reservations; message history stays intact.

    Returns the retired agent and the number of reservations removed.
    """
    now = naive_utc()
    async with write_transaction() as session:
        _, agent = await require_agent(session, project_key, name)
        result = await session.execute(
            delete(FileReservation).where(cast(Any, FileReservation.agent_id == agent.id))
        )
        agent.retired_ts = now
        touch(session, agent, now)
    released = result.rowcount or 0
    _logger.info("identity.deregistered", extra={"agent": agent.name, "released": released})
    return agent, released
