"""Recipient address resolution.

An address spec is a comma-separated union of tokens:

``Name``
    a literal agent of the sender's project (case-insensitive; the sender may
    address itself).
``@active`` / ``@active:N``
    agents of the sender's project active within the last N minutes.
``@project:X``
    every agent of the project whose slug or path is X.
``@all``
    every agent of the sender's project.

Symbolic tokens never include the sender or deregistered agents. Resolution
is a pure function of the spec, a registry snapshot and ``now``; the mailbox
calls it once per send and freezes the result into recipient rows.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from .errors import EmptyRecipientSet, NotFoundError, ValidationError

ACTIVE_TOKEN = "@active"
PROJECT_TOKEN = "@project"
ALL_TOKEN = "@all"


@dataclass(frozen=True, slots=True)
class ProjectEntry:
    id: int
    slug: str
    human_key: str


@dataclass(frozen=True, slots=True)
class AgentEntry:
    id: int
    name: str
    project_id: int
    last_active_ts: datetime
    retired: bool = False


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    projects: tuple[ProjectEntry, ...]
    agents: tuple[AgentEntry, ...]

    def project_agents(self, project_id: int) -> list[AgentEntry]:
        return [agent for agent in self.agents if agent.project_id == project_id]

    def find_project(self, key: str) -> Optional[ProjectEntry]:
        for project in self.projects:
            if key in (project.slug, project.human_key):
                return project
        return None


def split_spec(spec: Union[str, Iterable[str], None]) -> list[str]:
    """Flatten a spec (string or list of strings) into trimmed, non-empty tokens."""
    if spec is None:
        return []
    chunks = [spec] if isinstance(spec, str) else list(spec)
    tokens: list[str] = []
    for chunk in chunks:
        for token in str(chunk).split(","):
            token = token.strip()
            if token:
                tokens.append(token)
    return tokens


def _window_minutes(token: str, default_window: int) -> int:
    _, sep, raw = token.partition(":")
    if not sep:
        return default_window
    try:
        minutes = int(raw)
    except ValueError:
        minutes = 0
    if minutes <= 0:
        raise ValidationError(
            f"'{token}': the activity window must be a positive number of minutes.",
            data={"token": token},
        )
    return minutes


def _expand_token(
    token: str,
    snapshot: RegistrySnapshot,
    *,
    sender: AgentEntry,
    now: datetime,
    default_window: int,
) -> list[AgentEntry]:
    lowered = token.lower()
    if not lowered.startswith("@"):
        for agent in snapshot.project_agents(sender.project_id):
            if agent.name.lower() == lowered and not agent.retired:
                return [agent]
        raise NotFoundError(
            f"No agent named '{token}' is registered in this project.",
            data={"recipient": token},
        )

    def symbolic(candidates: Iterable[AgentEntry]) -> list[AgentEntry]:
        return [agent for agent in candidates if agent.id != sender.id and not agent.retired]

    if lowered == ALL_TOKEN:
        return symbolic(snapshot.project_agents(sender.project_id))
    if lowered == ACTIVE_TOKEN or lowered.startswith(ACTIVE_TOKEN + ":"):
        cutoff = now - timedelta(minutes=_window_minutes(token, default_window))
        matched = symbolic(
            agent for agent in snapshot.project_agents(sender.project_id) if agent.last_active_ts >= cutoff
        )
    elif lowered.startswith(PROJECT_TOKEN + ":"):
        key = token.split(":", 1)[1].strip()
        project = snapshot.find_project(key) if key else None
        if project is None:
            raise NotFoundError(f"No project matches '{key}'.", data={"recipient": token})
        matched = symbolic(snapshot.project_agents(project.id))
    else:
        raise ValidationError(
            f"Unknown address '{token}'. Use a name, @active[:minutes], @project:<slug> or @all.",
            data={"recipient": token},
        )
    if not matched:
        raise EmptyRecipientSet(f"Address '{token}' matched no agents.", data={"recipient": token})
    return matched


def resolve_recipients(
    spec: Union[str, Iterable[str], None],
    snapshot: RegistrySnapshot,
    *,
    sender: AgentEntry,
    now: datetime,
    default_window: int = 60,
    allow_empty: bool = False,
) -> list[AgentEntry]:
    """Resolve ``spec`` into distinct agents in first-seen order.

    Raises ``NotFoundError`` for an unknown literal name or project,
    ``ValidationError`` for a malformed token, and ``EmptyRecipientSet`` when a
    symbolic token other than ``@all`` matches nobody or the whole union is
    empty (unless ``allow_empty``, used for optional cc lists).
    """
    tokens = split_spec(spec)
    if not tokens and not allow_empty:
        raise ValidationError("At least one recipient is required.")
    resolved: list[AgentEntry] = []
    seen: set[int] = set()
    for token in tokens:
        for agent in _expand_token(token, snapshot, sender=sender, now=now, default_window=default_window):
            if agent.id not in seen:
                seen.add(agent.id)
                resolved.append(agent)
    if not resolved and not allow_empty:
        raise EmptyRecipientSet(
            f"'{', '.join(tokens)}' resolved to no recipients.",
            data={"recipients": tokens},
        )
    return resolved
