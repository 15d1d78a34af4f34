"""Mailbox: threaded messages with per-recipient read/ack state and ranked search.

Recipients are resolved once, at send time, and frozen into
``message_recipients`` rows; later registry changes never rewrite them. A
message, its recipient rows and the sender's activity stamp commit in a single
transaction. Messages carrying ``expires_ts`` drop out of every read path once
that moment passes.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union, cast

from sqlalchemy import and_, or_, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .addressing import AgentEntry, ProjectEntry, RegistrySnapshot, resolve_recipients, split_spec
from .config import get_settings
from .db import ensure_schema, get_session, retry_on_db_lock, write_transaction
from .errors import EmptyRecipientSet, NotARecipientError, NotFoundError, ValidationError
from .identity import find_project, require_agent, touch
from .models import Agent, Message, MessageRecipient, Project
from .utils import iso, naive_utc, validate_thread_id_format

_logger = logging.getLogger(__name__)

IMPORTANCE_LEVELS = ("normal", "high", "urgent")
MAX_SUBJECT_LENGTH = 512
_SEARCH_CANDIDATE_LIMIT = 1000
_SEARCH_TOKEN_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._/-]{0,63}")
_SEARCH_STOPWORDS = frozenset({"AND", "OR", "NOT", "NEAR"})

RecipientSpec = Union[str, Iterable[str], None]


@dataclass(slots=True)
class SentMessage:
    message: Message
    sender: str
    recipients: list[tuple[str, str]] = field(default_factory=list)  # (name, kind)

    @property
    def id(self) -> int:
        assert self.message.id is not None
        return self.message.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.id,
            "thread_id": self.message.thread_id,
            "recipient_count": len(self.recipients),
            "recipients": [{"name": name, "kind": kind} for name, kind in self.recipients],
            "created_ts": iso(self.message.created_ts),
        }


def _message_to_dict(
    message: Message,
    sender_name: str,
    state: Optional[MessageRecipient] = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": message.id,
        "thread_id": message.thread_id,
        "from": sender_name,
        "subject": message.subject,
        "body_md": message.body_md,
        "importance": message.importance,
        "ack_required": message.ack_required,
        "created_ts": iso(message.created_ts),
        "expires_ts": iso(message.expires_ts),
    }
    if state is not None:
        payload["kind"] = state.kind
        payload["read_ts"] = iso(state.read_ts)
        payload["ack_ts"] = iso(state.ack_ts)
    return payload


def _not_expired(now: datetime) -> Any:
    return or_(cast(Any, Message.expires_ts).is_(None), cast(Any, Message.expires_ts > now))


def _validate_importance(importance: Optional[str]) -> str:
    value = (importance or "normal").strip().lower()
    if value not in IMPORTANCE_LEVELS:
        raise ValidationError(
            f"importance must be one of {', '.join(IMPORTANCE_LEVELS)}; got '{importance}'.",
            data={"importance": importance},
        )
    return value


def _validate_thread(thread_id: Optional[str]) -> Optional[str]:
    if thread_id is None or not thread_id.strip():
        return None
    if not validate_thread_id_format(thread_id):
        raise ValidationError(
            f"Invalid thread_id '{thread_id}': use up to 128 letters, digits, '.', '_' or '-', "
            "starting with a letter or digit.",
            data={"thread_id": thread_id},
        )
    return thread_id.strip()


def _validate_subject(subject: Optional[str]) -> str:
    value = (subject or "").strip()
    if not value:
        raise ValidationError("subject must not be empty.")
    if len(value) > MAX_SUBJECT_LENGTH:
        raise ValidationError(f"subject may not exceed {MAX_SUBJECT_LENGTH} characters.")
    return value


def _validate_expiry(expires_in_seconds: Optional[int]) -> Optional[int]:
    if expires_in_seconds is None:
        return None
    if isinstance(expires_in_seconds, bool) or not isinstance(expires_in_seconds, int) or expires_in_seconds <= 0:
        raise ValidationError(
            f"expires_in_seconds must be a positive integer; got {expires_in_seconds!r}.",
            data={"expires_in_seconds": expires_in_seconds},
        )
    return expires_in_seconds


def _entry(agent: Agent) -> AgentEntry:
    assert agent.id is not None
    return AgentEntry(
        id=agent.id,
        name=agent.name,
        project_id=agent.project_id,
        last_active_ts=agent.last_active_ts,
        retired=agent.retired_ts is not None,
    )


async def _load_snapshot(session: AsyncSession, project: Project, *, all_projects: bool) -> RegistrySnapshot:
    project_stmt = select(Project)
    agent_stmt = select(Agent)
    if not all_projects:
        project_stmt = project_stmt.where(cast(Any, Project.id == project.id))
        agent_stmt = agent_stmt.where(cast(Any, Agent.project_id == project.id))
    projects = (await session.execute(project_stmt)).scalars().all()
    agents = (await session.execute(agent_stmt.order_by(cast(Any, Agent.id).asc()))).scalars().all()
    return RegistrySnapshot(
        projects=tuple(ProjectEntry(id=p.id, slug=p.slug, human_key=p.human_key) for p in projects if p.id is not None),
        agents=tuple(_entry(agent) for agent in agents),
    )


async def _deliver(
    session: AsyncSession,
    *,
    project: Project,
    sender: Agent,
    subject: str,
    body: str,
    thread_id: Optional[str],
    importance: str,
    ack_required: bool,
    expires_ts: Optional[datetime],
    to_agents: list[AgentEntry],
    cc_agents: list[AgentEntry],
    now: datetime,
) -> SentMessage:
    assert project.id is not None and sender.id is not None
    message = Message(
        project_id=project.id,
        sender_id=sender.id,
        thread_id=thread_id,
        subject=subject,
        body_md=body,
        importance=importance,
        ack_required=ack_required,
        created_ts=now,
        expires_ts=expires_ts,
    )
    session.add(message)
    await session.flush()
    assert message.id is not None
    sent = SentMessage(message=message, sender=sender.name)
    for kind, entries in (("to", to_agents), ("cc", cc_agents)):
        for entry in entries:
            session.add(MessageRecipient(message_id=message.id, agent_id=entry.id, kind=kind))
            sent.recipients.append((entry.name, kind))
    touch(session, sender, now)
    await session.flush()
    return sent


@retry_on_db_lock()
async def send(
    project_key: Optional[str],
    sender_name: str,
    to: RecipientSpec,
    subject: str,
    body: str = "",
    *,
    cc: RecipientSpec = None,
    thread_id: Optional[str] = None,
    importance: str = "normal",
    ack_required: bool = False,
    expires_in_seconds: Optional[int] = None,
) -> SentMessage:
    """Resolve ``to``/``cc`` addresses and store the message with its recipients atomically.

    An agent addressed in both lists is delivered once, as ``to``.
    """
    subject = _validate_subject(subject)
    importance = _validate_importance(importance)
    thread_id = _validate_thread(thread_id)
    ttl = _validate_expiry(expires_in_seconds)
    tokens = split_spec(to) + split_spec(cc)
    wants_other_projects = any(token.lower().startswith("@project:") for token in tokens)
    window = get_settings().messaging.active_window_minutes

    async with write_transaction() as session:
        project, sender = await require_agent(session, project_key, sender_name)
        now = naive_utc()
        snapshot = await _load_snapshot(session, project, all_projects=wants_other_projects)
        sender_entry = _entry(sender)
        to_agents = resolve_recipients(to, snapshot, sender=sender_entry, now=now, default_window=window)
        primary = {entry.id for entry in to_agents}
        cc_agents = [
            entry
            for entry in resolve_recipients(
                cc, snapshot, sender=sender_entry, now=now, default_window=window, allow_empty=True
            )
            if entry.id not in primary
        ]
        sent = await _deliver(
            session,
            project=project,
            sender=sender,
            subject=subject,
            body=body or "",
            thread_id=thread_id,
            importance=importance,
            ack_required=bool(ack_required),
            expires_ts=now + timedelta(seconds=ttl) if ttl else None,
            to_agents=to_agents,
            cc_agents=cc_agents,
            now=now,
        )

    _logger.info(
        "mailbox.sent",
        extra={
            "message_id": sent.id,
            "sender": sent.sender,
            "thread_id": thread_id,
            "recipient_count": len(sent.recipients),
            "importance": importance,
        },
    )
    return sent


async def _load_participation(
    session: AsyncSession,
    project: Project,
    agent: Agent,
    message_id: int,
) -> tuple[Message, Optional[MessageRecipient]]:
    message = await session.get(Message, message_id)
    state = await session.get(MessageRecipient, (message_id, agent.id)) if message is not None else None
    # @project:X delivers into other projects; a recipient row grants access there.
    if message is None or (message.project_id != project.id and state is None):
        raise NotFoundError(f"Message {message_id} not found.", data={"message_id": message_id})
    return message, state


@retry_on_db_lock()
async def reply(
    project_key: Optional[str],
    agent_name: str,
    message_id: int,
    body: str,
    *,
    reply_all: bool = False,
    subject_prefix: str = "Re:",
) -> SentMessage:
    """Answer a message inside its thread.

    The reply goes to the original sender (or, when the original sender
    replies, to the original ``to`` recipients). ``reply_all`` copies every
    other participant. Thread, importance and ack requirement are inherited;
    a message without a thread starts one keyed by its id.
    """
    async with write_transaction() as session:
        project, agent = await require_agent(session, project_key, agent_name)
        original, state = await _load_participation(session, project, agent, message_id)
        if state is None and original.sender_id != agent.id:
            raise NotARecipientError(
                f"Agent '{agent.name}' did not send or receive message {message_id}.",
                data={"message_id": message_id, "agent": agent.name},
            )
        snapshot = await _load_snapshot(session, project, all_projects=original.project_id != project.id)
        by_id = {entry.id: entry for entry in snapshot.agents}
        rows = (
            await session.execute(
                select(MessageRecipient).where(cast(Any, MessageRecipient.message_id == message_id))
            )
        ).scalars().all()

        if original.sender_id == agent.id:
            to_ids = [row.agent_id for row in rows if row.kind == "to"]
            cc_ids = [row.agent_id for row in rows if row.kind != "to"] if reply_all else []
        else:
            to_ids = [original.sender_id]
            cc_ids = [row.agent_id for row in rows if row.agent_id != agent.id] if reply_all else []

        def live(ids: list[int], exclude: set[int]) -> list[AgentEntry]:
            picked: list[AgentEntry] = []
            for agent_id in ids:
                entry = by_id.get(agent_id)
                if entry is not None and not entry.retired and agent_id not in exclude:
                    exclude.add(agent_id)
                    picked.append(entry)
            return picked

        taken: set[int] = set()
        to_agents = live(to_ids, taken)
        taken.add(cast(int, agent.id))
        cc_agents = live(cc_ids, taken)
        if not to_agents:
            raise EmptyRecipientSet(
                f"Nobody left to reply to on message {message_id}.",
                data={"message_id": message_id},
            )

        prefix = (subject_prefix or "").strip()
        subject = original.subject
        if prefix and not subject.lower().startswith(prefix.lower()):
            subject = f"{prefix} {subject}"
        now = naive_utc()
        sent = await _deliver(
            session,
            project=project,
            sender=agent,
            subject=subject[:MAX_SUBJECT_LENGTH],
            body=body or "",
            thread_id=original.thread_id or str(original.id),
            importance=original.importance,
            ack_required=original.ack_required,
            expires_ts=None,
            to_agents=to_agents,
            cc_agents=cc_agents,
            now=now,
        )

    _logger.info(
        "mailbox.replied",
        extra={"message_id": sent.id, "in_reply_to": message_id, "sender": sent.sender},
    )
    return sent


@retry_on_db_lock()
async def inbox(
    project_key: Optional[str],
    agent_name: str,
    *,
    unread: bool = False,
    thread_id: Optional[str] = None,
    hide_acked: bool = False,
    limit: Optional[int] = None,
    mark_read: bool = False,
) -> list[dict[str, Any]]:
    """Messages the agent sent or received, newest first.

    ``unread`` keeps received messages the agent has not acknowledged.
    ``hide_acked`` drops messages the agent acknowledged, whether or not an
    ack was required. ``mark_read`` stamps read_ts on the returned messages.
    """
    if limit is not None and limit <= 0:
        raise ValidationError("limit must be positive.", data={"limit": limit})
    async with write_transaction() as session:
        _, agent = await require_agent(session, project_key, agent_name)
        now = naive_utc()
        me = aliased(MessageRecipient)
        sender = aliased(Agent)
        stmt = (
            select(Message, sender.name, me)
            .join(sender, cast(Any, sender.id == Message.sender_id))
            .outerjoin(me, and_(cast(Any, me.message_id == Message.id), cast(Any, me.agent_id == agent.id)))
            .where(
                # Recipient rows may point into other projects (@project:X).
                or_(cast(Any, Message.sender_id == agent.id), cast(Any, me.agent_id).is_not(None)),
                _not_expired(now),
            )
        )
        if thread_id:
            stmt = stmt.where(cast(Any, Message.thread_id == thread_id.strip()))
        if unread:
            stmt = stmt.where(cast(Any, me.agent_id).is_not(None), cast(Any, me.ack_ts).is_(None))
        if hide_acked:
            stmt = stmt.where(or_(cast(Any, me.agent_id).is_(None), cast(Any, me.ack_ts).is_(None)))
        stmt = stmt.order_by(cast(Any, Message.created_ts).desc(), cast(Any, Message.id).desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = (await session.execute(stmt)).all()

        if mark_read:
            for _, _, state in rows:
                if state is not None and state.read_ts is None:
                    state.read_ts = now
                    session.add(state)
        touch(session, agent, now)
        return [_message_to_dict(message, sender_name, state) for message, sender_name, state in rows]


@retry_on_db_lock()
async def mark_read(project_key: Optional[str], agent_name: str, message_id: int) -> datetime:
    """Stamp read_ts once; later calls return the original timestamp."""
    async with write_transaction() as session:
        project, agent = await require_agent(session, project_key, agent_name)
        _, state = await _load_participation(session, project, agent, message_id)
        if state is None:
            raise NotARecipientError(
                f"Agent '{agent.name}' is not a recipient of message {message_id}.",
                data={"message_id": message_id, "agent": agent.name},
            )
        now = naive_utc()
        if state.read_ts is None:
            state.read_ts = now
            session.add(state)
        touch(session, agent, now)
        return state.read_ts


@retry_on_db_lock()
async def ack(project_key: Optional[str], agent_name: str, message_id: int) -> tuple[datetime, bool]:
    """Acknowledge a message; first write wins.

    Returns the stored ack timestamp and whether this call set it. A repeated
    ack is a successful no-op that reports the original timestamp.
    """
    async with write_transaction() as session:
        project, agent = await require_agent(session, project_key, agent_name)
        _, state = await _load_participation(session, project, agent, message_id)
        if state is None:
            raise NotARecipientError(
                f"Agent '{agent.name}' is not a recipient of message {message_id}.",
                data={"message_id": message_id, "agent": agent.name},
            )
        now = naive_utc()
        first = state.ack_ts is None
        if first:
            state.ack_ts = now
            if state.read_ts is None:
                state.read_ts = now
            session.add(state)
        touch(session, agent, now)
        acknowledged_at = cast(datetime, state.ack_ts)
    _logger.info(
        "mailbox.acked",
        extra={"message_id": message_id, "agent": agent.name, "first": first},
    )
    return acknowledged_at, first


async def _recipient_states(
    session: AsyncSession, message_ids: list[int]
) -> dict[int, list[dict[str, Any]]]:
    if not message_ids:
        return {}
    result = await session.execute(
        select(MessageRecipient, Agent.name)
        .join(Agent, cast(Any, Agent.id == MessageRecipient.agent_id))
        .where(cast(Any, MessageRecipient.message_id).in_(message_ids))
        .order_by(cast(Any, MessageRecipient.message_id).asc(), cast(Any, Agent.id).asc())
    )
    states: dict[int, list[dict[str, Any]]] = {}
    for state, name in result.all():
        states.setdefault(state.message_id, []).append(
            {"name": name, "kind": state.kind, "read_ts": iso(state.read_ts), "ack_ts": iso(state.ack_ts)}
        )
    return states


async def thread(project_key: Optional[str], thread_id: str) -> list[dict[str, Any]]:
    """Messages of a thread oldest first, each with its recipients' read/ack state.

    A bare message id also names the thread started by replying to that message.
    """
    key = (thread_id or "").strip()
    if not key:
        raise ValidationError("thread_id must not be empty.")
    await ensure_schema()
    async with get_session() as session:
        project = await find_project(session, project_key)
        if project is None:
            return []
        now = naive_utc()
        sender = aliased(Agent)
        match = cast(Any, Message.thread_id == key)
        if key.isdigit():
            match = or_(match, and_(cast(Any, Message.id == int(key)), cast(Any, Message.thread_id).is_(None)))
        rows = (
            await session.execute(
                select(Message, sender.name)
                .join(sender, cast(Any, sender.id == Message.sender_id))
                .where(cast(Any, Message.project_id == project.id), match, _not_expired(now))
                .order_by(cast(Any, Message.created_ts).asc(), cast(Any, Message.id).asc())
            )
        ).all()
        states = await _recipient_states(session, [cast(int, message.id) for message, _ in rows])
    messages = []
    for message, sender_name in rows:
        payload = _message_to_dict(message, sender_name)
        payload["recipients"] = states.get(cast(int, message.id), [])
        messages.append(payload)
    return messages


async def list_threads(project_key: Optional[str] = None, agent_name: Optional[str] = None) -> list[dict[str, Any]]:
    """Thread summaries (count, first/last activity, participants), most recent first."""
    await ensure_schema()
    async with get_session() as session:
        if agent_name:
            project, agent = await require_agent(session, project_key, agent_name)
        else:
            found = await find_project(session, project_key)
            if found is None:
                return []
            project, agent = found, None
        now = naive_utc()
        sender = aliased(Agent)
        stmt = (
            select(Message, sender.name)
            .join(sender, cast(Any, sender.id == Message.sender_id))
            .where(cast(Any, Message.project_id == project.id), _not_expired(now))
            .order_by(cast(Any, Message.created_ts).asc(), cast(Any, Message.id).asc())
        )
        rows = (await session.execute(stmt)).all()
        states = await _recipient_states(session, [cast(int, message.id) for message, _ in rows])

    threads: dict[str, dict[str, Any]] = {}
    for message, sender_name in rows:
        key = message.thread_id or str(message.id)
        summary = threads.setdefault(
            key,
            {
                "thread_id": key,
                "subject": message.subject,
                "message_count": 0,
                "first_ts": iso(message.created_ts),
                "last_ts": iso(message.created_ts),
                "participants": [],
            },
        )
        summary["message_count"] += 1
        summary["last_ts"] = iso(message.created_ts)
        names = [sender_name] + [state["name"] for state in states.get(cast(int, message.id), [])]
        for name in names:
            if name not in summary["participants"]:
                summary["participants"].append(name)
    summaries = list(threads.values())
    if agent is not None:
        summaries = [summary for summary in summaries if agent.name in summary["participants"]]
    summaries.sort(key=lambda summary: summary["last_ts"] or "", reverse=True)
    return summaries


def _search_terms(query: str, *, max_terms: int = 8) -> list[str]:
    terms: list[str] = []
    for token in _SEARCH_TOKEN_RE.findall(query or ""):
        if token.upper() in _SEARCH_STOPWORDS:
            continue
        lowered = token.lower()
        if lowered not in terms:
            terms.append(lowered)
        if len(terms) >= max_terms:
            break
    return terms


def _like_escape(term: str) -> str:
    """Escape LIKE wildcards for literal substring matching."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _candidate_ids(
    session: AsyncSession,
    project_id: int,
    terms: list[str],
    thread_id: Optional[str] = None,
) -> list[int]:
    """Newest matching message ids, narrowed by project and thread before the candidate cap."""
    fts_query = " OR ".join('"' + term.replace('"', '""') + '"' for term in terms)
    try:
        result = await session.execute(
            text(
                "SELECT fts_messages.rowid FROM fts_messages "
                "JOIN messages m ON m.id = fts_messages.rowid "
                "WHERE fts_messages MATCH :query AND m.project_id = :project_id "
                "AND (:thread_id IS NULL OR m.thread_id = :thread_id) "
                "ORDER BY fts_messages.rowid DESC LIMIT :limit"
            ),
            {
                "query": fts_query,
                "project_id": project_id,
                "thread_id": thread_id,
                "limit": _SEARCH_CANDIDATE_LIMIT,
            },
        )
        return [int(row[0]) for row in result.all()]
    except OperationalError as exc:
        if "locked" in str(exc).lower():
            raise
        _logger.debug("mailbox.search_like_fallback", extra={"error": str(exc)[:200]})

    clauses = []
    for term in terms:
        like = f"%{_like_escape(term)}%"
        clauses.append(cast(Any, Message.subject).ilike(like, escape="\\"))
        clauses.append(cast(Any, Message.body_md).ilike(like, escape="\\"))
    stmt = select(Message.id).where(cast(Any, Message.project_id == project_id), or_(*clauses))
    if thread_id is not None:
        stmt = stmt.where(cast(Any, Message.thread_id == thread_id))
    result = await session.execute(
        stmt
        .order_by(cast(Any, Message.id).desc())
        .limit(_SEARCH_CANDIDATE_LIMIT)
    )
    return [int(row[0]) for row in result.all()]


def _rank(message: Message, phrase: str, terms: list[str]) -> int:
    haystack = " ".join(f"{message.subject}\n{message.body_md}".lower().split())
    if phrase and phrase in haystack:
        return 0
    if all(term in haystack for term in terms):
        return 1
    return 2


async def search(
    project_key: Optional[str],
    query: str,
    *,
    thread_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[dict[str, Any]]:
    """Ranked full-text search: exact phrase, then all terms, then any term; newer first within a tier."""
    terms = _search_terms(query)
    if not terms:
        return []
    limit = limit or get_settings().messaging.search_default_limit
    phrase = " ".join((query or "").strip().strip('"').lower().split())
    await ensure_schema()
    async with get_session() as session:
        project = await find_project(session, project_key)
        if project is None or project.id is None:
            return []
        thread_key = thread_id.strip() if thread_id and thread_id.strip() else None
        ids = await _candidate_ids(session, project.id, terms, thread_key)
        if not ids:
            return []
        now = naive_utc()
        sender = aliased(Agent)
        stmt = (
            select(Message, sender.name)
            .join(sender, cast(Any, sender.id == Message.sender_id))
            .where(cast(Any, Message.id).in_(ids), _not_expired(now))
        )
        if thread_id:
            stmt = stmt.where(cast(Any, Message.thread_id == thread_id.strip()))
        rows = (await session.execute(stmt)).all()

    ranked = sorted(
        rows,
        key=lambda row: (_rank(row[0], phrase, terms), -row[0].created_ts.timestamp(), -cast(int, row[0].id)),
    )
    results = []
    for message, sender_name in ranked[:limit]:
        payload = _message_to_dict(message, sender_name)
        payload["rank"] = _rank(message, phrase, terms)
        results.append(payload)
    return results
