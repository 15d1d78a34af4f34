"""Service interface: every operation as a coroutine returning JSON-ready data.

Field names are a contract with shell, dashboard and task-tracker callers;
fields are only ever appended. Engine errors come back as
``{"error": {type, message, recoverable, data}}`` payloads, except reservation
conflicts, which use the dedicated ``{"conflict": ...}`` shape, and an unknown
identity in ``whoami``, which answers ``{"not_registered": true}``.
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, Optional, TypeVar

from . import identity, mailbox, reservations, rich_logger
from .config import get_settings
from .errors import AgentMailError, FileReservationConflict, NotRegisteredError, StoreBusyError
from .log import get_logger
from .models import Agent
from .utils import iso

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _agent_to_dict(agent: Agent) -> dict[str, Any]:
    return {
        "id": agent.id,
        "name": agent.name,
        "program": agent.program,
        "model": agent.model,
        "task_description": agent.task_description,
        "inception_ts": iso(agent.inception_ts),
        "last_active_ts": iso(agent.last_active_ts),
        "retired_ts": iso(agent.retired_ts),
    }


def _instrument(operation: str, *, agent_arg: Optional[str] = None) -> Callable[[F], F]:
    """Log each call once (structlog, plus a rich panel when enabled) and turn engine errors into payloads."""

    def decorator(func: F) -> F:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            bound = signature.bind_partial(*args, **kwargs)
            arguments = dict(bound.arguments)
            logger = get_logger("agent_mail.operations").bind(
                operation=operation,
                project=arguments.get("project"),
                agent=arguments.get(agent_arg) if agent_arg else None,
            )
            error: Optional[Exception] = None
            result: Any = None
            try:
                result = await func(*args, **kwargs)
            except AgentMailError as exc:
                error = exc
                result = exc.to_payload()
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            if error is None:
                logger.info("operation", outcome="ok", duration_ms=duration_ms)
            elif isinstance(error, StoreBusyError):
                logger.warning("operation", outcome=error.error_type, duration_ms=duration_ms, error=str(error))
            else:
                logger.info("operation", outcome=error.error_type, duration_ms=duration_ms, error=str(error))

            if get_settings().log_rich_enabled:
                ctx = rich_logger.OperationContext(
                    operation=operation,
                    arguments=arguments,
                    project=arguments.get("project"),
                    agent=arguments.get(agent_arg) if agent_arg else None,
                    start_time=start,
                    result=result,
                    error=error,
                )
                rich_logger.log_operation_end(ctx)
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


# --- Identity -----------------------------------------------------------------------------------


@_instrument("register", agent_arg="name")
async def register(
    *,
    program: str,
    model: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    project: Optional[str] = None,
) -> dict[str, Any]:
    registration = await identity.register(
        project, name=name, program=program, model=model, task_description=description
    )
    return {
        "name": registration.agent.name,
        "created": registration.created,
        "project": registration.project.slug,
        "agent": _agent_to_dict(registration.agent),
    }


@_instrument("whoami", agent_arg="name")
async def whoami(name: Optional[str] = None, *, project: Optional[str] = None) -> dict[str, Any]:
    try:
        agent = await identity.whoami(project, name)
    except NotRegisteredError:
        return {"not_registered": True}
    return {"name": agent.name, "agent": _agent_to_dict(agent)}


@_instrument("list_agents")
async def list_agents(*, project: Optional[str] = None, include_retired: bool = False) -> list[dict[str, Any]]:
    agents = await identity.list_agents(project, include_retired=include_retired)
    return [_agent_to_dict(agent) for agent in agents]


@_instrument("deregister", agent_arg="name")
async def deregister(name: str, *, project: Optional[str] = None) -> dict[str, Any]:
    agent, released = await identity.deregister(project, name)
    return {"name": agent.name, "retired_at": iso(agent.retired_ts), "released_count": released}


# --- Leases -------------------------------------------------------------------------------------


@_instrument("reserve", agent_arg="agent")
async def reserve(
    pattern: str,
    agent: str,
    *,
    ttl_seconds: Optional[int] = None,
    lock_type: str = "exclusive",
    reason: str = "",
    project: Optional[str] = None,
) -> dict[str, Any]:
    try:
        lease = await reservations.reserve(
            project, agent, pattern, lock_type=lock_type, reason=reason, ttl_seconds=ttl_seconds
        )
    except FileReservationConflict as exc:
        holder = exc.holder
        return {
            "conflict": {
                "agent": holder["agent"],
                "pattern": holder["path_pattern"],
                "reason": holder["reason"],
                "expires_at": holder["expires_ts"],
                "lock_type": holder["lock_type"],
                "requested_pattern": exc.pattern,
                "holders": exc.holders,
            }
        }
    return {"ok": True, "reservation": lease.to_dict()}


@_instrument("release", agent_arg="agent")
async def release(
    pattern: Optional[str] = None, *, agent: str, project: Optional[str] = None
) -> dict[str, Any]:
    """Release ``agent``'s reservations on ``pattern``, or all of them when omitted."""
    released = await reservations.release(project, agent, pattern)
    return {"released_count": released}


@_instrument("list_reservations", agent_arg="agent")
async def list_reservations(
    *,
    agent: Optional[str] = None,
    prefix: Optional[str] = None,
    project: Optional[str] = None,
) -> list[dict[str, Any]]:
    leases = await reservations.list_reservations(project, agent_name=agent, prefix=prefix)
    return [lease.to_dict() for lease in leases]


@_instrument("check_path")
async def check_path(path: str, *, project: Optional[str] = None) -> list[dict[str, Any]]:
    leases = await reservations.holders(project, path)
    return [lease.to_dict() for lease in leases]


# --- Mailbox ------------------------------------------------------------------------------------


@_instrument("send", agent_arg="sender")
async def send(
    subject: str,
    body: str,
    sender: str,
    to: Any,
    *,
    thread: Optional[str] = None,
    importance: str = "normal",
    ack_required: bool = False,
    cc: Any = None,
    expires_in_seconds: Optional[int] = None,
    project: Optional[str] = None,
) -> dict[str, Any]:
    sent = await mailbox.send(
        project,
        sender,
        to,
        subject,
        body,
        cc=cc,
        thread_id=thread,
        importance=importance,
        ack_required=ack_required,
        expires_in_seconds=expires_in_seconds,
    )
    return sent.to_dict()


@_instrument("reply", agent_arg="agent")
async def reply(
    message_id: int,
    agent: str,
    body: str,
    *,
    reply_all: bool = False,
    project: Optional[str] = None,
) -> dict[str, Any]:
    sent = await mailbox.reply(project, agent, message_id, body, reply_all=reply_all)
    return sent.to_dict()


@_instrument("inbox", agent_arg="agent")
async def inbox(
    agent: str,
    *,
    unread: bool = False,
    thread: Optional[str] = None,
    hide_acked: bool = False,
    limit: Optional[int] = None,
    mark_read: bool = False,
    project: Optional[str] = None,
) -> list[dict[str, Any]]:
    return await mailbox.inbox(
        project,
        agent,
        unread=unread,
        thread_id=thread,
        hide_acked=hide_acked,
        limit=limit,
        mark_read=mark_read,
    )


@_instrument("mark_read", agent_arg="agent")
async def mark_read(message_id: int, agent: str, *, project: Optional[str] = None) -> dict[str, Any]:
    read_at = await mailbox.mark_read(project, agent, message_id)
    return {"ok": True, "message_id": message_id, "read_at": iso(read_at)}


@_instrument("ack", agent_arg="agent")
async def ack(message_id: int, agent: str, *, project: Optional[str] = None) -> dict[str, Any]:
    acknowledged_at, first = await mailbox.ack(project, agent, message_id)
    return {
        "ok": True,
        "message_id": message_id,
        "acknowledged_at": iso(acknowledged_at),
        "already_acknowledged": not first,
    }


@_instrument("search")
async def search(
    query: str,
    *,
    thread: Optional[str] = None,
    project: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[dict[str, Any]]:
    return await mailbox.search(project, query, thread_id=thread, limit=limit)


@_instrument("thread")
async def thread(thread_id: str, *, project: Optional[str] = None) -> list[dict[str, Any]]:
    return await mailbox.thread(project, thread_id)


@_instrument("list_threads", agent_arg="agent")
async def list_threads(*, agent: Optional[str] = None, project: Optional[str] = None) -> list[dict[str, Any]]:
    return await mailbox.list_threads(project, agent)
