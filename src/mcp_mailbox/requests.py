"""Validated, typed request structures for each mailbox operation.

Tool arguments arrive loosely typed. Each ``parse`` classmethod checks them and
returns a frozen request the store functions can trust; failures raise
:class:`~mcp_mailbox.errors.InvalidArgumentError` before any storage work.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final

from .addressing import ContextScope, QueueAddress, resolve_queue, resolve_scope
from .errors import InvalidArgumentError

ANONYMOUS_AGENT: Final[str] = "anonymous"

# Largest value SQLite can bind as an INTEGER.
SQLITE_MAX_INTEGER: Final[int] = 2**63 - 1
_MAX_ID_DIGITS: Final[int] = len(str(SQLITE_MAX_INTEGER))


def require_utf8(value: str, field: str) -> str:
    """Reject strings that cannot be stored as UTF-8, such as lone surrogates."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise InvalidArgumentError(f"{field} is not valid UTF-8: {exc.reason}", field=field) from exc
    return value


def require_text(value: Any, field: str) -> str:
    """Return ``value`` unchanged if it is a string with at least one non-space character."""
    if not isinstance(value, str):
        raise InvalidArgumentError(f"{field} must be a string", field=field)
    if not value.strip():
        raise InvalidArgumentError(f"{field} must not be empty", field=field)
    return require_utf8(value, field)


def parse_scope(project_id: Any) -> ContextScope:
    # An empty project id is rejected rather than treated as global.
    if project_id is None:
        return resolve_scope(None)
    return resolve_scope(require_text(project_id, "project_id"))


def parse_limit(limit: Any) -> int | None:
    """``None`` means no limit; ``0`` is valid and selects nothing.

    Values beyond what SQLite can bind cannot be smaller than any queue, so they
    are treated as no limit.
    """
    if limit is None:
        return None
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidArgumentError("limit must be an integer", field="limit")
    if limit < 0:
        raise InvalidArgumentError(f"limit must be >= 0 (got {limit})", field="limit")
    if limit > SQLITE_MAX_INTEGER:
        return None
    return limit


def parse_message_id(message_id: Any) -> int:
    if isinstance(message_id, int) and not isinstance(message_id, bool):
        value = message_id
    elif isinstance(message_id, str) and message_id.isascii() and message_id.isdigit():
        # Cap the digits before int() so oversized input never hits the str-to-int limit.
        value = int(message_id) if len(message_id) <= _MAX_ID_DIGITS else SQLITE_MAX_INTEGER + 1
    else:
        raise InvalidArgumentError(f"Invalid message id: {message_id!r}", field="message_id")
    if value < 1 or value > SQLITE_MAX_INTEGER:
        raise InvalidArgumentError(f"Invalid message id: {message_id!r}", field="message_id")
    return value


def normalize_sender(from_agent: Any) -> str:
    if from_agent is None:
        return ANONYMOUS_AGENT
    if not isinstance(from_agent, str):
        raise InvalidArgumentError("from_agent must be a string", field="from_agent")
    return require_utf8(from_agent, "from_agent") if from_agent.strip() else ANONYMOUS_AGENT


@dataclass(slots=True, frozen=True)
class ContextSetRequest:
    scope: ContextScope
    key: str
    value: str

    @classmethod
    def parse(cls, key: Any, value: Any, project_id: Any = None) -> ContextSetRequest:
        if not isinstance(value, str):
            raise InvalidArgumentError("value must be a string", field="value")
        return cls(
            scope=parse_scope(project_id),
            key=require_text(key, "key"),
            value=require_utf8(value, "value"),
        )


@dataclass(slots=True, frozen=True)
class ContextKeyRequest:
    """Addresses one context entry; used by get and delete."""

    scope: ContextScope
    key: str

    @classmethod
    def parse(cls, key: Any, project_id: Any = None) -> ContextKeyRequest:
        return cls(scope=parse_scope(project_id), key=require_text(key, "key"))


@dataclass(slots=True, frozen=True)
class ContextListRequest:
    scope: ContextScope

    @classmethod
    def parse(cls, project_id: Any = None) -> ContextListRequest:
        return cls(scope=parse_scope(project_id))


@dataclass(slots=True, frozen=True)
class SendMessageRequest:
    queue: QueueAddress
    content: str
    from_agent: str
    reference_id: str | None

    @classmethod
    def parse(
        cls,
        project_id: Any,
        to_agent: Any,
        content: Any,
        from_agent: Any = None,
        reference_id: Any = None,
    ) -> SendMessageRequest:
        queue = resolve_queue(require_text(project_id, "project_id"), require_text(to_agent, "to_agent"))
        if not isinstance(content, str):
            raise InvalidArgumentError("content must be a string", field="content")
        if reference_id is not None and not isinstance(reference_id, str):
            raise InvalidArgumentError("reference_id must be a string", field="reference_id")
        return cls(
            queue=queue,
            content=require_utf8(content, "content"),
            from_agent=normalize_sender(from_agent),
            reference_id=None if reference_id is None else require_utf8(reference_id, "reference_id"),
        )


@dataclass(slots=True, frozen=True)
class FetchMessagesRequest:
    """Shared by receive and peek."""

    queue: QueueAddress
    limit: int | None

    @classmethod
    def parse(cls, project_id: Any, agent_id: Any, limit: Any = None) -> FetchMessagesRequest:
        queue = resolve_queue(require_text(project_id, "project_id"), require_text(agent_id, "agent_id"))
        return cls(queue=queue, limit=parse_limit(limit))


@dataclass(slots=True, frozen=True)
class DeleteMessageRequest:
    message_id: int

    @classmethod
    def parse(cls, message_id: Any) -> DeleteMessageRequest:
        return cls(message_id=parse_message_id(message_id))
