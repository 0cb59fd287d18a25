"""
Audit logging and change events for RBAC mutations.

Stores call ChangeNotifier.emit() after a mutation has committed. The
notifier writes one audit record and publishes one named event; failures
in either are logged and swallowed so they never undo or fail the
mutation itself.
"""
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.models import AuditLog
from rbac_service.utils import get_logger


log = get_logger(__name__)


@dataclass
class AuditEntry:
    """One audited mutation."""
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    scope_type: Optional[ScopeType] = None
    scope_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_user_id": self.actor_user_id,
            "scope_type": self.scope_type.value if self.scope_type else None,
            "scope_id": self.scope_id,
            **self.details,
        }


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        ...


class DatabaseAuditSink:
    """
    Writes audit entries to the audit_logs table.

    Each entry gets its own session so a failed audit write cannot roll
    back the caller's transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        async with self.session_factory() as session:
            session.add(AuditLog(
                user_id=entry.actor_user_id,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                scope_type=entry.scope_type,
                scope_id=entry.scope_id,
                details=entry.details or None,
            ))
            await session.commit()

        log.info(
            f"Audit: user={entry.actor_user_id} action={entry.action} "
            f"entity={entry.entity_type}:{entry.entity_id} scope={entry.scope_type}:{entry.scope_id}"
        )


EventHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """
    In-process publish/subscribe for RBAC change events.

    Usage:
        bus = EventBus()
        bus.subscribe("role.deleted", handler)
        await bus.publish("role.deleted", {"role_id": "..."})

    Handlers may be plain functions or coroutine functions.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def publish(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.warning(f"Event handler failed for {event}", exc_info=True)


class ChangeNotifier:
    """Audit sink and event bus behind one call."""

    def __init__(self, sink: Optional[AuditSink] = None, bus: Optional[EventBus] = None):
        self.sink = sink
        self.bus = bus

    async def emit(self, event: str, entry: AuditEntry) -> None:
        if self.sink is not None:
            try:
                await self.sink.record(entry)
            except Exception:
                log.warning(f"Failed to write audit record for {event}", exc_info=True)
        if self.bus is not None:
            await self.bus.publish(event, entry.as_payload())
