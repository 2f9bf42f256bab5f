from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from orgscope.domain.models import EventEnvelope, EventRecord
from orgscope.infra.db import get_engine

EventHandler = Callable[[EventEnvelope], None]

logger = logging.getLogger(__name__)


class EventBus:
    """In-process fan-out backed by the ``events`` table.

    Services ``stage`` an event inside the session of the mutation so the
    record commits or rolls back with it, then ``dispatch`` it once the
    commit went through. A failing subscriber is logged and skipped; the
    mutation it reacts to has already succeeded.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def clear(self) -> None:
        self._subscribers.clear()

    def record(self, event: EventEnvelope, session: Session) -> None:
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
        )

    def stage(
        self,
        event_type: str,
        payload: dict[str, Any],
        session: Session,
        *,
        actor_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, actor_id=actor_id, payload=payload)
        self.record(event, session)
        return event

    def dispatch(self, event: EventEnvelope) -> None:
        logger.debug("dispatching %s %s", event.event_type, event.event_id)
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s %s", event.event_type, event.event_id)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(get_engine())
        try:
            self.record(event, session)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()
        self.dispatch(event)


event_bus = EventBus()
