from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from linkauth.logging import get_logger, sanitize_error_message
from linkauth.storage.models import utcnow

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class AnalyticsEvent:
    actor_id: str
    category: str
    event: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=utcnow)


class AnalyticsSink:
    """Fire-and-forget event recording.

    Subclasses implement ``_record_event`` / ``_record_error``; the public
    methods never raise so a broken backend cannot fail the caller's request.
    """

    def track_event(
        self,
        actor_id: Optional[str],
        category: str,
        event: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self._record_event(
                AnalyticsEvent(
                    actor_id=actor_id or SYSTEM_ACTOR,
                    category=category,
                    event=event,
                    attributes=dict(attributes or {}),
                )
            )
        except Exception as exc:
            logger.warning(
                "analytics_record_failed",
                kind="event",
                analytics_event=event,
                error=sanitize_error_message(str(exc)),
            )

    def track_error(
        self,
        error: BaseException,
        actor_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self._record_error(error, actor_id or SYSTEM_ACTOR, dict(context or {}))
        except Exception as exc:
            logger.warning(
                "analytics_record_failed",
                kind="error",
                error=sanitize_error_message(str(exc)),
            )

    def _record_event(self, event: AnalyticsEvent) -> None:
        raise NotImplementedError

    def _record_error(
        self, error: BaseException, actor_id: str, context: Dict[str, Any]
    ) -> None:
        raise NotImplementedError


class LogAnalyticsSink(AnalyticsSink):
    def _record_event(self, event: AnalyticsEvent) -> None:
        logger.info(
            "analytics_event",
            actor_id=event.actor_id,
            category=event.category,
            analytics_event=event.event,
            attributes=event.attributes,
        )

    def _record_error(
        self, error: BaseException, actor_id: str, context: Dict[str, Any]
    ) -> None:
        logger.info(
            "analytics_error",
            actor_id=actor_id,
            error_type=type(error).__name__,
            error=sanitize_error_message(str(error)),
            **context,
        )


class MemoryAnalyticsSink(AnalyticsSink):
    """Keeps events in a list; used by tests to assert on what was recorded."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[AnalyticsEvent] = []
        self.errors: List[Dict[str, Any]] = []

    def _record_event(self, event: AnalyticsEvent) -> None:
        with self._lock:
            self.events.append(event)

    def _record_error(
        self, error: BaseException, actor_id: str, context: Dict[str, Any]
    ) -> None:
        with self._lock:
            self.errors.append(
                {"error": error, "actor_id": actor_id, "context": context}
            )

    def names(self) -> List[str]:
        with self._lock:
            return [e.event for e in self.events]
