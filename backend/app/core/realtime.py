from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

ChangeHandler = Callable[["RowChange"], Awaitable[None] | None]


@dataclass
class RowChange:
    """One committed change to a persisted row."""

    table: str
    row_id: str
    event: str  # "INSERT" or "UPDATE"
    new: dict[str, Any]
    old: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def changed(self, column: str) -> bool:
        return self.old.get(column) != self.new.get(column)


class ChangeFeed:
    """In-process change notifications keyed by table, row id and event type.

    Writers publish after their transaction commits; subscribers never see
    uncommitted state.
    """

    def __init__(self):
        self._handlers: dict[tuple[str, str, str], list[ChangeHandler]] = {}

    def subscribe(
        self,
        table: str,
        row_id: str,
        event: str,
        handler: ChangeHandler,
    ) -> Callable[[], None]:
        key = (table, str(row_id), event)
        self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(key)
            if not handlers:
                return
            self._handlers[key] = [h for h in handlers if h is not handler]
            if not self._handlers[key]:
                del self._handlers[key]

        return unsubscribe

    async def publish(self, change: RowChange) -> None:
        key = (change.table, str(change.row_id), change.event)
        for handler in list(self._handlers.get(key, [])):
            try:
                result = handler(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Change handler failed for %s/%s %s", change.table, change.row_id, change.event
                )

    def subscriber_count(self, table: str, row_id: str, event: str) -> int:
        return len(self._handlers.get((table, str(row_id), event), []))


change_feed = ChangeFeed()
