"""In-process row-change feed.

Subscribers register for a table plus an optional equality filter on the row
(``{"task_id": 3}``) and get a ``ChangeEvent`` after each committed insert,
update or delete. Events only say that something changed; subscribers refetch.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str  # INSERT | UPDATE | DELETE
    row_id: int
    row: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "event": self.event, "id": self.row_id}


@dataclass
class _Subscription:
    table: str
    filters: Dict[str, Any]
    callback: Callable[[ChangeEvent], None]

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return all(event.row.get(key) == value for key, value in self.filters.items())


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[_Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], None],
        filters: Optional[Dict[str, Any]] = None,
    ) -> Callable[[], None]:
        """Register ``callback``; returns a function that removes it again."""
        sub = _Subscription(table=table, filters=dict(filters or {}), callback=callback)
        with self._lock:
            self._subscriptions.append(sub)

        def unsubscribe():
            with self._lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        return unsubscribe

    def publish(self, table: str, event: str, row_id: int, **row) -> None:
        change = ChangeEvent(table=table, event=event, row_id=row_id, row=row)
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]
        for sub in targets:
            try:
                sub.callback(change)
            except Exception:
                # A broken subscriber must not fail the write that triggered it.
                logger.exception("Change feed subscriber failed for %s", table)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions if s.table == table)


feed = ChangeFeed()
