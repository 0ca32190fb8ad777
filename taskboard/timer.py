"""Time tracking engine.

A running timer is a ``time_entries`` row with a null ``end_time``. That row is
the only source of truth: elapsed time is always ``now - start_time``, never a
counter kept in memory, so a reloaded client picks up where it left off.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models
from .database import utcnow
from .errors import ConflictError, NotFoundError, StoreError
from .realtime import feed

logger = logging.getLogger(__name__)


def elapsed_seconds(start: datetime, now: datetime) -> int:
    return max(0, int((now - start).total_seconds()))


def duration_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between ``start`` and ``end``; partial minutes are dropped."""
    return elapsed_seconds(start, end) // 60


def format_elapsed(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


def format_minutes(minutes: Optional[int]) -> str:
    if not minutes:
        return "0m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if hours > 0 else f"{mins}m"


@dataclass
class ActiveTimer:
    entry: models.TimeEntry
    elapsed_seconds: int

    @property
    def elapsed_display(self) -> str:
        return format_elapsed(self.elapsed_seconds)


class TimeTracker:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def start_timer(self, task_id: int, user_id: int) -> models.TimeEntry:
        task = crud.require_task(self.db, task_id)
        crud.require_profile(self.db, user_id)

        if crud.get_active_entry(self.db, task_id, user_id) is not None:
            logger.info("Timer already running for task %s user %s", task_id, user_id)
            raise ConflictError("Ya hay un temporizador activo para esta tarea", action="iniciar tiempo")

        entry = models.TimeEntry(
            task_id=task_id,
            user_id=user_id,
            start_time=self.clock(),
            entry_type=models.EntryType.AUTOMATIC.value,
        )
        self.db.add(entry)
        if task.status == models.TaskStatus.PENDING.value:
            task.status = models.TaskStatus.IN_PROGRESS.value

        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent start; the partial unique index rejected the row.
            self.db.rollback()
            logger.warning("Concurrent timer start rejected for task %s user %s", task_id, user_id)
            raise ConflictError("Ya hay un temporizador activo para esta tarea", action="iniciar tiempo")
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Store error while starting timer: %s", exc)
            raise StoreError(action="iniciar tiempo") from exc

        self.db.refresh(entry)
        logger.info("Timer %s started for task %s user %s", entry.id, task_id, user_id)
        feed.publish("time_entries", "INSERT", entry.id, task_id=task_id, user_id=user_id)
        return entry

    def stop_timer(self, entry_id: int) -> models.TimeEntry:
        entry = self.db.get(models.TimeEntry, entry_id)
        if entry is None:
            raise NotFoundError("Registro de tiempo no encontrado", action="detener tiempo")
        if entry.end_time is not None:
            raise ConflictError("El temporizador ya está detenido", action="detener tiempo")

        end = self.clock()
        minutes = duration_minutes(entry.start_time, end)
        # Only a still-running row is stopped; a concurrent stop leaves nothing to update.
        stopped = self.db.execute(
            update(models.TimeEntry)
            .where(models.TimeEntry.id == entry_id, models.TimeEntry.end_time.is_(None))
            .values(end_time=end, duration_minutes=minutes)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not stopped:
            self.db.rollback()
            raise ConflictError("El temporizador ya está detenido", action="detener tiempo")
        crud.add_task_minutes(self.db, entry.task_id, minutes)

        crud.commit(self.db, "detener tiempo")
        self.db.refresh(entry)
        logger.info("Timer %s stopped after %s min", entry.id, minutes)
        feed.publish("time_entries", "UPDATE", entry.id, task_id=entry.task_id, user_id=entry.user_id)
        return entry

    def resume_active_timer(self, task_id: int, user_id: int) -> Optional[ActiveTimer]:
        entry = crud.get_active_entry(self.db, task_id, user_id)
        if entry is None:
            return None
        return ActiveTimer(entry=entry, elapsed_seconds=elapsed_seconds(entry.start_time, self.clock()))
