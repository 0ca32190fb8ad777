import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import crud, reports, schemas
from .config import get_settings
from .database import Base, as_naive_utc, engine, get_db, utcnow
from .errors import TaskboardError, ValidationError
from .logging_config import setup_logging
from .models import TaskStatus
from .realtime import feed
from .timer import TimeTracker

settings = get_settings()
setup_logging(settings)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)


@app.exception_handler(TaskboardError)
async def taskboard_error_handler(request: Request, exc: TaskboardError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info("%s %s - %s - %.3fs", request.method, request.url.path,
                response.status_code, time.perf_counter() - start)
    return response


def get_tracker(db: Session = Depends(get_db)) -> TimeTracker:
    return TimeTracker(db)


@app.get("/health")
def health_check():
    return {"status": "ok"}


# ---------- profiles ----------

@app.get("/profiles", response_model=List[schemas.ProfileOut])
def list_profiles(db: Session = Depends(get_db)):
    return crud.get_active_profiles(db)


@app.post("/profiles", response_model=schemas.ProfileOut, status_code=status.HTTP_201_CREATED)
def create_profile(profile_in: schemas.ProfileCreate, db: Session = Depends(get_db)):
    return crud.create_profile(db, profile_in)


# ---------- tasks ----------

@app.get("/tasks", response_model=List[schemas.TaskOut])
def list_tasks(skip: int = 0, limit: int = settings.DEFAULT_PAGE_SIZE, db: Session = Depends(get_db)):
    return crud.get_tasks(db, skip=skip, limit=limit)


@app.get("/tasks/board", response_model=schemas.BoardOut)
def task_board(db: Session = Depends(get_db)):
    return crud.get_board(db)


@app.get("/tasks/overdue", response_model=List[schemas.TaskOut])
def overdue_tasks(db: Session = Depends(get_db)):
    return crud.get_overdue_tasks(db)


@app.get("/tasks/status/{task_status}", response_model=List[schemas.TaskOut])
def tasks_by_status(task_status: TaskStatus, db: Session = Depends(get_db)):
    return crud.get_tasks_by_status(db, task_status.value)


@app.post("/tasks", response_model=schemas.TaskOut, status_code=status.HTTP_201_CREATED)
def create_task(task_in: schemas.TaskCreate, db: Session = Depends(get_db)):
    return crud.create_task(db, task_in)


@app.post("/tasks/poll", response_model=List[schemas.TaskOut], status_code=status.HTTP_201_CREATED)
def create_poll_tasks(poll_in: schemas.PollTaskCreate, db: Session = Depends(get_db)):
    return crud.create_poll_tasks(db, poll_in)


@app.get("/tasks/{task_id}", response_model=schemas.TaskOut)
def get_task(task_id: int, db: Session = Depends(get_db)):
    return crud.require_task(db, task_id)


@app.put("/tasks/{task_id}", response_model=schemas.TaskOut)
def update_task(task_id: int, task_in: schemas.TaskUpdate, db: Session = Depends(get_db)):
    db_task = crud.require_task(db, task_id)
    return crud.update_task(db, db_task, task_in)


@app.patch("/tasks/{task_id}/status", response_model=schemas.TaskOut)
def update_task_status(task_id: int, status_in: schemas.TaskStatusUpdate, db: Session = Depends(get_db)):
    db_task = crud.require_task(db, task_id)
    return crud.update_task_status(db, db_task, status_in.status)


@app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: int, db: Session = Depends(get_db)):
    db_task = crud.require_task(db, task_id)
    crud.delete_task(db, db_task)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------- checklist ----------

@app.get("/tasks/{task_id}/checklist", response_model=List[schemas.ChecklistItemOut])
def list_checklist(task_id: int, db: Session = Depends(get_db)):
    crud.require_task(db, task_id)
    return crud.get_checklist(db, task_id)


@app.post("/tasks/{task_id}/checklist", response_model=schemas.ChecklistItemOut,
          status_code=status.HTTP_201_CREATED)
def add_checklist_item(task_id: int, item_in: schemas.ChecklistItemCreate, db: Session = Depends(get_db)):
    return crud.add_checklist_item(db, task_id, item_in)


@app.patch("/checklist/{item_id}", response_model=schemas.ChecklistItemOut)
def toggle_checklist_item(item_id: int, item_in: schemas.ChecklistItemUpdate, db: Session = Depends(get_db)):
    item = crud.require_checklist_item(db, item_id)
    return crud.set_checklist_item_done(db, item, item_in.done)


@app.delete("/checklist/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_checklist_item(item_id: int, db: Session = Depends(get_db)):
    crud.delete_checklist_item(db, crud.require_checklist_item(db, item_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------- comments ----------

@app.get("/tasks/{task_id}/comments", response_model=List[schemas.CommentOut])
def list_comments(task_id: int, db: Session = Depends(get_db)):
    crud.require_task(db, task_id)
    return crud.get_comments(db, task_id)


@app.post("/tasks/{task_id}/comments", response_model=schemas.CommentOut, status_code=status.HTTP_201_CREATED)
def add_comment(task_id: int, comment_in: schemas.CommentCreate, db: Session = Depends(get_db)):
    return crud.create_comment(db, task_id, comment_in)


@app.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_comment(comment_id: int, db: Session = Depends(get_db)):
    crud.delete_comment(db, crud.require_comment(db, comment_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.websocket("/tasks/{task_id}/events")
async def task_events(websocket: WebSocket, task_id: int):
    """Push a small change notice whenever comments, checklist or time entries of a task change."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def enqueue(event):
        loop.call_soon_threadsafe(queue.put_nowait, event)

    # Subscribe before accepting so no change slips in between.
    unsubscribers = [
        feed.subscribe(table, enqueue, {"task_id": task_id})
        for table in ("comments", "checklist_items", "time_entries")
    ]
    await websocket.accept()

    async def pump():
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    sender = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Event stream for task %s closed", task_id)
    finally:
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await sender
        for unsubscribe in unsubscribers:
            unsubscribe()


# ---------- time tracking ----------

@app.post("/tasks/{task_id}/timer/start", response_model=schemas.TimeEntryOut, status_code=status.HTTP_201_CREATED)
def start_timer(task_id: int, timer_in: schemas.TimerStart, tracker: TimeTracker = Depends(get_tracker)):
    return tracker.start_timer(task_id, timer_in.user_id)


@app.post("/time-entries/{entry_id}/stop", response_model=schemas.TimeEntryOut)
def stop_timer(entry_id: int, tracker: TimeTracker = Depends(get_tracker)):
    return tracker.stop_timer(entry_id)


@app.get("/tasks/{task_id}/timer/active", response_model=Optional[schemas.ActiveTimerOut])
def active_timer(task_id: int, user_id: int, tracker: TimeTracker = Depends(get_tracker)):
    active = tracker.resume_active_timer(task_id, user_id)
    if active is None:
        return None
    return schemas.ActiveTimerOut(
        entry=schemas.TimeEntryOut.model_validate(active.entry),
        elapsed_seconds=active.elapsed_seconds,
        elapsed_display=active.elapsed_display,
    )


@app.get("/tasks/{task_id}/time-entries", response_model=List[schemas.TimeEntryOut])
def list_time_entries(task_id: int, db: Session = Depends(get_db)):
    crud.require_task(db, task_id)
    return crud.get_time_entries(db, task_id)


@app.post("/tasks/{task_id}/time-entries", response_model=schemas.TimeEntryOut, status_code=status.HTTP_201_CREATED)
def add_manual_time_entry(task_id: int, entry_in: schemas.ManualTimeEntryCreate, db: Session = Depends(get_db)):
    return crud.create_manual_entry(db, task_id, entry_in)


@app.delete("/time-entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_time_entry(entry_id: int, db: Session = Depends(get_db)):
    crud.delete_time_entry(db, crud.require_time_entry(db, entry_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------- reports ----------

def _report_entries(
    db: Session,
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    preset: Optional[str],
    user_id: Optional[int],
    task_id: Optional[int],
) -> List[reports.ReportEntry]:
    if date_from is None and date_to is None:
        date_from, date_to = reports.date_range_for_preset(preset or "week", utcnow(), settings.DISPLAY_TIMEZONE)
    elif preset is not None:
        raise ValidationError("Usa un período o un rango de fechas, no ambos", action="generar el informe")
    # With a single bound the other side of the range stays open.
    date_from, date_to = as_naive_utc(date_from), as_naive_utc(date_to)
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ValidationError("La fecha inicial debe ser anterior a la final", action="generar el informe")
    return crud.get_report_entries(
        db, date_from, date_to, user_id=user_id, task_id=task_id
    )


@app.get("/reports/summary", response_model=schemas.ReportSummary)
def report_summary(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    preset: Optional[str] = Query(None, pattern="^(week|last-week|month|last-month)$"),
    user_id: Optional[int] = None,
    task_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    entries = _report_entries(db, date_from, date_to, preset, user_id, task_id)
    return reports.build_summary(entries, settings.DISPLAY_TIMEZONE)


@app.get("/reports/export.csv")
def export_report(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    preset: Optional[str] = Query(None, pattern="^(week|last-week|month|last-month)$"),
    user_id: Optional[int] = None,
    task_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    entries = _report_entries(db, date_from, date_to, preset, user_id, task_id)
    filename = reports.export_filename(reports.to_local(utcnow(), settings.DISPLAY_TIMEZONE).date())
    return Response(
        content=reports.to_csv(entries, settings.DISPLAY_TIMEZONE),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/dashboard", response_model=schemas.DashboardStats)
def dashboard(user_id: int, db: Session = Depends(get_db)):
    crud.require_profile(db, user_id)
    return crud.get_dashboard_stats(db, user_id, tz=settings.DISPLAY_TIMEZONE)
