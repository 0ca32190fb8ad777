import enum
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import case, delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from . import models, reports, schemas
from .database import as_naive_utc, utcnow
from .errors import NotFoundError, StoreError, ValidationError
from .realtime import feed

logger = logging.getLogger(__name__)

WHATSAPP_SEPARATOR = "--- Mensaje de WhatsApp ---"


def commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Store error while trying to %s: %s", action, exc)
        raise StoreError(action=action) from exc


# ---------- profiles ----------

def get_profile(db: Session, profile_id: int) -> Optional[models.Profile]:
    return db.get(models.Profile, profile_id)


def require_profile(db: Session, profile_id: int) -> models.Profile:
    profile = get_profile(db, profile_id)
    if profile is None:
        raise NotFoundError("Usuario no encontrado", action="buscar usuario")
    return profile


def get_active_profiles(db: Session) -> List[models.Profile]:
    return (
        db.query(models.Profile)
        .filter(models.Profile.active == True)
        .order_by(models.Profile.full_name)
        .all()
    )


def create_profile(db: Session, profile_in: schemas.ProfileCreate) -> models.Profile:
    profile = models.Profile(**profile_in.model_dump(mode="json"))
    db.add(profile)
    commit(db, "crear el usuario")
    db.refresh(profile)
    return profile


# ---------- tasks ----------

def _task_query(db: Session):
    return db.query(models.Task).options(
        joinedload(models.Task.responsible), joinedload(models.Task.creator)
    )


def get_task(db: Session, task_id: int) -> Optional[models.Task]:
    return _task_query(db).filter(models.Task.id == task_id).first()


def require_task(db: Session, task_id: int) -> models.Task:
    task = get_task(db, task_id)
    if task is None:
        raise NotFoundError("Tarea no encontrada", action="buscar la tarea")
    return task


def get_tasks(db: Session, skip: int = 0, limit: int = 50) -> List[models.Task]:
    return (
        _task_query(db)
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_tasks_by_status(db: Session, status: str) -> List[models.Task]:
    return (
        _task_query(db)
        .filter(models.Task.status == status)
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
        .all()
    )


def get_board(db: Session) -> Dict[str, List[models.Task]]:
    board: Dict[str, List[models.Task]] = {status.value: [] for status in models.TaskStatus}
    tasks = _task_query(db).order_by(models.Task.created_at.desc(), models.Task.id.desc()).all()
    for task in tasks:
        board.setdefault(task.status, []).append(task)
    return board


def create_task(db: Session, task_in: schemas.TaskCreate) -> models.Task:
    require_profile(db, task_in.creator_id)
    if task_in.responsible_id is not None:
        require_profile(db, task_in.responsible_id)

    data = task_in.model_dump(mode="json", exclude={"whatsapp_message"})
    data["due_date"] = as_naive_utc(task_in.due_date)
    if task_in.whatsapp_message:
        data["description"] = f"{task_in.description or ''}\n\n{WHATSAPP_SEPARATOR}\n{task_in.whatsapp_message}"
        data["origin"] = models.TaskOrigin.WHATSAPP_MESSAGE.value
    if data["status"] == models.TaskStatus.COMPLETED.value:
        data["completed_at"] = utcnow()

    task = models.Task(**data)
    db.add(task)
    commit(db, "crear la tarea")
    db.refresh(task)
    feed.publish("tasks", "INSERT", task.id)
    return task


def create_poll_tasks(db: Session, poll_in: schemas.PollTaskCreate) -> List[models.Task]:
    options = [line.strip() for line in poll_in.poll_options.splitlines() if line.strip()]
    if not options:
        raise ValidationError("Debes agregar al menos una opción", action="crear las tareas")
    require_profile(db, poll_in.creator_id)
    if poll_in.responsible_id is not None:
        require_profile(db, poll_in.responsible_id)

    tasks = [
        models.Task(
            title=option,
            description=f'Tarea creada desde encuesta de WhatsApp: "{poll_in.poll_title}"',
            priority=poll_in.priority.value,
            responsible_id=poll_in.responsible_id,
            creator_id=poll_in.creator_id,
            origin=models.TaskOrigin.WHATSAPP_POLL.value,
            whatsapp_chat_name=poll_in.whatsapp_chat_name,
            whatsapp_phone_number=poll_in.whatsapp_phone_number,
            due_date=as_naive_utc(poll_in.due_date),
        )
        for option in options
    ]
    db.add_all(tasks)
    commit(db, "crear las tareas")
    for task in tasks:
        db.refresh(task)
        feed.publish("tasks", "INSERT", task.id)
    return tasks


def update_task(db: Session, db_task: models.Task, task_in: schemas.TaskUpdate) -> models.Task:
    data = task_in.model_dump(exclude_unset=True)
    if "due_date" in data:
        data["due_date"] = as_naive_utc(data["due_date"])
    if data.get("responsible_id") is not None:
        require_profile(db, data["responsible_id"])
    for field, value in data.items():
        if isinstance(value, enum.Enum):
            value = value.value
        setattr(db_task, field, value)
    commit(db, "actualizar")
    db.refresh(db_task)
    feed.publish("tasks", "UPDATE", db_task.id)
    return db_task


def update_task_status(db: Session, db_task: models.Task, status: models.TaskStatus) -> models.Task:
    status = models.TaskStatus(status)
    if status == models.TaskStatus.COMPLETED:
        if db_task.status != models.TaskStatus.COMPLETED.value:
            db_task.completed_at = utcnow()
    else:
        db_task.completed_at = None
    db_task.status = status.value
    commit(db, "actualizar estado")
    db.refresh(db_task)
    feed.publish("tasks", "UPDATE", db_task.id)
    return db_task


def delete_task(db: Session, db_task: models.Task) -> None:
    task_id = db_task.id
    db.delete(db_task)
    commit(db, "eliminar la tarea")
    feed.publish("tasks", "DELETE", task_id)


def get_overdue_tasks(db: Session, now: Optional[datetime] = None) -> List[models.Task]:
    now = now or utcnow()
    return (
        _task_query(db)
        .filter(models.Task.due_date != None, models.Task.due_date <= now,
                models.Task.status != models.TaskStatus.COMPLETED.value)
        .all()
    )


# ---------- checklist ----------

def get_checklist(db: Session, task_id: int) -> List[models.ChecklistItem]:
    return (
        db.query(models.ChecklistItem)
        .filter(models.ChecklistItem.task_id == task_id)
        .order_by(models.ChecklistItem.position, models.ChecklistItem.id)
        .all()
    )


def add_checklist_item(db: Session, task_id: int, item_in: schemas.ChecklistItemCreate) -> models.ChecklistItem:
    require_task(db, task_id)
    text = item_in.text.strip()
    if not text:
        raise ValidationError("El texto del ítem es obligatorio", action="agregar ítem")

    max_position = (
        db.query(func.max(models.ChecklistItem.position))
        .filter(models.ChecklistItem.task_id == task_id)
        .scalar()
    )
    item = models.ChecklistItem(
        task_id=task_id,
        text=text,
        position=0 if max_position is None else max_position + 1,
    )
    db.add(item)
    commit(db, "agregar ítem")
    db.refresh(item)
    feed.publish("checklist_items", "INSERT", item.id, task_id=task_id)
    return item


def require_checklist_item(db: Session, item_id: int) -> models.ChecklistItem:
    item = db.get(models.ChecklistItem, item_id)
    if item is None:
        raise NotFoundError("Ítem no encontrado", action="buscar el ítem")
    return item


def set_checklist_item_done(db: Session, item: models.ChecklistItem, done: bool) -> models.ChecklistItem:
    item.done = done
    commit(db, "actualizar ítem")
    db.refresh(item)
    feed.publish("checklist_items", "UPDATE", item.id, task_id=item.task_id)
    return item


def delete_checklist_item(db: Session, item: models.ChecklistItem) -> None:
    item_id, task_id = item.id, item.task_id
    db.delete(item)
    commit(db, "eliminar ítem")
    feed.publish("checklist_items", "DELETE", item_id, task_id=task_id)


# ---------- comments ----------

def get_comments(db: Session, task_id: int) -> List[models.Comment]:
    return (
        db.query(models.Comment)
        .options(joinedload(models.Comment.author))
        .filter(models.Comment.task_id == task_id)
        .order_by(models.Comment.created_at.asc(), models.Comment.id.asc())
        .all()
    )


def create_comment(db: Session, task_id: int, comment_in: schemas.CommentCreate) -> models.Comment:
    require_task(db, task_id)
    require_profile(db, comment_in.author_id)
    text = comment_in.text.strip()
    if not text:
        raise ValidationError("El comentario no puede estar vacío", action="agregar comentario")

    comment = models.Comment(task_id=task_id, author_id=comment_in.author_id, text=text)
    db.add(comment)
    commit(db, "agregar comentario")
    db.refresh(comment)
    feed.publish("comments", "INSERT", comment.id, task_id=task_id)
    return comment


def require_comment(db: Session, comment_id: int) -> models.Comment:
    comment = db.get(models.Comment, comment_id)
    if comment is None:
        raise NotFoundError("Comentario no encontrado", action="eliminar comentario")
    return comment


def delete_comment(db: Session, comment: models.Comment) -> None:
    comment_id, task_id = comment.id, comment.task_id
    db.delete(comment)
    commit(db, "eliminar comentario")
    feed.publish("comments", "DELETE", comment_id, task_id=task_id)


# ---------- time entries ----------

def get_time_entries(db: Session, task_id: int) -> List[models.TimeEntry]:
    return (
        db.query(models.TimeEntry)
        .options(joinedload(models.TimeEntry.user))
        .filter(models.TimeEntry.task_id == task_id)
        .order_by(models.TimeEntry.start_time.desc(), models.TimeEntry.id.desc())
        .all()
    )


def add_task_minutes(db: Session, task_id: int, minutes: int) -> None:
    """Adjust ``tasks.total_minutes`` in SQL so concurrent writers never lose an update."""
    total = models.Task.total_minutes + minutes
    db.execute(
        update(models.Task)
        .where(models.Task.id == task_id)
        .values(total_minutes=case((total < 0, 0), else_=total))
        .execution_options(synchronize_session=False)
    )


def get_active_entry(db: Session, task_id: int, user_id: int) -> Optional[models.TimeEntry]:
    return (
        db.query(models.TimeEntry)
        .filter(
            models.TimeEntry.task_id == task_id,
            models.TimeEntry.user_id == user_id,
            models.TimeEntry.end_time == None,
        )
        .first()
    )


def create_manual_entry(db: Session, task_id: int, entry_in: schemas.ManualTimeEntryCreate) -> models.TimeEntry:
    task = require_task(db, task_id)
    require_profile(db, entry_in.user_id)

    start = as_naive_utc(entry_in.start_time)

    entry = models.TimeEntry(
        task_id=task_id,
        user_id=entry_in.user_id,
        start_time=start,
        end_time=start + timedelta(minutes=entry_in.duration_minutes),
        duration_minutes=entry_in.duration_minutes,
        entry_type=models.EntryType.MANUAL.value,
        note=entry_in.note,
    )
    db.add(entry)
    add_task_minutes(db, task.id, entry_in.duration_minutes)
    commit(db, "registrar tiempo")
    db.refresh(entry)
    feed.publish("time_entries", "INSERT", entry.id, task_id=task_id, user_id=entry.user_id)
    return entry


def require_time_entry(db: Session, entry_id: int) -> models.TimeEntry:
    entry = db.get(models.TimeEntry, entry_id)
    if entry is None:
        raise NotFoundError("Registro de tiempo no encontrado", action="buscar el registro")
    return entry


def delete_time_entry(db: Session, entry: models.TimeEntry) -> None:
    entry_id, task_id, user_id = entry.id, entry.task_id, entry.user_id
    minutes = entry.duration_minutes
    deleted = db.execute(
        delete(models.TimeEntry)
        .where(models.TimeEntry.id == entry_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not deleted:
        db.rollback()
        raise NotFoundError("Registro de tiempo no encontrado", action="eliminar el registro")
    if minutes:
        add_task_minutes(db, task_id, -minutes)
    commit(db, "eliminar el registro")
    db.expunge(entry)
    feed.publish("time_entries", "DELETE", entry_id, task_id=task_id, user_id=user_id)


# ---------- reports ----------

def get_report_entries(
    db: Session,
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    user_id: Optional[int] = None,
    task_id: Optional[int] = None,
) -> List[reports.ReportEntry]:
    query = (
        db.query(models.TimeEntry)
        .options(joinedload(models.TimeEntry.user), joinedload(models.TimeEntry.task))
        .filter(models.TimeEntry.duration_minutes != None)
    )
    if date_from is not None:
        query = query.filter(models.TimeEntry.start_time >= date_from)
    if date_to is not None:
        query = query.filter(models.TimeEntry.start_time <= date_to)
    if user_id is not None:
        query = query.filter(models.TimeEntry.user_id == user_id)
    if task_id is not None:
        query = query.filter(models.TimeEntry.task_id == task_id)

    rows = query.order_by(models.TimeEntry.start_time, models.TimeEntry.id).all()
    return [
        reports.ReportEntry(
            start_time=row.start_time,
            duration_minutes=row.duration_minutes,
            user_name=row.user.full_name if row.user else None,
            task_title=row.task.title if row.task else None,
        )
        for row in rows
    ]


def _minutes_since(db: Session, user_id: int, since: datetime) -> int:
    total = (
        db.query(func.sum(models.TimeEntry.duration_minutes))
        .filter(models.TimeEntry.user_id == user_id, models.TimeEntry.start_time >= since)
        .scalar()
    )
    return int(total or 0)


def get_dashboard_stats(db: Session, user_id: int, now: Optional[datetime] = None, tz=None) -> schemas.DashboardStats:
    now = now or utcnow()
    counts = dict(
        db.query(models.Task.status, func.count(models.Task.id)).group_by(models.Task.status).all()
    )
    return schemas.DashboardStats(
        pending=counts.get(models.TaskStatus.PENDING.value, 0),
        in_progress=counts.get(models.TaskStatus.IN_PROGRESS.value, 0),
        blocked=counts.get(models.TaskStatus.BLOCKED.value, 0),
        completed=counts.get(models.TaskStatus.COMPLETED.value, 0),
        due_today_or_past=len(get_overdue_tasks(db, now)),
        total_minutes_today=_minutes_since(db, user_id, reports.start_of_day(now, tz)),
        total_minutes_week=_minutes_since(db, user_id, reports.start_of_week(now, tz)),
    )
