"""Time report aggregation.

Everything here is a pure function of its arguments: entries come in already
filtered by date range, user and task (see ``crud.get_report_entries``) and
nothing is read from the database or the clock.
"""

import calendar
import csv
import io
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pytz

from . import schemas
from .errors import ValidationError

DEFAULT_TIMEZONE = "Europe/Madrid"
UNASSIGNED_USER = "Sin asignar"
NO_TASK = "Sin tarea"
CSV_HEADER = ["Fecha", "Usuario", "Tarea", "Horas"]
PRESETS = ("week", "last-week", "month", "last-month")

TzArg = Union[str, pytz.BaseTzInfo, None]


@dataclass(frozen=True)
class ReportEntry:
    start_time: datetime
    duration_minutes: Optional[int] = None
    user_name: Optional[str] = None
    task_title: Optional[str] = None


# ---------- timezone helpers ----------

def resolve_timezone(tz: TzArg = None):
    if tz is None:
        return pytz.timezone(DEFAULT_TIMEZONE)
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def to_local(dt: datetime, tz: TzArg = None) -> datetime:
    """Convert a stored (naive UTC) or aware datetime to the display timezone."""
    zone = resolve_timezone(tz)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt.astimezone(zone)


def _local_midnight_utc(day: date, zone) -> datetime:
    local = zone.localize(datetime.combine(day, time.min))
    return local.astimezone(pytz.utc).replace(tzinfo=None)


def _local_end_of_day_utc(day: date, zone) -> datetime:
    local = zone.localize(datetime.combine(day, time.max))
    return local.astimezone(pytz.utc).replace(tzinfo=None)


def start_of_day(now: datetime, tz: TzArg = None) -> datetime:
    """Naive UTC instant at which the local calendar day of ``now`` began."""
    zone = resolve_timezone(tz)
    return _local_midnight_utc(to_local(now, zone).date(), zone)


def start_of_week(now: datetime, tz: TzArg = None) -> datetime:
    """Naive UTC instant of the local Monday 00:00 of the week containing ``now``."""
    zone = resolve_timezone(tz)
    today = to_local(now, zone).date()
    return _local_midnight_utc(today - timedelta(days=today.weekday()), zone)


def date_range_for_preset(preset: str, now: datetime, tz: TzArg = None) -> Tuple[datetime, datetime]:
    """Return the (from, to) naive UTC bounds of a report period preset.

    Weeks run Monday to Sunday. Both bounds are inclusive.
    """
    zone = resolve_timezone(tz)
    today = to_local(now, zone).date()

    if preset in ("week", "last-week"):
        monday = today - timedelta(days=today.weekday())
        if preset == "last-week":
            monday -= timedelta(days=7)
        first, last = monday, monday + timedelta(days=6)
    elif preset in ("month", "last-month"):
        year, month = today.year, today.month
        if preset == "last-month":
            year, month = (year - 1, 12) if month == 1 else (year, month - 1)
        first = date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
    else:
        raise ValidationError(f"Período desconocido: {preset}", action="calcular el período")

    return _local_midnight_utc(first, zone), _local_end_of_day_utc(last, zone)


# ---------- aggregation ----------

def total_minutes(entries: Iterable[ReportEntry]) -> int:
    return sum(entry.duration_minutes or 0 for entry in entries)


def _group(entries: Iterable[ReportEntry], key, fallback: str) -> Dict[str, int]:
    totals: Dict[str, int] = defaultdict(int)
    for entry in entries:
        totals[key(entry) or fallback] += entry.duration_minutes or 0
    return dict(totals)


def group_by_user(entries: Iterable[ReportEntry]) -> Dict[str, int]:
    return _group(entries, lambda e: e.user_name, UNASSIGNED_USER)


def group_by_task(entries: Iterable[ReportEntry]) -> Dict[str, int]:
    return _group(entries, lambda e: e.task_title, NO_TASK)


def hours_for_chart(minutes: int) -> float:
    """Minutes to hours rounded half-up to one decimal."""
    hours = (Decimal(minutes) / Decimal(60)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return float(hours)


def group_by_day(entries: Iterable[ReportEntry], tz: TzArg = None) -> List[Tuple[str, float]]:
    """Hours per local calendar day, as ``("dd/mm", hours)`` in date order.

    Labels become ``dd/mm/YYYY`` when the days span more than one year.
    """
    zone = resolve_timezone(tz)
    per_day: Dict[date, int] = defaultdict(int)
    for entry in entries:
        per_day[to_local(entry.start_time, zone).date()] += entry.duration_minutes or 0
    label = "%d/%m/%Y" if len({day.year for day in per_day}) > 1 else "%d/%m"
    return [(day.strftime(label), hours_for_chart(per_day[day])) for day in sorted(per_day)]


def average_per_group(total: int, group_count: int) -> int:
    """Whole hours per group; 0 when there are no groups."""
    if group_count <= 0:
        return 0
    return total // group_count // 60


def split_hours_minutes(minutes: int) -> Tuple[int, int]:
    return divmod(minutes, 60)


def build_summary(entries: Sequence[ReportEntry], tz: TzArg = None) -> schemas.ReportSummary:
    total = total_minutes(entries)
    hours, remainder = split_hours_minutes(total)
    by_user = group_by_user(entries)
    by_task = group_by_task(entries)
    return schemas.ReportSummary(
        total_minutes=total,
        total_hours=hours,
        total_minutes_remainder=remainder,
        entry_count=len(entries),
        active_users=len(by_user),
        average_hours_per_user=average_per_group(total, len(by_user)),
        worked_tasks=len(by_task),
        average_hours_per_task=average_per_group(total, len(by_task)),
        by_user=by_user,
        by_task=by_task,
        by_day=[schemas.DayTotal(label=label, hours=h) for label, h in group_by_day(entries, tz)],
    )


# ---------- export ----------

def to_csv(entries: Iterable[ReportEntry], tz: TzArg = None) -> str:
    zone = resolve_timezone(tz)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow([
            to_local(entry.start_time, zone).strftime("%d/%m/%Y %H:%M"),
            entry.user_name or UNASSIGNED_USER,
            entry.task_title or NO_TASK,
            f"{(entry.duration_minutes or 0) / 60:.2f}",
        ])
    return buffer.getvalue()


def export_filename(today: date) -> str:
    return f"informe-tiempo-{today:%Y-%m-%d}.csv"
