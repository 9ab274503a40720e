"""Workload / utilization calculator.

Pure functions over plain value types. Nothing here touches the database;
callers load ``Person`` records (see ``repository``) and pass ``today``
explicitly so every figure can be recomputed deterministically.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

WORKDAYS_PER_WEEK = 5
# Average weeks per month; no calendar-accurate month length is used.
WEEKS_PER_MONTH = 4.33


@dataclass(frozen=True)
class TeamMembership:
    team_id: int
    weekly_hours: float
    workload_percent: float
    team_name: str = ""


@dataclass(frozen=True)
class Task:
    id: int
    title: str
    due_date: Optional[date] = None
    estimated_hours: Optional[float] = None
    completed: bool = False
    assignee_id: Optional[int] = None
    ticket_title: str = ""


@dataclass(frozen=True)
class Person:
    id: int
    name: str
    weekly_hours: float
    workload_percent: float
    email: str = ""
    memberships: Tuple[TeamMembership, ...] = ()
    tasks: Tuple[Task, ...] = ()
    # Assigned tickets still open or in progress
    open_tickets: int = 0


@dataclass(frozen=True)
class Availability:
    weekly_hours: float  # contract hours the figure is based on
    workload_percent: float
    weekly: float
    daily: float
    monthly: float


@dataclass(frozen=True)
class TaskSpread:
    task_id: int
    start: date
    end: date
    hours_per_day: float
    is_overdue: bool


@dataclass(frozen=True)
class PeriodLoad:
    assigned: float
    capacity: float
    percentage: float
    band: str


@dataclass(frozen=True)
class WeekRow:
    week: int
    start: date
    end: date
    assigned: float
    capacity: float
    percentage: float
    band: str


@dataclass(frozen=True)
class DayLoad:
    day: date
    assigned: float
    capacity: float
    percentage: float
    band: str


@dataclass
class PersonWorkload:
    person: Person
    availability: Availability
    day: PeriodLoad
    week: PeriodLoad
    month: PeriodLoad
    weeks: List[WeekRow] = field(default_factory=list)
    days: List[DayLoad] = field(default_factory=list)
    spreads: List[TaskSpread] = field(default_factory=list)

    @property
    def hours_today(self) -> float:
        return self.day.assigned

    @property
    def hours_this_week(self) -> float:
        return self.week.assigned

    @property
    def hours_this_month(self) -> float:
        return self.month.assigned


# -------------------------
# Calendar helpers
# -------------------------

def is_workday(d: date) -> bool:
    return d.weekday() < 5


def week_start(d: date) -> date:
    return d - timedelta(days=d.weekday())


def week_end(d: date) -> date:
    return week_start(d) + timedelta(days=6)


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    if d.month == 12:
        nxt = d.replace(year=d.year + 1, month=1, day=1)
    else:
        nxt = d.replace(month=d.month + 1, day=1)
    return nxt - timedelta(days=1)


def count_workdays(start: date, end: date) -> int:
    """Mon–Fri days in [start, end], both inclusive. 0 if start > end."""
    if start > end:
        return 0
    total = 0
    cur = start
    while cur <= end:
        if is_workday(cur):
            total += 1
        cur += timedelta(days=1)
    return total


def next_workday(today: date) -> date:
    """Day work can start on after ``today``.

    Only the weekend is special-cased: Saturday and Sunday map to Monday.
    Every other day maps to the following calendar day, so Friday yields
    Saturday.
    """
    wd = today.weekday()
    if wd == 6:
        return today + timedelta(days=1)
    if wd == 5:
        return today + timedelta(days=2)
    return today + timedelta(days=1)


# -------------------------
# 1. Availability
# -------------------------

def effective_capacity(person: Person) -> Tuple[float, float]:
    """(weekly_hours, workload_percent) used for availability.

    Team memberships win over the person's base values. With memberships the
    percentage is already applied per team, so the result counts as 100%.
    """
    if person.memberships:
        total = sum(m.weekly_hours * m.workload_percent / 100.0 for m in person.memberships)
        return total, 100.0
    return person.weekly_hours, person.workload_percent


def availability(person: Person) -> Availability:
    hours, pct = effective_capacity(person)
    weekly = hours * pct / 100.0
    return Availability(
        weekly_hours=hours,
        workload_percent=pct,
        weekly=weekly,
        daily=weekly / WORKDAYS_PER_WEEK,
        monthly=weekly * WEEKS_PER_MONTH,
    )


# -------------------------
# 2. Task-hour spreader
# -------------------------

def spread_task(task: Task, today: date) -> Optional[TaskSpread]:
    """Distribute a task's estimated hours over the work days before its due date.

    Returns None when the task contributes nothing (done, no due date or no
    estimate).
    """
    if task.completed or task.due_date is None or not task.estimated_hours:
        return None

    try:
        hours = float(task.estimated_hours)
    except (TypeError, ValueError):
        return None
    start = next_workday(today)

    if task.due_date < today:
        return TaskSpread(task.id, start, start, hours, True)

    end = task.due_date
    if start > end:
        return TaskSpread(task.id, start, start, hours, False)

    work_days = max(1, count_workdays(start, end))
    return TaskSpread(task.id, start, end, hours / work_days, False)


def spread_tasks(tasks: Iterable[Task], today: date) -> List[TaskSpread]:
    out = []
    for t in tasks:
        sp = spread_task(t, today)
        if sp is not None:
            out.append(sp)
    return out


# -------------------------
# 2a. Period aggregator
# -------------------------

def hours_in_range(spreads: Iterable[TaskSpread], start: date, end: date) -> float:
    total = 0.0
    for sp in spreads:
        lo = max(sp.start, start)
        hi = min(sp.end, end)
        if hi < lo:
            continue
        total += sp.hours_per_day * count_workdays(lo, hi)
    return total


def month_weeks(ref: date) -> List[Tuple[int, date, date]]:
    """ISO weeks overlapping the month of ``ref``, clipped to the month."""
    ms = month_start(ref)
    me = month_end(ref)
    out = []
    cur = week_start(ms)
    while cur <= me:
        s = max(cur, ms)
        e = min(cur + timedelta(days=6), me)
        out.append((cur.isocalendar()[1], s, e))
        cur += timedelta(days=7)
    return out


# -------------------------
# 3. Utilization
# -------------------------

def utilization(assigned: float, available: float) -> float:
    if available <= 0:
        return 0.0
    return assigned / available * 100.0


def util_band(pct: float) -> str:
    if pct < 50:
        return "green"
    if pct < 80:
        return "blue"
    if pct <= 100:
        return "orange"
    return "red"


def _load(assigned: float, capacity: float) -> PeriodLoad:
    pct = utilization(assigned, capacity)
    return PeriodLoad(assigned=assigned, capacity=capacity, percentage=pct, band=util_band(pct))


def person_workload(person: Person, today: date) -> PersonWorkload:
    av = availability(person)
    spreads = spread_tasks(person.tasks, today)

    ws, we = week_start(today), week_end(today)
    ms, me = month_start(today), month_end(today)

    weeks = []
    for iso_week, s, e in month_weeks(today):
        assigned = hours_in_range(spreads, s, e)
        cap = av.daily * count_workdays(s, e)
        ld = _load(assigned, cap)
        weeks.append(WeekRow(iso_week, s, e, assigned, cap, ld.percentage, ld.band))

    days = []
    for i in range(7):
        d = ws + timedelta(days=i)
        ld = _load(hours_in_range(spreads, d, d), av.daily if is_workday(d) else 0.0)
        days.append(DayLoad(d, ld.assigned, ld.capacity, ld.percentage, ld.band))

    return PersonWorkload(
        person=person,
        availability=av,
        day=_load(hours_in_range(spreads, today, today), av.daily),
        week=_load(hours_in_range(spreads, ws, we), av.weekly),
        month=_load(hours_in_range(spreads, ms, me), av.monthly),
        weeks=weeks,
        days=days,
        spreads=spreads,
    )


def team_summary(loads: Iterable[float]) -> Dict[str, int]:
    """Head counts for the resource page cards, from utilization percentages."""
    loads = list(loads)
    return {
        "total": len(loads),
        "available": sum(1 for u in loads if u < 80),
        "near_capacity": sum(1 for u in loads if 80 <= u <= 100),
        "overloaded": sum(1 for u in loads if u > 100),
    }


# -------------------------
# Availability until a deadline
# -------------------------

@dataclass(frozen=True)
class DeadlineCapacity:
    person_id: int
    name: str
    email: str
    weekly_hours: float
    workload_percent: float
    daily_hours: float
    work_days: int
    total_available_hours: float
    assigned_hours: float
    free_hours: float
    utilization_percent: int
    open_subtasks: int
    open_tickets: int = 0


def default_deadline(today: date) -> date:
    return today + timedelta(days=14)


def business_days_until(today: date, deadline: date) -> int:
    """Work days from ``today`` up to but excluding ``deadline``, at least 1."""
    return max(1, count_workdays(today, deadline - timedelta(days=1)))


def deadline_capacity(person: Person, today: date, deadline: Optional[date] = None) -> DeadlineCapacity:
    """Free hours until ``deadline``.

    Without a deadline the two-week default only sizes the capacity window;
    every open task counts, whatever its due date.
    """
    window_end = deadline or default_deadline(today)
    av = availability(person)
    work_days = business_days_until(today, window_end)
    total = av.daily * work_days

    open_tasks = [
        t for t in person.tasks
        if not t.completed and (deadline is None or t.due_date is None or t.due_date <= deadline)
    ]
    assigned = sum(t.estimated_hours or 0 for t in open_tasks)
    free = max(0.0, total - assigned)

    return DeadlineCapacity(
        person_id=person.id,
        name=person.name,
        email=person.email,
        weekly_hours=av.weekly_hours,
        workload_percent=av.workload_percent,
        daily_hours=round(av.daily, 1),
        work_days=work_days,
        total_available_hours=round(total, 1),
        assigned_hours=round(assigned, 1),
        free_hours=round(free, 1),
        utilization_percent=int(round(utilization(assigned, total))),
        open_subtasks=len(open_tasks),
        open_tickets=person.open_tickets,
    )


def rank_by_free_hours(people: Iterable[Person], today: date, deadline: Optional[date] = None) -> List[DeadlineCapacity]:
    rows = [deadline_capacity(p, today, deadline) for p in people]
    rows.sort(key=lambda r: r.free_hours, reverse=True)
    return rows
