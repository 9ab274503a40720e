"""Read-only loaders that turn ORM rows into ``workload`` value types."""
from __future__ import annotations

from datetime import date
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, select

from .models import SubTask, Team, TeamMember, Ticket, User
from .workload import Person, Task, TeamMembership


def _memberships_by_user(session: Session, user_ids: List[int]) -> Dict[int, List[TeamMembership]]:
    out: Dict[int, List[TeamMembership]] = {}
    if not user_ids:
        return out
    rows = session.exec(select(TeamMember).where(TeamMember.user_id.in_(user_ids))).all()
    teams = {}
    team_ids = list({r.team_id for r in rows})
    if team_ids:
        teams = {t.id: t for t in session.exec(select(Team).where(Team.id.in_(team_ids))).all()}
    for r in rows:
        team = teams.get(r.team_id)
        out.setdefault(r.user_id, []).append(
            TeamMembership(
                team_id=r.team_id,
                weekly_hours=float(r.weekly_hours or 0),
                workload_percent=float(r.workload_percent or 0),
                team_name=team.name if team else "",
            )
        )
    return out


def _open_tasks_by_user(session: Session, user_ids: List[int]) -> Dict[int, List[Task]]:
    out: Dict[int, List[Task]] = {}
    if not user_ids:
        return out
    rows = session.exec(
        select(SubTask, Ticket)
        .join(Ticket, Ticket.id == SubTask.ticket_id)
        .where(SubTask.assignee_id.in_(user_ids), SubTask.completed == False)  # noqa: E712
    ).all()
    for st, ticket in rows:
        out.setdefault(st.assignee_id, []).append(
            Task(
                id=st.id,
                title=st.title,
                due_date=st.due_date,
                estimated_hours=st.estimated_hours,
                completed=st.completed,
                assignee_id=st.assignee_id,
                ticket_title=ticket.title,
            )
        )
    for tasks in out.values():
        # Undated tasks last
        tasks.sort(key=lambda t: (t.due_date is None, t.due_date or date.min, t.id))
    return out


OPEN_TICKET_STATUSES = ("open", "in_progress")


def _open_ticket_counts(session: Session, user_ids: List[int]) -> Dict[int, int]:
    out: Dict[int, int] = {}
    if not user_ids:
        return out
    rows = session.exec(
        select(Ticket).where(Ticket.assigned_to_id.in_(user_ids), Ticket.status.in_(OPEN_TICKET_STATUSES))
    ).all()
    for t in rows:
        out[t.assigned_to_id] = out.get(t.assigned_to_id, 0) + 1
    return out


def load_people(
    session: Session,
    organization_id: Optional[int],
    user_ids: Optional[Iterable[int]] = None,
) -> List[Person]:
    """People of an organization with their memberships, open subtasks and open ticket count."""
    q = select(User).where(User.organization_id == organization_id)
    if user_ids is not None:
        ids = [int(i) for i in user_ids]
        if not ids:
            return []
        q = q.where(User.id.in_(ids))
    users = sorted(session.exec(q).all(), key=lambda u: (u.name or u.email or "").lower())

    ids = [u.id for u in users]
    memberships = _memberships_by_user(session, ids)
    tasks = _open_tasks_by_user(session, ids)
    tickets = _open_ticket_counts(session, ids)

    return [
        Person(
            id=u.id,
            name=u.name or u.email,
            email=u.email,
            weekly_hours=float(u.weekly_hours or 0),
            workload_percent=float(u.workload_percent or 0),
            memberships=tuple(memberships.get(u.id, [])),
            tasks=tuple(tasks.get(u.id, [])),
            open_tickets=tickets.get(u.id, 0),
        )
        for u in users
    ]
