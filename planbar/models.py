from __future__ import annotations

from datetime import datetime, date, timezone
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Organization(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: Optional[int] = Field(default=None, index=True)
    email: str = Field(index=True, unique=True)
    name: str = ""
    password_hash: str = ""
    role: str = "member"  # admin|koordinator|member

    # Base contract; overridden by TeamMember rows when present
    weekly_hours: float = 42.0
    workload_percent: int = 100  # 0..100

    # Primary team (legacy single-team assignment)
    team_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Team(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: Optional[int] = Field(default=None, index=True)
    name: str
    color: str = "#3b82f6"


class TeamMember(SQLModel, table=True):
    """Membership of a user in a team with its own weekly hours / workload."""
    __table_args__ = (UniqueConstraint("user_id", "team_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: int = Field(index=True)
    user_id: int = Field(index=True)
    weekly_hours: float = 42.0
    workload_percent: int = 100


class Ticket(SQLModel, table=True):
    """A project/ticket. Work is planned through its SubTasks."""
    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: Optional[int] = Field(default=None, index=True)
    title: str
    description: str = ""
    status: str = "open"  # open|in_progress|done|closed
    priority: str = "medium"  # low|medium|high|critical
    created_by_id: int = Field(index=True)
    assigned_to_id: Optional[int] = Field(default=None, index=True)
    team_id: Optional[int] = Field(default=None, index=True)
    due_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SubTask(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_id: int = Field(index=True)
    title: str
    completed: bool = False
    estimated_hours: Optional[float] = None
    due_date: Optional[date] = None
    assignee_id: Optional[int] = Field(default=None, index=True)
    position: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Absence(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    title: str
    type: str = "vacation"  # vacation|workshop|sick|other
    start_date: date
    end_date: date
    description: Optional[str] = None
    color: str = "#22c55e"
