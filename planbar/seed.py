from __future__ import annotations

from datetime import date, timedelta

from sqlmodel import select

from .db import init_db, get_session
from .models import Organization, User, Team, TeamMember, Ticket, SubTask, Absence
from .security import hash_password

DEMO_PASSWORD = "planbar123"


def run_seed():
    init_db()
    with get_session() as session:
        # If we already have an organization, skip to avoid clobbering local data.
        if session.exec(select(Organization)).first():
            print("Seed skipped: organization already exists.")
            return

        org = Organization(name="Demo GmbH")
        session.add(org); session.commit(); session.refresh(org)

        # Teams
        dev = Team(organization_id=org.id, name="Entwicklung", color="#3b82f6")
        ops = Team(organization_id=org.id, name="Betrieb", color="#f97316")
        session.add_all([dev, ops]); session.commit()
        session.refresh(dev); session.refresh(ops)

        # Users (demo)
        pw = hash_password(DEMO_PASSWORD)
        anna = User(organization_id=org.id, email="anna@example.com", name="Anna", role="admin", password_hash=pw, team_id=dev.id)
        ben = User(organization_id=org.id, email="ben@example.com", name="Ben", role="koordinator", password_hash=pw, team_id=dev.id)
        clara = User(organization_id=org.id, email="clara@example.com", name="Clara", role="member", password_hash=pw,
                     weekly_hours=30, workload_percent=80, team_id=dev.id)
        david = User(organization_id=org.id, email="david@example.com", name="David", role="member", password_hash=pw,
                     weekly_hours=40, workload_percent=100, team_id=ops.id)
        session.add_all([anna, ben, clara, david]); session.commit()
        for u in [anna, ben, clara, david]:
            session.refresh(u)

        # Memberships: Ben splits his week between both teams
        session.add_all([
            TeamMember(team_id=dev.id, user_id=ben.id, weekly_hours=20, workload_percent=100),
            TeamMember(team_id=ops.id, user_id=ben.id, weekly_hours=20, workload_percent=50),
            TeamMember(team_id=dev.id, user_id=clara.id, weekly_hours=30, workload_percent=80),
        ])
        session.commit()

        today = date.today()

        # Tickets + subtasks
        portal = Ticket(organization_id=org.id, title="Kundenportal Relaunch", status="in_progress", priority="high",
                        created_by_id=anna.id, assigned_to_id=ben.id, team_id=dev.id, due_date=today + timedelta(days=30))
        backup = Ticket(organization_id=org.id, title="Backup-Konzept", status="open", priority="medium",
                        created_by_id=ben.id, assigned_to_id=david.id, team_id=ops.id, due_date=today + timedelta(days=10))
        session.add_all([portal, backup]); session.commit()
        session.refresh(portal); session.refresh(backup)

        session.add_all([
            SubTask(ticket_id=portal.id, title="Anforderungen sammeln", estimated_hours=8, due_date=today + timedelta(days=3),
                    assignee_id=ben.id, position=0),
            SubTask(ticket_id=portal.id, title="Design-Entwurf", estimated_hours=16, due_date=today + timedelta(days=9),
                    assignee_id=clara.id, position=1),
            SubTask(ticket_id=portal.id, title="Login umsetzen", estimated_hours=24, due_date=today + timedelta(days=20),
                    assignee_id=clara.id, position=2),
            SubTask(ticket_id=portal.id, title="Alte Inhalte prüfen", estimated_hours=4, due_date=today - timedelta(days=2),
                    assignee_id=ben.id, position=3),
            SubTask(ticket_id=backup.id, title="Ist-Aufnahme", estimated_hours=6, due_date=today + timedelta(days=4),
                    assignee_id=david.id, position=0),
            SubTask(ticket_id=backup.id, title="Restore testen", estimated_hours=12, due_date=today + timedelta(days=10),
                    assignee_id=david.id, position=1),
            SubTask(ticket_id=backup.id, title="Dokumentation", estimated_hours=5, assignee_id=david.id, position=2),
        ])
        session.commit()

        # Absences
        session.add_all([
            Absence(user_id=clara.id, title="Urlaub", type="vacation", start_date=today + timedelta(days=14),
                    end_date=today + timedelta(days=18), color="#22c55e"),
            Absence(user_id=david.id, title="Schulung", type="workshop", start_date=today + timedelta(days=5),
                    end_date=today + timedelta(days=5), color="#3b82f6"),
        ])
        session.commit()

        print("Seed completed.")
        print(f"Organization: {org.name} (id={org.id})")
        print(f"Users: Anna={anna.id}, Ben={ben.id}, Clara={clara.id}, David={david.id}")
        print(f"Login with <name>@example.com / {DEMO_PASSWORD}")


if __name__ == "__main__":
    run_seed()
