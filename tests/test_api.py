"""
Route tests against the in-memory database from conftest.

Every workload figure is requested with ``ref=2026-03-04`` (a Wednesday).
"""

from planbar.security import create_reset_token

REF = "2026-03-04"


# =============================================================================
# Auth
# =============================================================================


class TestLogin:
    """Session login and the login wall."""

    def test_healthz_is_public(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True

    def test_api_requires_login(self, client):
        resp = client.get("/api/resources")
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Nicht autorisiert"}

    def test_page_redirects_to_login(self, client):
        resp = client.get("/ressourcen", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/login?next=")

    def test_wrong_password(self, client, seeded):
        resp = client.post(
            "/login", data={"email": "anna@example.com", "password": "falsch"}, follow_redirects=False
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?err=1"

    def test_login_keeps_local_next(self, client, seeded):
        resp = client.post(
            "/login",
            data={"email": "ANNA@example.com", "password": "geheim123", "next": "/ressourcen"},
            follow_redirects=False,
        )
        assert resp.headers["location"] == "/ressourcen"

    def test_login_rejects_external_next(self, client, seeded):
        resp = client.post(
            "/login",
            data={"email": "anna@example.com", "password": "geheim123", "next": "//evil.example"},
            follow_redirects=False,
        )
        assert resp.headers["location"] == "/"


class TestPasswordReset:
    """Forgot / reset password flow with signed tokens."""

    def test_forgot_password_always_succeeds(self, client, seeded):
        for email in ("anna@example.com", "niemand@example.com"):
            resp = client.post("/api/auth/forgot-password", json={"email": email})
            assert resp.status_code == 200
            assert resp.json()["success"] is True

    def test_short_password_rejected(self, client, seeded):
        token = create_reset_token("anna@example.com")
        resp = client.post("/api/auth/reset-password", json={"token": token, "password": "kurz"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Passwort muss mindestens 6 Zeichen lang sein"

    def test_invalid_token_rejected(self, client, seeded):
        resp = client.post("/api/auth/reset-password", json={"token": "abc", "password": "neuespasswort"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Ungültiger oder abgelaufener Token"

    def test_reset_then_login(self, client, login):
        token = create_reset_token("anna@example.com")
        resp = client.post("/api/auth/reset-password", json={"token": token, "password": "neuespasswort"})
        assert resp.status_code == 200
        login("anna@example.com", "neuespasswort")


# =============================================================================
# Resource planning
# =============================================================================


class TestResources:
    """Free hours until a deadline."""

    def test_sorted_by_free_hours(self, admin_client, seeded):
        resp = admin_client.get(f"/api/resources?ref={REF}")
        assert resp.status_code == 200
        body = resp.json()
        rows = body["resources"]

        assert [r["name"] for r in rows] == ["Anna", "Ben", "Clara"]
        free = [r["freeHours"] for r in rows]
        assert free == sorted(free, reverse=True)
        assert all(f >= 0 for f in free)
        assert body["period"] == {"from": REF, "to": "2026-03-18", "workDays": 10}

    def test_membership_hours_and_overload(self, admin_client, seeded):
        rows = {r["name"]: r for r in admin_client.get(f"/api/resources?ref={REF}").json()["resources"]}
        assert rows["Ben"]["dailyHours"] == 5.0
        assert rows["Ben"]["totalAvailableHours"] == 50.0
        assert rows["Clara"]["assignedHours"] == 108.0
        assert rows["Clara"]["freeHours"] == 0
        assert rows["Clara"]["band"] == "red"

    def test_without_deadline_all_open_subtasks_count(self, admin_client, seeded):
        resp = admin_client.post("/api/subtasks", json={
            "ticketId": seeded["ticket"], "title": "Später", "estimatedHours": 10,
            "dueDate": "2026-04-30", "assigneeId": seeded["clara"],
        })
        assert resp.status_code == 201

        rows = {r["name"]: r for r in admin_client.get(f"/api/resources?ref={REF}").json()["resources"]}
        assert rows["Clara"]["assignedHours"] == 118.0
        assert rows["Clara"]["openSubTasks"] == 3

        rows = {
            r["name"]: r
            for r in admin_client.get(f"/api/resources?ref={REF}&deadline=2026-03-18").json()["resources"]
        }
        assert rows["Clara"]["assignedHours"] == 108.0
        assert rows["Clara"]["openSubTasks"] == 2

    def test_open_tickets(self, admin_client, seeded):
        rows = {r["name"]: r for r in admin_client.get(f"/api/resources?ref={REF}").json()["resources"]}
        assert rows["Ben"]["openTickets"] == 1
        assert rows["Anna"]["openTickets"] == 0

        admin_client.patch(f"/api/tickets/{seeded['ticket']}", json={"status": "done"})
        rows = {r["name"]: r for r in admin_client.get(f"/api/resources?ref={REF}").json()["resources"]}
        assert rows["Ben"]["openTickets"] == 0

    def test_other_organization_not_listed(self, login):
        c = login("olga@example.com")
        rows = c.get(f"/api/resources?ref={REF}").json()["resources"]
        assert [r["name"] for r in rows] == ["Olga"]

    def test_bad_deadline(self, admin_client):
        resp = admin_client.get("/api/resources?deadline=morgen")
        assert resp.status_code == 400


class TestWorkload:
    """Per-user day / week / month load."""

    def test_own_workload(self, member_client, seeded):
        resp = member_client.get(f"/api/workload?ref={REF}")
        assert resp.status_code == 200
        [row] = resp.json()
        assert row["userId"] == seeded["clara"]
        assert row["availableHoursPerWeek"] == 32.0
        assert row["periods"]["day"]["assigned"] == 0
        assert row["periods"]["week"]["band"] == "red"
        assert row["periods"]["month"]["assigned"] == 108.0
        assert len(row["weeks"]) == 6

    def test_member_cannot_view_others(self, member_client, seeded):
        resp = member_client.get(f"/api/workload?userIds={seeded['anna']}&ref={REF}")
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Keine Berechtigung"

    def test_koordinator_can_view_others(self, koordinator_client, seeded):
        resp = koordinator_client.get(f"/api/workload?userIds={seeded['clara']},{seeded['ben']}&ref={REF}")
        assert resp.status_code == 200
        by_id = {r["userId"]: r for r in resp.json()}
        assert set(by_id) == {seeded["clara"], seeded["ben"]}
        assert by_id[seeded["ben"]]["workloadPercent"] == 100
        assert by_id[seeded["ben"]]["availableHoursPerWeek"] == 25.0

    def test_koordinator_limited_to_own_teams(self, koordinator_client, seeded):
        resp = koordinator_client.get(f"/api/workload?userIds={seeded['anna']}&ref={REF}")
        assert resp.status_code == 403
        assert koordinator_client.get(f"/api/tasks?userId={seeded['anna']}").status_code == 403

    def test_day_rows(self, member_client):
        [row] = member_client.get(f"/api/workload?ref={REF}").json()
        assert [d["date"] for d in row["days"]][0] == "2026-03-02"
        assert len(row["days"]) == 7
        assert row["days"][5]["capacity"] == 0

    def test_other_organization_is_invisible(self, admin_client, seeded):
        resp = admin_client.get(f"/api/workload?userIds={seeded['olga']}&ref={REF}")
        assert resp.status_code == 200
        assert resp.json() == []


class TestResourcePage:
    """HTML resource planning page."""

    def test_admin_sees_everyone(self, admin_client):
        resp = admin_client.get(f"/ressourcen?ref={REF}")
        assert resp.status_code == 200
        assert "Ressourcenplanung" in resp.text
        assert "Clara" in resp.text
        assert "Umsetzung" in resp.text

    def test_filter_by_user(self, admin_client, seeded):
        resp = admin_client.get(f"/ressourcen?ref={REF}&user={seeded['ben']}")
        assert resp.status_code == 200
        assert "Umsetzung" not in resp.text

    def test_empty_user_filter(self, member_client):
        resp = member_client.get(f"/ressourcen?ref={REF}&user=")
        assert resp.status_code == 200
        assert "Umsetzung" in resp.text

    def test_week_navigation(self, admin_client, seeded):
        resp = admin_client.get(f"/ressourcen?ref={REF}")
        assert "ref=2026-02-25" in resp.text
        assert "ref=2026-03-11" in resp.text
        assert "Wochenübersicht" in resp.text

        resp = admin_client.get(f"/ressourcen?ref={REF}&user={seeded['ben']}")
        assert f"ref=2026-03-11&amp;user={seeded['ben']}" in resp.text

    def test_koordinator_sees_own_teams_only(self, koordinator_client):
        resp = koordinator_client.get(f"/ressourcen?ref={REF}")
        assert resp.status_code == 200
        assert "Clara" in resp.text
        assert "Anna" not in resp.text

    def test_root_redirects(self, member_client):
        resp = member_client.get("/", follow_redirects=False)
        assert resp.headers["location"] == "/ressourcen"


# =============================================================================
# Tickets / subtasks
# =============================================================================


class TestTickets:
    """Ticket CRUD and filters."""

    def test_create_and_filter(self, admin_client, seeded):
        resp = admin_client.post("/api/tickets", json={"title": "Neues Projekt", "priority": "high"})
        assert resp.status_code == 201
        assert resp.json()["status"] == "open"

        found = admin_client.get("/api/tickets?search=Neues").json()
        assert [t["title"] for t in found] == ["Neues Projekt"]
        assert len(admin_client.get("/api/tickets?priority=high").json()) == 1

    def test_title_required(self, admin_client):
        resp = admin_client.post("/api/tickets", json={"title": " "})
        assert resp.status_code == 400

    def test_invalid_status(self, admin_client, seeded):
        resp = admin_client.patch(f"/api/tickets/{seeded['ticket']}", json={"status": "irgendwas"})
        assert resp.status_code == 400

    def test_detail_includes_subtasks(self, member_client, seeded):
        body = member_client.get(f"/api/tickets/{seeded['ticket']}").json()
        assert [s["title"] for s in body["subTasks"]] == ["Konzept", "Umsetzung"]

    def test_other_organization_gets_404(self, login, seeded):
        c = login("olga@example.com")
        assert c.get(f"/api/tickets/{seeded['ticket']}").status_code == 404

    def test_only_creator_deletes(self, member_client, admin_client, seeded):
        assert member_client.delete(f"/api/tickets/{seeded['ticket']}").status_code == 403
        assert admin_client.delete(f"/api/tickets/{seeded['ticket']}").status_code == 200
        assert admin_client.get(f"/api/subtasks?ticketId={seeded['ticket']}").status_code == 404


class TestSubtasks:
    """Subtask access rules."""

    def test_ticket_id_required(self, admin_client):
        resp = admin_client.get("/api/subtasks")
        assert resp.status_code == 400

    def test_create(self, admin_client, seeded):
        resp = admin_client.post("/api/subtasks", json={
            "ticketId": seeded["ticket"],
            "title": "Review",
            "estimatedHours": "3.5",
            "dueDate": "2026-03-20",
            "assigneeId": seeded["ben"],
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["estimatedHours"] == 3.5
        assert body["dueDate"] == "2026-03-20"
        assert body["completed"] is False

    def test_assignee_can_complete(self, member_client, seeded):
        resp = member_client.patch(f"/api/subtasks/{seeded['big_task']}", json={"completed": True})
        assert resp.status_code == 200
        assert resp.json()["subtask"]["completed"] is True

        row = member_client.get(f"/api/workload?ref={REF}").json()[0]
        assert row["periods"]["month"]["assigned"] == 8.0

    def test_unrelated_member_cannot_update(self, admin_client, member_client, seeded):
        created = admin_client.post("/api/subtasks", json={
            "ticketId": seeded["ticket"], "title": "Fremd", "assigneeId": seeded["anna"],
        }).json()
        resp = member_client.patch(f"/api/subtasks/{created['id']}", json={"title": "Meins"})
        assert resp.status_code == 403

    def test_only_ticket_creator_deletes(self, member_client, admin_client, seeded):
        assert member_client.delete(f"/api/subtasks/{seeded['small_task']}").status_code == 403
        resp = admin_client.delete(f"/api/subtasks/{seeded['small_task']}")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Subtask gelöscht"}

    def test_tasks_for_user(self, koordinator_client, member_client, seeded):
        own = member_client.get("/api/tasks?filter=open").json()
        assert [t["title"] for t in own] == ["Konzept", "Umsetzung"]
        assert own[0]["ticket"]["title"] == "Relaunch"

        assert member_client.get(f"/api/tasks?userId={seeded['ben']}").status_code == 403
        assert koordinator_client.get(f"/api/tasks?userId={seeded['clara']}&filter=done").json() == []


# =============================================================================
# Teams / memberships / users
# =============================================================================


class TestTeams:
    """Team administration."""

    def test_admin_only(self, member_client):
        resp = member_client.post("/api/teams", json={"name": "QA"})
        assert resp.status_code == 403

    def test_name_required(self, admin_client):
        resp = admin_client.post("/api/teams", json={})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Name ist erforderlich"

    def test_default_color(self, admin_client):
        resp = admin_client.post("/api/teams", json={"name": "QA"})
        assert resp.status_code == 201
        assert resp.json()["team"]["color"] == "#3b82f6"

    def test_list_includes_members(self, member_client, seeded):
        teams = {t["name"]: t for t in member_client.get("/api/teams").json()["teams"]}
        assert set(teams) == {"Entwicklung", "Betrieb"}
        [m] = teams["Betrieb"]["members"]
        assert m["userId"] == seeded["ben"]
        assert m["availableHours"] == 5.0

    def test_delete_removes_memberships(self, admin_client, seeded):
        assert admin_client.delete(f"/api/teams/{seeded['ops']}").status_code == 200
        row = admin_client.get(f"/api/workload?userIds={seeded['ben']}&ref={REF}").json()[0]
        assert row["availableHoursPerWeek"] == 20.0


class TestTeamMembers:
    """Per-team weekly hours and workload."""

    def test_duplicate_rejected(self, admin_client, seeded):
        resp = admin_client.post("/api/team-members", json={"userId": seeded["ben"], "teamId": seeded["dev"]})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Benutzer ist bereits Mitglied dieses Teams"

    def test_defaults(self, admin_client, seeded):
        resp = admin_client.post("/api/team-members", json={"userId": seeded["clara"], "teamId": seeded["ops"]})
        assert resp.status_code == 201
        body = resp.json()
        assert body["weeklyHours"] == 42.0
        assert body["workloadPercent"] == 100

    def test_member_cannot_change(self, member_client, seeded):
        resp = member_client.post("/api/team-members", json={"userId": seeded["clara"], "teamId": seeded["ops"]})
        assert resp.status_code == 403

    def test_update_changes_availability(self, koordinator_client, seeded):
        resp = koordinator_client.patch("/api/team-members", json={
            "userId": seeded["ben"], "teamId": seeded["ops"], "workloadPercent": 100,
        })
        assert resp.status_code == 200
        row = koordinator_client.get(f"/api/workload?ref={REF}").json()[0]
        assert row["availableHoursPerWeek"] == 30.0

    def test_delete(self, admin_client, seeded):
        resp = admin_client.delete(f"/api/team-members?userId={seeded['ben']}&teamId={seeded['ops']}")
        assert resp.status_code == 200
        left = admin_client.get(f"/api/team-members?userId={seeded['ben']}").json()
        assert [m["teamId"] for m in left] == [seeded["dev"]]


class TestUsers:
    """User administration."""

    def test_list_is_organization_scoped(self, member_client):
        names = [u["name"] for u in member_client.get("/api/users").json()]
        assert names == ["Anna", "Ben", "Clara"]

    def test_member_cannot_edit_others(self, member_client, seeded):
        resp = member_client.patch(f"/api/users/{seeded['anna']}", json={"name": "X"})
        assert resp.status_code == 403

    def test_member_cannot_change_own_capacity(self, member_client, seeded):
        resp = member_client.patch(f"/api/users/{seeded['clara']}", json={"weeklyHours": 60})
        assert resp.status_code == 403

    def test_admin_updates_capacity(self, admin_client, seeded):
        resp = admin_client.patch(f"/api/users/{seeded['clara']}", json={"weeklyHours": 30, "workloadPercent": 100})
        assert resp.status_code == 200
        assert resp.json()["weeklyHours"] == 30.0

    def test_invalid_role(self, admin_client, seeded):
        resp = admin_client.patch(f"/api/users/{seeded['clara']}", json={"role": "chef"})
        assert resp.status_code == 400


# =============================================================================
# Absences
# =============================================================================


class TestAbsences:
    """Role-based absence visibility."""

    def _seed_absences(self, admin_client, member_client, seeded):
        mine = member_client.post("/api/absences", json={
            "title": "Urlaub", "type": "vacation", "startDate": "2026-03-16", "endDate": "2026-03-20",
        })
        assert mine.status_code == 201
        sick = admin_client.post("/api/absences", json={
            "title": "Krank", "type": "sick", "startDate": "2026-03-02", "endDate": "2026-03-03",
        })
        assert sick.status_code == 201
        return mine.json(), sick.json()

    def test_default_color_per_type(self, admin_client, member_client, seeded):
        mine, sick = self._seed_absences(admin_client, member_client, seeded)
        assert mine["color"] == "#22c55e"
        assert mine["userId"] == seeded["clara"]
        assert sick["color"] == "#ef4444"

    def test_required_fields(self, member_client):
        resp = member_client.post("/api/absences", json={"title": "Urlaub"})
        assert resp.status_code == 400

    def test_visibility_by_role(self, admin_client, koordinator_client, member_client, seeded):
        self._seed_absences(admin_client, member_client, seeded)
        assert len(admin_client.get("/api/absences").json()) == 2
        assert [a["title"] for a in member_client.get("/api/absences").json()] == ["Urlaub"]
        # Koordinator sees the members of own teams only.
        assert [a["title"] for a in koordinator_client.get("/api/absences").json()] == ["Urlaub"]

    def test_date_range_overlap(self, admin_client, member_client, seeded):
        self._seed_absences(admin_client, member_client, seeded)
        rows = admin_client.get("/api/absences?startDate=2026-03-01&endDate=2026-03-10").json()
        assert [a["title"] for a in rows] == ["Krank"]
        rows = admin_client.get("/api/absences?startDate=2026-03-17&endDate=2026-03-18").json()
        assert [a["title"] for a in rows] == ["Urlaub"]

    def test_only_owner_or_admin_deletes(self, admin_client, koordinator_client, member_client, seeded):
        mine, _ = self._seed_absences(admin_client, member_client, seeded)
        assert koordinator_client.delete(f"/api/absences/{mine['id']}").status_code == 403
        assert member_client.delete(f"/api/absences/{mine['id']}").status_code == 200
