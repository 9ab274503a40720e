from __future__ import annotations

from datetime import datetime, date, timedelta
import logging
import os
import uuid
from pathlib import Path
from typing import Optional, List, Dict, Any
from urllib.parse import quote

from fastapi import FastAPI, Request, Form, HTTPException
from fastapi.exception_handlers import http_exception_handler as fastapi_http_exception_handler
from fastapi.responses import HTMLResponse, RedirectResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from sqlmodel import select, or_, and_

from .db import init_db, get_session
from .models import Organization, User, Team, TeamMember, Ticket, SubTask, Absence, utcnow
from .repository import load_people
from .security import hash_password, verify_password, create_reset_token, read_reset_token
from . import workload as wl

APP_NAME = "planbar"
APP_VERSION = "1.0.0"

BASE_DIR = Path(__file__).resolve().parent

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=APP_NAME)
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
templates.env.globals["app_name"] = APP_NAME
templates.env.globals["app_version"] = APP_VERSION

ROLES = ("admin", "koordinator", "member")
TICKET_STATUSES = ("open", "in_progress", "done", "closed")
TICKET_PRIORITIES = ("low", "medium", "high", "critical")
ABSENCE_TYPES = ("vacation", "workshop", "sick", "other")
ABSENCE_COLORS = {
    "vacation": "#22c55e",
    "workshop": "#3b82f6",
    "sick": "#ef4444",
    "other": "#a855f7",
}
BAND_LABELS = {
    "green": "Verfügbar",
    "blue": "Gut ausgelastet",
    "orange": "Fast voll",
    "red": "Überlastet",
}


# Jinja filters
def _dm(val):
    try:
        return val.strftime("%d.%m.")
    except Exception:
        return str(val)


def _hours(val) -> str:
    try:
        return f"{float(val):.1f}".replace(".", ",")
    except (TypeError, ValueError):
        return "0,0"


templates.env.filters["dm"] = _dm
templates.env.filters["hours"] = _hours
templates.env.filters["urlencode"] = lambda v: quote(str(v))


# -------------------------
# Parsing helpers
# -------------------------

def _parse_date(val: Any, field: str = "Datum") -> Optional[date]:
    """ISO date (a full ISO datetime is cut to its date part). Empty → None."""
    if val is None or val == "":
        return None
    try:
        return date.fromisoformat(str(val)[:10])
    except ValueError:
        raise HTTPException(400, f"Ungültiges {field}: {val}")


def _parse_float(val: Any, field: str) -> Optional[float]:
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        raise HTTPException(400, f"{field} muss eine Zahl sein")


def _parse_int(val: Any, field: str) -> Optional[int]:
    if val is None or val == "":
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        raise HTTPException(400, f"{field} muss eine Ganzzahl sein")


def _parse_ref(ref: Optional[str]) -> date:
    if ref:
        return _parse_date(ref, "Referenzdatum")
    return datetime.now().date()


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(400, "Ungültiger JSON-Body")
    if not isinstance(data, dict):
        raise HTTPException(400, "Ungültiger JSON-Body")
    return data


# -------------------------
# Error handling
# -------------------------

@app.exception_handler(HTTPException)
async def _handle_http_exception(request: Request, exc: HTTPException):
    # For API routes, keep JSON errors.
    if request.url.path.startswith("/api/"):
        return await fastapi_http_exception_handler(request, exc)

    if exc.status_code == 401:
        request.session.pop("uid", None)
        next_url = request.url.path
        if request.url.query:
            next_url = next_url + "?" + request.url.query
        return RedirectResponse(f"/login?next={quote(next_url)}", status_code=302)

    return await fastapi_http_exception_handler(request, exc)


@app.exception_handler(Exception)
async def _handle_unexpected_exception(request: Request, exc: Exception):
    """Render a readable error page instead of a blank 500."""
    req_id = str(uuid.uuid4())[:8]
    logger.error("Unhandled error on %s %s (ref %s)", request.method, request.url.path, req_id, exc_info=exc)

    if request.url.path.startswith("/api/"):
        return PlainTextResponse(f"Interner Serverfehler (ref {req_id})", status_code=500)

    html = f"""
    <html><head><meta charset='utf-8'><title>Interner Fehler</title>
    <link rel='stylesheet' href='/static/css/app.css'/></head>
    <body>
      <div class='container narrow'>
        <h1>Interner Serverfehler</h1>
        <p class='muted'>Etwas ist schiefgelaufen. Referenz: <strong>{req_id}</strong></p>
        <p><a class='btn primary' href='/ressourcen'>Zur Ressourcenplanung</a></p>
      </div>
    </body></html>
    """
    return HTMLResponse(html, status_code=500)


# -------------------------
# Auth / permission helpers
# -------------------------

def _get_active_user(session, request: Request) -> User:
    try:
        uid = request.session.get("uid")
    except AssertionError:
        # SessionMiddleware missing: treat as not logged in.
        uid = None
    if not uid:
        raise HTTPException(401, "Nicht autorisiert")

    u = session.get(User, int(uid))
    if not u:
        request.session.pop("uid", None)
        raise HTTPException(401, "Nicht autorisiert")
    return u


def _role(user: Optional[User]) -> str:
    return ((user.role if user else "") or "").strip().lower()


def _is_admin(user: Optional[User]) -> bool:
    return _role(user) in ("admin", "administrator")


def _is_koordinator(user: Optional[User]) -> bool:
    return _role(user) == "koordinator"


def _can_view_others(user: Optional[User]) -> bool:
    return _is_admin(user) or _is_koordinator(user)


def _require_admin(user: Optional[User]) -> None:
    if not _is_admin(user):
        raise HTTPException(403, "Nur Administratoren dürfen diese Aktion ausführen")


def _require_planner(user: Optional[User]) -> None:
    if not _can_view_others(user):
        raise HTTPException(403, "Keine Berechtigung")


def _team_ids_of(session, user: User) -> List[int]:
    ids: List[int] = []
    if user.team_id:
        ids.append(user.team_id)
    for tm in session.exec(select(TeamMember).where(TeamMember.user_id == user.id)).all():
        if tm.team_id not in ids:
            ids.append(tm.team_id)
    return ids


def _team_member_ids(session, team_ids: List[int]) -> List[int]:
    if not team_ids:
        return []
    ids = {u.id for u in session.exec(select(User).where(User.team_id.in_(team_ids))).all()}
    ids.update(tm.user_id for tm in session.exec(select(TeamMember).where(TeamMember.team_id.in_(team_ids))).all())
    return sorted(ids)


def _visible_user_ids(session, active: User, requested: Optional[int]) -> Optional[List[int]]:
    """User ids whose workload, tasks and absences ``active`` may see.

    Admins see the whole organization (None), koordinators the members of
    their own teams, everyone else only themselves.
    """
    if _is_admin(active):
        return [requested] if requested else None
    if _is_koordinator(active):
        member_ids = _team_member_ids(session, _team_ids_of(session, active))
        if active.id not in member_ids:
            member_ids.append(active.id)
        if requested and requested in member_ids:
            return [requested]
        return member_ids
    return [active.id]


def _org_user(session, org_id: Optional[int], user_id: Any) -> User:
    uid = _parse_int(user_id, "userId")
    u = session.get(User, uid) if uid is not None else None
    if not u or u.organization_id != org_id:
        raise HTTPException(404, "Benutzer nicht gefunden")
    return u


def _org_team(session, org_id: Optional[int], team_id: Any) -> Team:
    tid = _parse_int(team_id, "teamId")
    t = session.get(Team, tid) if tid is not None else None
    if not t or t.organization_id != org_id:
        raise HTTPException(404, "Team nicht gefunden")
    return t


def _org_ticket(session, org_id: Optional[int], ticket_id: Any) -> Ticket:
    tid = _parse_int(ticket_id, "ticketId")
    t = session.get(Ticket, tid) if tid is not None else None
    if not t or t.organization_id != org_id:
        raise HTTPException(404, "Projekt nicht gefunden")
    return t


# -------------------------
# Serializers
# -------------------------

def _iso(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _ser_user(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role,
        "weeklyHours": u.weekly_hours,
        "workloadPercent": u.workload_percent,
        "teamId": u.team_id,
    }


def _ser_team(t: Team, members: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    out = {"id": t.id, "name": t.name, "color": t.color}
    if members is not None:
        out["members"] = members
    return out


def _ser_membership(m: TeamMember, user: Optional[User] = None, team: Optional[Team] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": m.id,
        "userId": m.user_id,
        "teamId": m.team_id,
        "weeklyHours": m.weekly_hours,
        "workloadPercent": m.workload_percent,
        "availableHours": round(m.weekly_hours * m.workload_percent / 100.0, 1),
    }
    if user is not None:
        out["user"] = {"id": user.id, "name": user.name, "email": user.email}
    if team is not None:
        out["team"] = _ser_team(team)
    return out


def _ser_ticket(t: Ticket) -> Dict[str, Any]:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "createdById": t.created_by_id,
        "assignedToId": t.assigned_to_id,
        "teamId": t.team_id,
        "dueDate": _iso(t.due_date),
        "createdAt": t.created_at.isoformat() if t.created_at else None,
        "updatedAt": t.updated_at.isoformat() if t.updated_at else None,
    }


def _ser_subtask(st: SubTask, ticket: Optional[Ticket] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": st.id,
        "ticketId": st.ticket_id,
        "title": st.title,
        "completed": st.completed,
        "estimatedHours": st.estimated_hours,
        "dueDate": _iso(st.due_date),
        "assigneeId": st.assignee_id,
        "position": st.position,
    }
    if ticket is not None:
        out["ticket"] = {"id": ticket.id, "title": ticket.title, "status": ticket.status}
    return out


def _ser_absence(a: Absence, user: Optional[User] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": a.id,
        "userId": a.user_id,
        "title": a.title,
        "type": a.type,
        "startDate": _iso(a.start_date),
        "endDate": _iso(a.end_date),
        "description": a.description,
        "color": a.color,
    }
    if user is not None:
        out["user"] = {"id": user.id, "name": user.name, "email": user.email}
    return out


def _ser_load(ld: wl.PeriodLoad) -> Dict[str, Any]:
    return {
        "assigned": round(ld.assigned, 1),
        "capacity": round(ld.capacity, 1),
        "percentage": int(round(ld.percentage)),
        "band": ld.band,
    }


def _ser_workload(pw: wl.PersonWorkload) -> Dict[str, Any]:
    p = pw.person
    return {
        "userId": p.id,
        "userName": p.name,
        "userEmail": p.email,
        "weeklyHours": pw.availability.weekly_hours,
        "workloadPercent": pw.availability.workload_percent,
        "availableHoursPerWeek": round(pw.availability.weekly, 1),
        "periods": {
            "day": _ser_load(pw.day),
            "week": _ser_load(pw.week),
            "month": _ser_load(pw.month),
        },
        "weeks": [
            {
                "week": w.week,
                "start": w.start.isoformat(),
                "end": w.end.isoformat(),
                "assigned": round(w.assigned, 1),
                "capacity": round(w.capacity, 1),
                "percentage": int(round(w.percentage)),
                "band": w.band,
            }
            for w in pw.weeks
        ],
        "days": [
            {
                "date": d.day.isoformat(),
                "assigned": round(d.assigned, 1),
                "capacity": round(d.capacity, 1),
                "percentage": int(round(d.percentage)),
                "band": d.band,
            }
            for d in pw.days
        ],
    }


# -------------------------
# Startup
# -------------------------

@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("%s %s started", APP_NAME, APP_VERSION)


@app.get("/healthz")
def healthz():
    return {"ok": True, "name": APP_NAME, "version": APP_VERSION}


@app.middleware("http")
async def require_login(request: Request, call_next):
    path = request.url.path or "/"

    # Public paths
    if (
        path.startswith("/static")
        or path.startswith("/login")
        or path.startswith("/logout")
        or path.startswith("/healthz")
        or path.startswith("/api/auth/")
        or path == "/favicon.ico"
    ):
        return await call_next(request)

    try:
        uid = request.session.get("uid")
    except AssertionError:
        uid = None

    if not uid:
        if path.startswith("/api/"):
            return JSONResponse({"detail": "Nicht autorisiert"}, status_code=401)
        nxt = str(request.url.path)
        if request.url.query:
            nxt += "?" + request.url.query
        return RedirectResponse(f"/login?next={quote(nxt)}", status_code=302)

    return await call_next(request)


# Signed cookie sessions. Must wrap the middleware above, which reads request.session.
app.add_middleware(
    SessionMiddleware,
    secret_key=os.environ.get("SECRET_KEY", "dev-secret-change-me"),
    same_site="lax",
)


# -------------------------
# Login / Logout
# -------------------------

@app.get("/login", response_class=HTMLResponse)
def login_get(request: Request):
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "next": request.query_params.get("next", "") or "",
            "err": request.query_params.get("err", "") or "",
            "active_user": None,
        },
    )


@app.post("/login")
def login_post(request: Request, email: str = Form(...), password: str = Form(...), next: str = Form("")):
    email = (email or "").strip().lower()
    with get_session() as session:
        u = session.exec(select(User).where(User.email == email)).first()
        if not u or not verify_password(password, u.password_hash):
            logger.info("Failed login for %s", email)
            dest = "/login?err=1"
            if next:
                dest += f"&next={quote(next)}"
            return RedirectResponse(dest, status_code=302)
        request.session["uid"] = u.id
        logger.info("User %s logged in", u.id)

    # Only allow local redirects after login
    if not next or not next.startswith("/") or next.startswith("//"):
        next = "/"
    return RedirectResponse(next, status_code=302)


@app.get("/logout")
def logout(request: Request):
    request.session.clear()
    return RedirectResponse("/login", status_code=302)


@app.post("/api/auth/forgot-password")
async def api_forgot_password(request: Request):
    data = await _json_body(request)
    email = str(data.get("email") or "").strip().lower()
    if not email:
        raise HTTPException(400, "E-Mail ist erforderlich")

    with get_session() as session:
        u = session.exec(select(User).where(User.email == email)).first()
        if u:
            token = create_reset_token(email)
            # No mail delivery in this app; operators pick the link up from the log.
            logger.info("Password reset requested for user %s: /auth/reset-password?token=%s", u.id, token)

    # Always answer success so the endpoint does not reveal which e-mails exist.
    return {
        "success": True,
        "message": "Wenn diese E-Mail existiert, wurde ein Link zum Zurücksetzen gesendet.",
    }


@app.post("/api/auth/reset-password")
async def api_reset_password(request: Request):
    data = await _json_body(request)
    token = str(data.get("token") or "")
    password = str(data.get("password") or "")
    if not token or not password:
        raise HTTPException(400, "Alle Felder sind erforderlich")
    if len(password) < 6:
        raise HTTPException(400, "Passwort muss mindestens 6 Zeichen lang sein")

    email = read_reset_token(token)
    if not email:
        raise HTTPException(400, "Ungültiger oder abgelaufener Token")

    with get_session() as session:
        u = session.exec(select(User).where(User.email == email)).first()
        if not u:
            raise HTTPException(400, "Ungültiger oder abgelaufener Token")
        u.password_hash = hash_password(password)
        session.add(u)
        session.commit()
        logger.info("Password reset for user %s", u.id)

    return {"success": True, "message": "Passwort erfolgreich zurückgesetzt"}


# -------------------------
# Resource planning page
# -------------------------

@app.get("/", response_class=HTMLResponse)
def index(request: Request):
    return RedirectResponse("/ressourcen", status_code=302)


@app.get("/ressourcen", response_class=HTMLResponse)
def resources_view(request: Request, ref: Optional[str] = None, user: Optional[str] = None):
    """Ressourcenplanung: Auslastung je Person für Tag, Woche und Monat."""
    with get_session() as session:
        active = _get_active_user(session, request)
        today = _parse_ref(ref)

        people_all = load_people(session, active.organization_id, _visible_user_ids(session, active, None))

        selected_user_id = _parse_int(user, "user")
        if selected_user_id is not None:
            people = [p for p in people_all if p.id == selected_user_id]
        else:
            people = people_all

        loads = [wl.person_workload(p, today) for p in people]
        summary = wl.team_summary(pw.week.percentage for pw in loads)

        spreads_by_task: Dict[int, wl.TaskSpread] = {}
        for pw in loads:
            for sp in pw.spreads:
                spreads_by_task[sp.task_id] = sp

        return templates.TemplateResponse(
            request,
            "ressourcen.html",
            {
                "active_user": active,
                "today": today,
                "week_start": wl.week_start(today),
                "week_end": wl.week_end(today),
                "month_start": wl.month_start(today),
                "prev_ref": today - timedelta(days=7),
                "next_ref": today + timedelta(days=7),
                "real_today": datetime.now().date(),
                "people_all": people_all,
                "selected_user_id": selected_user_id,
                "loads": loads,
                "summary": summary,
                "spreads_by_task": spreads_by_task,
                "band_labels": BAND_LABELS,
            },
        )


# -------------------------
# Resource / workload API (JSON)
# -------------------------

@app.get("/api/resources")
def api_resources(request: Request, deadline: Optional[str] = None, ref: Optional[str] = None):
    with get_session() as session:
        active = _get_active_user(session, request)
        today = _parse_ref(ref)
        deadline_given = _parse_date(deadline, "Deadline")
        deadline_d = deadline_given or wl.default_deadline(today)

        people = load_people(session, active.organization_id)
        rows = wl.rank_by_free_hours(people, today, deadline_given)
        work_days = wl.business_days_until(today, deadline_d)

        return {
            "resources": [
                {
                    "id": r.person_id,
                    "name": r.name,
                    "email": r.email,
                    "weeklyHours": r.weekly_hours,
                    "workloadPercent": r.workload_percent,
                    "dailyHours": r.daily_hours,
                    "workDays": r.work_days,
                    "totalAvailableHours": r.total_available_hours,
                    "assignedHours": r.assigned_hours,
                    "freeHours": r.free_hours,
                    "utilizationPercent": r.utilization_percent,
                    "band": wl.util_band(r.utilization_percent),
                    "openSubTasks": r.open_subtasks,
                    "openTickets": r.open_tickets,
                }
                for r in rows
            ],
            "period": {"from": today.isoformat(), "to": deadline_d.isoformat(), "workDays": work_days},
        }


@app.get("/api/workload")
def api_workload(request: Request, userIds: Optional[str] = None, ref: Optional[str] = None):
    with get_session() as session:
        active = _get_active_user(session, request)
        today = _parse_ref(ref)

        if userIds:
            ids = [_parse_int(x.strip(), "userIds") for x in userIds.split(",") if x.strip()]
        else:
            ids = [active.id]

        visible = _visible_user_ids(session, active, None)
        if visible is not None and any(i not in visible for i in ids):
            raise HTTPException(403, "Keine Berechtigung")

        people = load_people(session, active.organization_id, ids)
        return [_ser_workload(wl.person_workload(p, today)) for p in people]


# -------------------------
# Tickets API
# -------------------------

@app.get("/api/tickets")
def api_tickets_list(
    request: Request,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assignedTo: Optional[str] = None,
    search: Optional[str] = None,
):
    with get_session() as session:
        active = _get_active_user(session, request)
        q = select(Ticket).where(Ticket.organization_id == active.organization_id)
        if status and status != "all":
            q = q.where(Ticket.status == status)
        if priority and priority != "all":
            q = q.where(Ticket.priority == priority)
        if assignedTo and assignedTo != "all":
            q = q.where(Ticket.assigned_to_id == _parse_int(assignedTo, "assignedTo"))
        if search:
            like = f"%{search}%"
            q = q.where(or_(Ticket.title.ilike(like), Ticket.description.ilike(like)))
        q = q.order_by(Ticket.created_at.desc(), Ticket.id.desc())
        return [_ser_ticket(t) for t in session.exec(q).all()]


@app.post("/api/tickets", status_code=201)
async def api_ticket_create(request: Request):
    data = await _json_body(request)
    title = str(data.get("title") or "").strip()
    if not title:
        raise HTTPException(400, "Titel ist erforderlich")
    status = data.get("status") or "open"
    priority = data.get("priority") or "medium"
    if status not in TICKET_STATUSES:
        raise HTTPException(400, f"Ungültiger Status: {status}")
    if priority not in TICKET_PRIORITIES:
        raise HTTPException(400, f"Ungültige Priorität: {priority}")

    with get_session() as session:
        active = _get_active_user(session, request)
        org_id = active.organization_id
        assigned_to_id = None
        if data.get("assignedToId"):
            assigned_to_id = _org_user(session, org_id, data["assignedToId"]).id
        team_id = None
        if data.get("teamId"):
            team_id = _org_team(session, org_id, data["teamId"]).id

        t = Ticket(
            organization_id=org_id,
            title=title,
            description=str(data.get("description") or ""),
            status=status,
            priority=priority,
            created_by_id=active.id,
            assigned_to_id=assigned_to_id,
            team_id=team_id,
            due_date=_parse_date(data.get("dueDate"), "Fälligkeitsdatum"),
        )
        session.add(t)
        session.commit()
        session.refresh(t)
        return _ser_ticket(t)


@app.get("/api/tickets/{ticket_id}")
def api_ticket_get(request: Request, ticket_id: int):
    with get_session() as session:
        active = _get_active_user(session, request)
        t = _org_ticket(session, active.organization_id, ticket_id)
        subtasks = session.exec(
            select(SubTask).where(SubTask.ticket_id == t.id).order_by(SubTask.position, SubTask.id)
        ).all()
        out = _ser_ticket(t)
        out["subTasks"] = [_ser_subtask(st) for st in subtasks]
        return out


@app.patch("/api/tickets/{ticket_id}")
async def api_ticket_update(request: Request, ticket_id: int):
    data = await _json_body(request)
    with get_session() as session:
        active = _get_active_user(session, request)
        org_id = active.organization_id
        t = _org_ticket(session, org_id, ticket_id)

        if "title" in data:
            title = str(data["title"] or "").strip()
            if not title:
                raise HTTPException(400, "Titel ist erforderlich")
            t.title = title
        if "description" in data:
            t.description = str(data["description"] or "")
        if "status" in data:
            if data["status"] not in TICKET_STATUSES:
                raise HTTPException(400, f"Ungültiger Status: {data['status']}")
            t.status = data["status"]
        if "priority" in data:
            if data["priority"] not in TICKET_PRIORITIES:
                raise HTTPException(400, f"Ungültige Priorität: {data['priority']}")
            t.priority = data["priority"]
        if "assignedToId" in data:
            t.assigned_to_id = _org_user(session, org_id, data["assignedToId"]).id if data["assignedToId"] else None
        if "teamId" in data:
            t.team_id = _org_team(session, org_id, data["teamId"]).id if data["teamId"] else None
        if "dueDate" in data:
            t.due_date = _parse_date(data["dueDate"], "Fälligkeitsdatum")

        t.updated_at = utcnow()
        session.add(t)
        session.commit()
        session.refresh(t)
        return _ser_ticket(t)


@app.delete("/api/tickets/{ticket_id}")
def api_ticket_delete(request: Request, ticket_id: int):
    with get_session() as session:
        active = _get_active_user(session, request)
        t = _org_ticket(session, active.organization_id, ticket_id)
        if t.created_by_id != active.id and not _is_admin(active):
            raise HTTPException(403, "Keine Berechtigung")
        for st in session.exec(select(SubTask).where(SubTask.ticket_id == t.id)).all():
            session.delete(st)
        session.delete(t)
        session.commit()
        return {"success": True}


# -------------------------
# Subtasks API
# -------------------------

@app.get("/api/subtasks")
def api_subtasks_list(request: Request, ticketId: Optional[str] = None):
    if not ticketId:
        raise HTTPException(400, "TicketId erforderlich")
    with get_session() as session:
        active = _get_active_user(session, request)
        t = _org_ticket(session, active.organization_id, ticketId)
        rows = session.exec(
            select(SubTask).where(SubTask.ticket_id == t.id).order_by(SubTask.position, SubTask.id)
        ).all()
        return [_ser_subtask(st) for st in rows]


@app.post("/api/subtasks", status_code=201)
async def api_subtask_create(request: Request):
    data = await _json_body(request)
    title = str(data.get("title") or "").strip()
    if not data.get("ticketId") or not title:
        raise HTTPException(400, "TicketId und Titel erforderlich")

    with get_session() as session:
        active = _get_active_user(session, request)
        org_id = active.organization_id
        t = _org_ticket(session, org_id, data["ticketId"])
        assignee_id = _org_user(session, org_id, data["assigneeId"]).id if data.get("assigneeId") else None

        st = SubTask(
            ticket_id=t.id,
            title=title,
            position=_parse_int(data.get("position"), "position") or 0,
            estimated_hours=_parse_float(data.get("estimatedHours"), "estimatedHours"),
            due_date=_parse_date(data.get("dueDate"), "Fälligkeitsdatum"),
            assignee_id=assignee_id,
            completed=False,
        )
        session.add(st)
        session.commit()
        session.refresh(st)
        return _ser_subtask(st)


@app.patch("/api/subtasks/{subtask_id}")
async def api_subtask_update(request: Request, subtask_id: int):
    data = await _json_body(request)
    with get_session() as session:
        active = _get_active_user(session, request)
        org_id = active.organization_id
        st = session.get(SubTask, subtask_id)
        if not st:
            raise HTTPException(404, "Subtask nicht gefunden")
        t = session.get(Ticket, st.ticket_id)
        if not t or t.organization_id != org_id:
            raise HTTPException(404, "Subtask nicht gefunden")

        has_access = (
            t.created_by_id == active.id
            or t.assigned_to_id == active.id
            or st.assignee_id == active.id
            or _can_view_others(active)
        )
        if not has_access:
            raise HTTPException(403, "Keine Berechtigung")

        if "completed" in data:
            st.completed = bool(data["completed"])
        if "title" in data:
            title = str(data["title"] or "").strip()
            if not title:
                raise HTTPException(400, "Titel ist erforderlich")
            st.title = title
        if "dueDate" in data:
            st.due_date = _parse_date(data["dueDate"], "Fälligkeitsdatum")
        if "estimatedHours" in data:
            st.estimated_hours = _parse_float(data["estimatedHours"], "estimatedHours")
        if "assigneeId" in data:
            st.assignee_id = _org_user(session, org_id, data["assigneeId"]).id if data["assigneeId"] else None
        if "position" in data:
            st.position = _parse_int(data["position"], "position") or 0

        session.add(st)
        session.commit()
        session.refresh(st)
        return {"subtask": _ser_subtask(st, t)}


@app.delete("/api/subtasks/{subtask_id}")
def api_subtask_delete(request: Request, subtask_id: int):
    with get_session() as session:
        active = _get_active_user(session, request)
        st = session.get(SubTask, subtask_id)
        if not st:
            raise HTTPException(404, "Subtask nicht gefunden")
        t = session.get(Ticket, st.ticket_id)
        if not t or t.organization_id != active.organization_id:
            raise HTTPException(404, "Subtask nicht gefunden")
        if t.created_by_id != active.id and not _is_admin(active):
            raise HTTPException(403, "Keine Berechtigung")
        session.delete(st)
        session.commit()
        return {"message": "Subtask gelöscht"}


@app.get("/api/tasks")
def api_tasks(request: Request, userId: Optional[str] = None, filter: str = "all"):
    """Subtasks assigned to one user (own tasks, or team members for a koordinator)."""
    with get_session() as session:
        active = _get_active_user(session, request)
        target = _org_user(session, active.organization_id, userId) if userId else active
        visible = _visible_user_ids(session, active, None)
        if visible is not None and target.id not in visible:
            raise HTTPException(403, "Keine Berechtigung")

        q = (
            select(SubTask, Ticket)
            .join(Ticket, Ticket.id == SubTask.ticket_id)
            .where(SubTask.assignee_id == target.id, Ticket.organization_id == active.organization_id)
        )
        if filter == "open":
            q = q.where(SubTask.completed == False)  # noqa: E712
        elif filter == "done":
            q = q.where(SubTask.completed == True)  # noqa: E712
        rows = session.exec(q).all()
        rows = sorted(rows, key=lambda r: (r[0].due_date is None, r[0].due_date or date.min, r[0].id))
        return [_ser_subtask(st, t) for st, t in rows]


# -------------------------
# Teams API
# -------------------------

@app.get("/api/teams")
def api_teams_list(request: Request):
    with get_session() as session:
        active = _get_active_user(session, request)
        teams = session.exec(
            select(Team).where(Team.organization_id == active.organization_id).order_by(Team.name)
        ).all()
        team_ids = [t.id for t in teams]
        memberships = session.exec(select(TeamMember).where(TeamMember.team_id.in_(team_ids))).all() if team_ids else []
        users = {u.id: u for u in session.exec(select(User).where(User.organization_id == active.organization_id)).all()}

        members_by_team: Dict[int, List[Dict[str, Any]]] = {}
        for m in memberships:
            members_by_team.setdefault(m.team_id, []).append(_ser_membership(m, users.get(m.user_id)))
        return {"teams": [_ser_team(t, members_by_team.get(t.id, [])) for t in teams]}


@app.post("/api/teams", status_code=201)
async def api_team_create(request: Request):
    data = await _json_body(request)
    name = str(data.get("name") or "").strip()
    with get_session() as session:
        active = _get_active_user(session, request)
        _require_admin(active)
        if not name:
            raise HTTPException(400, "Name ist erforderlich")
        t = Team(organization_id=active.organization_id, name=name, color=data.get("color") or "#3b82f6")
        session.add(t)
        session.commit()
        session.refresh(t)
        return {"team": _ser_team(t, [])}


@app.patch("/api/teams/{team_id}")
async def api_team_update(request: Request, team_id: int):
    data = await _json_body(request)
    with get_session() as session:
        active = _get_active_user(session, request)
        _require_admin(active)
        t = _org_team(session, active.organization_id, team_id)
        if "name" in data:
            name = str(data["name"] or "").strip()
            if not name:
                raise HTTPException(400, "Name ist erforderlich")
            t.name = name
        if "color" in data and data["color"]:
            t.color = str(data["color"])
        session.add(t)
        session.commit()
        session.refresh(t)
        return {"team": _ser_team(t)}


@app.delete("/api/teams/{team_id}")
def api_team_delete(request: Request, team_id: int):
    with get_session() as session:
        active = _get_active_user(session, request)
        _require_admin(active)
        t = _org_team(session, active.organization_id, team_id)
        for m in session.exec(select(TeamMember).where(TeamMember.team_id == t.id)).all():
            session.delete(m)
        for u in session.exec(select(User).where(User.team_id == t.id)).all():
            u.team_id = None
            session.add(u)
        for tk in session.exec(select(Ticket).where(Ticket.team_id == t.id)).all():
            tk.team_id = None
            session.add(tk)
        session.delete(t)
        session.commit()
        return {"success": True}


# -------------------------
# Team memberships API (per-team weekly hours / workload)
# -------------------------

@app.get("/api/team-members")
def api_team_members_list(request: Request, userId: Optional[str] = None, teamId: Optional[str] = None):
    with get_session() as session:
        active = _get_active_user(session, request)
        org_id = active.organization_id
        teams = {t.id: t for t in session.exec(select(Team).where(Team.organization_id == org_id)).all()}
        users = {u.id: u for u in session.exec(select(User).where(User.organization_id == org_id)).all()}

        q = select(TeamMember).where(TeamMember.team_id.in_(list(teams.keys()) or [-1]))
        if userId:
            q = q.where(TeamMember.user_id == _org_user(session, org_id, userId).id)
        if teamId:
            q = q.where(TeamMember.team_id == _org_team(session, org_id, teamId).id)
        rows = session.exec(q.order_by(TeamMember.id)).all()
        return [_ser_membership(m, users.get(m.user_id), teams.get(m.team_id)) for m in rows]


@app.post("/api/team-members", status_code=201)
async def api_team_member_create(request: Request):
    data = await _json_body(request)
    if not data.get("userId") or not data.get("teamId"):
        raise HTTPException(400, "userId und teamId sind erforderlich")

    with get_session() as session:
        active = _get_active_user(session, request)
        _require_planner(active)
        org_id = active.organization_id
        u = _org_user(session, org_id, data["userId"])
        t = _org_team(session, org_id, data["teamId"])

        existing = session.exec(
            select(TeamMember).where(TeamMember.user_id == u.id, TeamMember.team_id == t.id)
        ).first()
        if existing:
            raise HTTPException(400, "Benutzer ist bereits Mitglied dieses Teams")

        weekly = _parse_float(data.get("weeklyHours"), "weeklyHours")
        pct = _parse_int(data.get("workloadPercent"), "workloadPercent")
        m = TeamMember(
            user_id=u.id,
            team_id=t.id,
            weekly_hours=42.0 if weekly is None else weekly,
            workload_percent=100 if pct is None else pct,
        )
        session.add(m)
        session.commit()
        session.refresh(m)
        return _ser_membership(m, u, t)


def _find_membership(session, org_id: Optional[int], data: Dict[str, Any]) -> TeamMember:
    if data.get("id"):
        m = session.get(TeamMember, _parse_int(data["id"], "id"))
    elif data.get("userId") and data.get("teamId"):
        m = session.exec(
            select(TeamMember).where(
                TeamMember.user_id == _parse_int(data["userId"], "userId"),
                TeamMember.team_id == _parse_int(data["teamId"], "teamId"),
            )
        ).first()
    else:
        raise HTTPException(400, "id oder userId+teamId sind erforderlich")
    if not m:
        raise HTTPException(404, "Team-Mitgliedschaft nicht gefunden")
    team = session.get(Team, m.team_id)
    if not team or team.organization_id != org_id:
        raise HTTPException(404, "Team-Mitgliedschaft nicht gefunden")
    return m


@app.patch("/api/team-members")
async def api_team_member_update(request: Request):
    data = await _json_body(request)
    with get_session() as session:
        active = _get_active_user(session, request)
        _require_planner(active)
        m = _find_membership(session, active.organization_id, data)
        if data.get("weeklyHours") is not None:
            m.weekly_hours = _parse_float(data["weeklyHours"], "weeklyHours")
        if data.get("workloadPercent") is not None:
            m.workload_percent = _parse_int(data["workloadPercent"], "workloadPercent")
        session.add(m)
        session.commit()
        session.refresh(m)
        return _ser_membership(m)


@app.delete("/api/team-members")
def api_team_member_delete(
    request: Request,
    id: Optional[str] = None,
    userId: Optional[str] = None,
    teamId: Optional[str] = None,
):
    with get_session() as session:
        active = _get_active_user(session, request)
        _require_planner(active)
        m = _find_membership(session, active.organization_id, {"id": id, "userId": userId, "teamId": teamId})
        session.delete(m)
        session.commit()
        return {"success": True}


# -------------------------
# Users API
# -------------------------

@app.get("/api/users")
def api_users_list(request: Request):
    with get_session() as session:
        active = _get_active_user(session, request)
        users = session.exec(select(User).where(User.organization_id == active.organization_id)).all()
        users = sorted(users, key=lambda u: (u.name or u.email or "").lower())
        return [_ser_user(u) for u in users]


@app.post("/api/users", status_code=201)
async def api_user_create(request: Request):
    data = await _json_body(request)
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    with get_session() as session:
        active = _get_active_user(session, request)
        _require_admin(active)
        if not email or not password:
            raise HTTPException(400, "E-Mail und Passwort sind erforderlich")
        if len(password) < 6:
            raise HTTPException(400, "Passwort muss mindestens 6 Zeichen lang sein")
        if session.exec(select(User).where(User.email == email)).first():
            raise HTTPException(400, "E-Mail wird bereits verwendet")
        role = str(data.get("role") or "member").strip().lower()
        if role not in ROLES:
            raise HTTPException(400, f"Ungültige Rolle: {role}")

        weekly = _parse_float(data.get("weeklyHours"), "weeklyHours")
        pct = _parse_int(data.get("workloadPercent"), "workloadPercent")
        u = User(
            organization_id=active.organization_id,
            email=email,
            name=str(data.get("name") or "").strip() or email.split("@")[0],
            password_hash=hash_password(password),
            role=role,
            weekly_hours=42.0 if weekly is None else weekly,
            workload_percent=100 if pct is None else pct,
        )
        session.add(u)
        session.commit()
        session.refresh(u)
        return _ser_user(u)


@app.patch("/api/users/{user_id}")
async def api_user_update(request: Request, user_id: int):
    data = await _json_body(request)
    with get_session() as session:
        active = _get_active_user(session, request)
        u = _org_user(session, active.organization_id, user_id)
        is_self = u.id == active.id
        if not _is_admin(active):
            # Members may only change their own name and password.
            if not is_self or set(data) - {"name", "password"}:
                raise HTTPException(403, "Keine Berechtigung")

        if "name" in data:
            u.name = str(data["name"] or "").strip()
        if data.get("password"):
            if len(str(data["password"])) < 6:
                raise HTTPException(400, "Passwort muss mindestens 6 Zeichen lang sein")
            u.password_hash = hash_password(str(data["password"]))
        if "role" in data:
            role = str(data["role"] or "").strip().lower()
            if role not in ROLES:
                raise HTTPException(400, f"Ungültige Rolle: {role}")
            u.role = role
        if data.get("weeklyHours") is not None:
            u.weekly_hours = _parse_float(data["weeklyHours"], "weeklyHours")
        if data.get("workloadPercent") is not None:
            u.workload_percent = _parse_int(data["workloadPercent"], "workloadPercent")
        if "teamId" in data:
            u.team_id = _org_team(session, active.organization_id, data["teamId"]).id if data["teamId"] else None

        session.add(u)
        session.commit()
        session.refresh(u)
        return _ser_user(u)


# -------------------------
# Absences API
# -------------------------

@app.get("/api/absences")
def api_absences_list(
    request: Request,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    userId: Optional[str] = None,
):
    with get_session() as session:
        active = _get_active_user(session, request)
        org_users = {u.id: u for u in session.exec(select(User).where(User.organization_id == active.organization_id)).all()}

        visible = _visible_user_ids(session, active, _parse_int(userId, "userId"))
        ids = list(org_users.keys()) if visible is None else [i for i in visible if i in org_users]
        q = select(Absence).where(Absence.user_id.in_(ids or [-1]))

        start = _parse_date(startDate, "Startdatum")
        end = _parse_date(endDate, "Enddatum")
        if start and end:
            q = q.where(
                or_(
                    and_(Absence.start_date >= start, Absence.start_date <= end),
                    and_(Absence.end_date >= start, Absence.end_date <= end),
                    and_(Absence.start_date <= start, Absence.end_date >= end),
                )
            )
        rows = session.exec(q.order_by(Absence.start_date, Absence.id)).all()
        return [_ser_absence(a, org_users.get(a.user_id)) for a in rows]


@app.post("/api/absences", status_code=201)
async def api_absence_create(request: Request):
    data = await _json_body(request)
    title = str(data.get("title") or "").strip()
    kind = str(data.get("type") or "").strip()
    if not title or not kind or not data.get("startDate") or not data.get("endDate"):
        raise HTTPException(400, "Pflichtfelder fehlen")
    if kind not in ABSENCE_TYPES:
        raise HTTPException(400, f"Ungültiger Typ: {kind}")
    start = _parse_date(data["startDate"], "Startdatum")
    end = _parse_date(data["endDate"], "Enddatum")
    if end < start:
        raise HTTPException(400, "Enddatum liegt vor dem Startdatum")

    with get_session() as session:
        active = _get_active_user(session, request)
        for_user = active
        target_id = _parse_int(data.get("userId"), "userId")
        if target_id and target_id != active.id:
            target = _org_user(session, active.organization_id, target_id)
            if _is_admin(active):
                for_user = target
            elif _is_koordinator(active) and target.id in _team_member_ids(session, _team_ids_of(session, active)):
                for_user = target
            else:
                raise HTTPException(403, "Keine Berechtigung")

        a = Absence(
            user_id=for_user.id,
            title=title,
            type=kind,
            start_date=start,
            end_date=end,
            description=data.get("description") or None,
            color=data.get("color") or ABSENCE_COLORS.get(kind, "#6b7280"),
        )
        session.add(a)
        session.commit()
        session.refresh(a)
        return _ser_absence(a, for_user)


@app.delete("/api/absences/{absence_id}")
def api_absence_delete(request: Request, absence_id: int):
    with get_session() as session:
        active = _get_active_user(session, request)
        a = session.get(Absence, absence_id)
        owner = session.get(User, a.user_id) if a else None
        if not a or not owner or owner.organization_id != active.organization_id:
            raise HTTPException(404, "Abwesenheit nicht gefunden")
        if a.user_id != active.id and not _is_admin(active):
            raise HTTPException(403, "Keine Berechtigung")
        session.delete(a)
        session.commit()
        return {"success": True}


# -------------------------
# Organization
# -------------------------

@app.get("/api/organizations")
def api_organization(request: Request):
    with get_session() as session:
        active = _get_active_user(session, request)
        org = session.get(Organization, active.organization_id) if active.organization_id else None
        if not org:
            raise HTTPException(404, "Organisation nicht gefunden")
        members = session.exec(select(User).where(User.organization_id == org.id)).all()
        return {"id": org.id, "name": org.name, "memberCount": len(members)}
