# app.py
import logging
import os
import secrets
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, abort, g, jsonify, request, session
from flask_login import LoginManager, UserMixin, current_user, login_required
from werkzeug.exceptions import HTTPException

from database import SessionLocal
from models import Event, Parish, User
from schedule.clock import as_utc, format_timezone_label, now_in_parish_time, utcnow
from schedule.config import parish_timezone
from schedule.context import load_visibility_context
from schedule.digest import (
    build_week_summary,
    generate_digest_preview,
    publish_digest,
    save_digest_draft,
)
from schedule.errors import Forbidden, InvalidRecurrenceRule, InvalidTransition, NotFound, ScheduleError
from schedule.events import create_event, delete_series, edit_occurrence, edit_series, list_events_by_range
from schedule.feeds import (
    announcement_to_dict,
    channel_to_dict,
    list_visible_announcements,
    list_visible_channels,
    list_visible_requests,
    request_to_dict,
)
from schedule.ranges import date_key, month_grid_days, month_range, week_days, week_range
from schedule.tasks import defer_task, mark_task_done, unmark_task_done
from schedule.week import get_or_create_current_week, get_week_for_selection, parse_week_selection

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "dev-only-key")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("FLASK_ENV") == "production",
    CSRF_ENABLED=os.getenv("CSRF_ENABLED", "1") not in {"0", "false", "False"},
)

login_manager = LoginManager()
login_manager.init_app(app)

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


# ------------------------------- Database session -------------------------------
def get_db():
    """One session per request, committed or rolled back on teardown."""
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


@app.teardown_request
def close_db(exc):
    db = g.pop("db", None)
    if db is None:
        return
    try:
        if exc is None and not g.get("db_failed"):
            db.commit()
        else:
            db.rollback()
    finally:
        db.close()


# ------------------------------- Auth model -------------------------------
class AppUser(UserMixin):
    def __init__(self, user_id: str, name: str | None = None, email: str | None = None, active_parish_id: str | None = None):
        self.id = user_id
        self.name = name or email or user_id
        self.email = email
        self.active_parish_id = active_parish_id

    @classmethod
    def from_model(cls, user: User):
        return cls(
            user_id=user.id,
            name=user.name,
            email=user.email,
            active_parish_id=user.active_parish_id,
        )


@login_manager.user_loader
def load_logged_in_user(user_id: str):
    user = get_db().get(User, user_id)
    if user:
        return AppUser.from_model(user)
    return None


def current_parish() -> Parish:
    """The parish picked in the session, else the user's active parish."""
    if "parish" not in g:
        parish_id = session.get("parish_id") or current_user.active_parish_id
        parish = get_db().get(Parish, parish_id) if parish_id else None
        if parish is None or parish.deactivated_at is not None:
            raise NotFound("No active parish selected")
        g.parish = parish
    return g.parish


def current_viewer():
    if "viewer" not in g:
        parish = current_parish()
        viewer = load_visibility_context(get_db(), parish.id, current_user.id)
        if not viewer.is_member:
            raise Forbidden("Not a member of this parish")
        g.viewer = viewer
    return g.viewer


def leader_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not current_viewer().is_leader:
            raise Forbidden("Parish leaders only")
        return f(*args, **kwargs)
    return wrapper


# ------------------------------- CSRF -------------------------------
def csrf_token():
    return session.get("_csrf", "")


app.jinja_env.globals["csrf_token"] = csrf_token


@app.before_request
def ensure_csrf_token():
    session["_csrf"] = session.get("_csrf") or secrets.token_urlsafe(32)
    if request.method in MUTATING_METHODS and app.config["CSRF_ENABLED"]:
        token = session.get("_csrf")
        submitted = request.form.get("csrf_token") or request.headers.get("X-CSRF-Token")
        if not token or not submitted or not secrets.compare_digest(submitted, token):
            abort(400, description="Missing or invalid CSRF token")


# ------------------------------- Errors -------------------------------
def _error(message: str, status: int):
    g.db_failed = True
    return jsonify({"error": message}), status


@app.errorhandler(NotFound)
def handle_not_found(exc):
    return _error(str(exc) or "Not found", 404)


@app.errorhandler(Forbidden)
def handle_forbidden(exc):
    LOGGER.info("Forbidden for %s on %s: %s", getattr(current_user, "id", None), request.path, exc)
    return _error(str(exc) or "Forbidden", 403)


@app.errorhandler(InvalidTransition)
def handle_invalid_transition(exc):
    return _error(str(exc), 409)


@app.errorhandler(ValueError)
@app.errorhandler(InvalidRecurrenceRule)
def handle_bad_request(exc):
    return _error(str(exc) or "Bad request", 400)


@app.errorhandler(ScheduleError)
def handle_schedule_error(exc):
    LOGGER.error("Unhandled scheduling error on %s: %s", request.path, exc)
    return _error(str(exc), 500)


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    return _error(exc.description or exc.name, exc.code or 500)


# ------------------------------- Request helpers -------------------------------
def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object")
    return payload


def parse_instant(value: Any, tz) -> Optional[datetime]:
    """ISO-8601 text to an aware datetime; naive text is parish wall clock."""
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid datetime: {value!r}")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Invalid datetime: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return as_utc(parsed)


def event_values(payload: Dict[str, Any], tz) -> Dict[str, Any]:
    values = dict(payload)
    for field in ("starts_at", "ends_at", "recurrence_until"):
        if field in values:
            values[field] = parse_instant(values[field], tz)
    return values


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "location": event.location,
        "summary": event.summary,
        "starts_at": as_utc(event.starts_at).isoformat(),
        "ends_at": as_utc(event.ends_at).isoformat(),
        "visibility": event.visibility,
        "group_id": event.group_id,
        "recurrence": {
            "freq": event.recurrence_freq,
            "interval": event.recurrence_interval,
            "by_weekday": list(event.recurrence_by_weekday or []),
            "until": as_utc(event.recurrence_until).isoformat() if event.recurrence_until else None,
        },
        "recurrence_parent_id": event.recurrence_parent_id,
        "recurrence_original_starts_at": (
            as_utc(event.recurrence_original_starts_at).isoformat() if event.recurrence_original_starts_at else None
        ),
    }


def task_to_dict(task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "week_id": task.week_id,
        "completed_at": as_utc(task.completed_at).isoformat() if task.completed_at else None,
        "completed_by_id": task.completed_by_id,
    }


# ------------------------------- Routes -------------------------------
@app.get("/healthz")
def healthz():
    return {"ok": True}, 200


@app.route("/api/this-week")
@login_required
def this_week():
    parish = current_parish()
    viewer = current_viewer()
    tz = parish_timezone(parish)
    db = get_db()
    selection = parse_week_selection(request.args.getlist("week"))
    week = get_week_for_selection(db, parish.id, selection, utcnow(), tz)
    payload = build_week_summary(db, parish.id, week.id, viewer, tz).to_dict()
    payload["selection"] = selection
    payload["timezone"] = format_timezone_label(parish.timezone) if parish.timezone else str(tz)
    return jsonify(payload)


@app.route("/api/calendar")
@login_required
def calendar_feed():
    parish = current_parish()
    viewer = current_viewer()
    tz = parish_timezone(parish)
    view = (request.args.get("view") or "week").lower()
    if view not in {"week", "month"}:
        view = "week"

    now = utcnow()
    if view == "week":
        query_range = week_range(now, tz)
        days = [date_key(day) for day in week_days(now_in_parish_time(query_range.start, tz))]
    else:
        query_range = month_range(now, tz)
        days = [
            date_key(day)
            for day in month_grid_days(now_in_parish_time(query_range.start, tz), now_in_parish_time(query_range.end, tz))
        ]

    events = list_events_by_range(get_db(), parish.id, query_range, viewer, tz)
    return jsonify({
        "view": view,
        "range": query_range.to_dict(),
        "days": days,
        "events": [dict(instance.to_dict(), day=date_key(instance.starts_at, tz)) for instance in events],
    })


@app.route("/api/events", methods=["POST"])
@login_required
def create_event_route():
    parish = current_parish()
    viewer = current_viewer()
    tz = parish_timezone(parish)
    event = create_event(get_db(), parish.id, viewer, event_values(json_body(), tz), tz)
    return jsonify(event_to_dict(event)), 201


@app.route("/api/events/<event_id>/occurrences/<int:millis>", methods=["PATCH"])
@login_required
def edit_occurrence_route(event_id: str, millis: int):
    parish = current_parish()
    viewer = current_viewer()
    tz = parish_timezone(parish)
    payload = json_body()
    cancel = bool(payload.pop("cancel", False))
    override = edit_occurrence(
        get_db(), parish.id, event_id, millis, viewer, changes=event_values(payload, tz), cancel=cancel, tz=tz
    )
    if override is None:
        return jsonify({"cancelled": True, "instance_id": f"{event_id}-{millis}"})
    return jsonify(dict(event_to_dict(override), instance_id=f"{event_id}-{millis}"))


@app.route("/api/events/<event_id>", methods=["PATCH"])
@login_required
def edit_series_route(event_id: str):
    parish = current_parish()
    viewer = current_viewer()
    tz = parish_timezone(parish)
    event = edit_series(get_db(), parish.id, event_id, viewer, event_values(json_body(), tz), tz)
    return jsonify(event_to_dict(event))


@app.route("/api/events/<event_id>", methods=["DELETE"])
@login_required
def delete_series_route(event_id: str):
    parish = current_parish()
    deleted = delete_series(get_db(), parish.id, event_id, current_viewer())
    return jsonify({"ok": True, "deleted": deleted})


@app.route("/api/tasks/<task_id>/done", methods=["POST"])
@login_required
def mark_done_route(task_id: str):
    parish = current_parish()
    task = mark_task_done(get_db(), parish.id, task_id, current_viewer())
    return jsonify(task_to_dict(task))


@app.route("/api/tasks/<task_id>/done", methods=["DELETE"])
@login_required
def unmark_done_route(task_id: str):
    parish = current_parish()
    task = unmark_task_done(get_db(), parish.id, task_id, current_viewer())
    return jsonify(task_to_dict(task))


@app.route("/api/tasks/<task_id>/defer", methods=["POST"])
@login_required
def defer_task_route(task_id: str):
    parish = current_parish()
    tz = parish_timezone(parish)
    db = get_db()
    selection = parse_week_selection(json_body().get("week") or "next")
    target = get_week_for_selection(db, parish.id, selection, utcnow(), tz)
    task = defer_task(db, parish.id, task_id, current_viewer(), target)
    return jsonify(task_to_dict(task))


@app.route("/api/announcements")
@login_required
def announcements_feed():
    parish = current_parish()
    status = request.args.get("status")
    rows = list_visible_announcements(
        get_db(), parish.id, current_viewer(), status=status if status in {"draft", "published"} else None
    )
    return jsonify([announcement_to_dict(row) for row in rows])


@app.route("/api/requests")
@login_required
def requests_feed():
    parish = current_parish()
    rows = list_visible_requests(
        get_db(),
        parish.id,
        current_viewer(),
        type=request.args.get("type"),
        assignee_id=request.args.get("assignee"),
        visibility_scope=request.args.get("scope"),
    )
    return jsonify([request_to_dict(row) for row in rows])


@app.route("/api/channels")
@login_required
def channels_feed():
    parish = current_parish()
    rows = list_visible_channels(get_db(), parish.id, current_viewer())
    return jsonify([channel_to_dict(row) for row in rows])


@app.route("/api/digest/preview", methods=["POST"])
@login_required
@leader_required
def digest_preview():
    parish = current_parish()
    tz = parish_timezone(parish)
    content = generate_digest_preview(get_db(), parish.id, current_viewer(), utcnow(), tz)
    return jsonify({"content": content})


def _digest_week(parish):
    return get_or_create_current_week(get_db(), parish.id, utcnow(), parish_timezone(parish))


def _digest_content() -> str:
    content = json_body().get("content")
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Digest content is required")
    return content


def _digest_to_dict(digest) -> Dict[str, Any]:
    return {
        "id": digest.id,
        "week_id": digest.week_id,
        "content": digest.content,
        "status": digest.status.lower(),
        "published_at": as_utc(digest.published_at).isoformat() if digest.published_at else None,
    }


@app.route("/api/digest", methods=["POST"])
@login_required
@leader_required
def digest_save_draft():
    parish = current_parish()
    week = _digest_week(parish)
    digest = save_digest_draft(get_db(), parish.id, week.id, current_viewer(), _digest_content())
    return jsonify(_digest_to_dict(digest))


@app.route("/api/digest/publish", methods=["POST"])
@login_required
@leader_required
def digest_publish():
    parish = current_parish()
    week = _digest_week(parish)
    digest = publish_digest(get_db(), parish.id, week.id, current_viewer(), _digest_content())
    return jsonify(_digest_to_dict(digest))


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    app.run(debug=os.getenv("FLASK_ENV") != "production")
