"""Support tickets ("problems") filed by users.

Routes:
- POST  /api/users/<uid>/problems                          {title, description, type, attachments?}
- GET   /api/users/<uid>/problems
- GET   /api/users/<uid>/problems/<id>
- PATCH /api/users/<uid>/problems/<id>                     {status, adminResponse?}
- POST  /api/users/<uid>/problems/<id>/attachments         {attachments: [...]}

Filing and status changes each leave a notification for the user.
"""

from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from errors import InvalidInputError, NotFoundError
from extensions import db
from fanout import publish
from ledger import append_notification, get_user
from models_problems import (
    FINAL_PROBLEM_STATUSES,
    PROBLEM_STATUS_OPEN,
    PROBLEM_STATUSES,
    PROBLEM_TYPES,
    Problem,
)


problems_api = Blueprint("problems_api", __name__)

MAX_TITLE_LENGTH = 200


def _clean_attachments(raw) -> list:
    if not isinstance(raw, list) or not all(isinstance(a, str) and a.strip() for a in raw):
        raise InvalidInputError("Attachments array is required")
    return [a.strip() for a in raw]


def _get_problem(uid: str, problem_id) -> Problem:
    user = get_user(uid)
    try:
        problem_id = int(problem_id)
    except (TypeError, ValueError):
        raise NotFoundError("Problem not found")
    problem = Problem.query.filter_by(id=problem_id, user_uid=user.uid).first()
    if not problem:
        raise NotFoundError("Problem not found")
    return problem


def _commit_with_notification(problem: Problem, title: str, message: str, type_: str) -> dict:
    try:
        notification = append_notification(problem.user_uid, title, message, type_)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    payload = notification.to_dict()
    publish(problem.user_uid, "notification", payload)
    return payload


def create_problem(uid: str, data: dict) -> Problem:
    title, description, type_ = data.get("title"), data.get("description"), data.get("type")
    if not all(isinstance(v, str) and v.strip() for v in (title, description, type_)):
        raise InvalidInputError("Title, description, and type are required")
    title, description, type_ = title.strip(), description.strip(), type_.strip().lower()
    if len(title) > MAX_TITLE_LENGTH:
        raise InvalidInputError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    if type_ not in PROBLEM_TYPES:
        raise InvalidInputError(f"Invalid problem type. Must be one of: {', '.join(PROBLEM_TYPES)}")
    attachments = _clean_attachments(data["attachments"]) if data.get("attachments") is not None else []

    user = get_user(uid)
    now = datetime.utcnow()
    problem = Problem(
        user_uid=user.uid,
        title=title,
        description=description,
        type=type_,
        status=PROBLEM_STATUS_OPEN,
        attachments=attachments,
        created_at=now,
        updated_at=now,
    )
    db.session.add(problem)
    _commit_with_notification(
        problem,
        "Problem Submitted",
        f'Your problem "{title}" has been submitted. We\'ll get back to you soon.',
        "problem",
    )
    current_app.logger.info("Problem %s filed by %s (%s)", problem.id, user.uid, type_)
    return problem


def update_problem_status(uid: str, problem_id, status, admin_response=None) -> Problem:
    if not isinstance(status, str) or not status.strip():
        raise InvalidInputError("Status is required")
    status = status.strip().lower()
    if status not in PROBLEM_STATUSES:
        raise InvalidInputError(f"Invalid status. Must be one of: {', '.join(PROBLEM_STATUSES)}")
    if admin_response is not None and not isinstance(admin_response, str):
        raise InvalidInputError("adminResponse must be a string")

    problem = _get_problem(uid, problem_id)
    now = datetime.utcnow()
    problem.status = status
    problem.updated_at = now
    if admin_response and admin_response.strip():
        problem.admin_response = admin_response.strip()
    if status in FINAL_PROBLEM_STATUSES:
        problem.resolved_at = now

    _commit_with_notification(
        problem,
        "Problem Status Updated",
        f'Your problem "{problem.title}" has been {status}.',
        "problem_update",
    )
    current_app.logger.info("Problem %s moved to %s", problem.id, status)
    return problem


def add_attachments(uid: str, problem_id, attachments) -> Problem:
    attachments = _clean_attachments(attachments)
    problem = _get_problem(uid, problem_id)
    # Reassign so the JSON column is flagged dirty.
    problem.attachments = list(problem.attachments or []) + attachments
    problem.updated_at = datetime.utcnow()
    db.session.commit()
    return problem


@problems_api.post("/api/users/<uid>/problems")
def api_create_problem(uid: str):
    problem = create_problem(uid, request.get_json(silent=True) or {})
    return jsonify({"success": True, "problem": problem.to_dict()}), 201


@problems_api.get("/api/users/<uid>/problems")
def api_list_problems(uid: str):
    user = get_user(uid)
    rows = (
        Problem.query.filter_by(user_uid=user.uid)
        .order_by(Problem.created_at.desc(), Problem.id.desc())
        .all()
    )
    return jsonify({"success": True, "problems": [p.to_dict() for p in rows]})


@problems_api.get("/api/users/<uid>/problems/<problem_id>")
def api_get_problem(uid: str, problem_id: str):
    return jsonify({"success": True, "problem": _get_problem(uid, problem_id).to_dict()})


@problems_api.patch("/api/users/<uid>/problems/<problem_id>")
def api_update_problem(uid: str, problem_id: str):
    data = request.get_json(silent=True) or {}
    problem = update_problem_status(uid, problem_id, data.get("status"), data.get("adminResponse"))
    return jsonify({"success": True, "problem": problem.to_dict()})


@problems_api.post("/api/users/<uid>/problems/<problem_id>/attachments")
def api_add_attachments(uid: str, problem_id: str):
    data = request.get_json(silent=True) or {}
    problem = add_attachments(uid, problem_id, data.get("attachments"))
    return jsonify({"success": True, "problem": problem.to_dict()})
