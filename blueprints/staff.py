"""Staff leave requests and the weekly behavioral honor board."""

from __future__ import annotations

from datetime import date, datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from errors import Conflict, Forbidden, NotFound, ValidationError
from helpers import (
    json_body,
    locate_student,
    principal_required,
    principal_scope,
    roles_required,
    staff_required,
)
from school_config import GRADE_LEVELS, HONOR_CRITERIA, now_iso, week_of
from tree_store import get_tree, push_key

bp = Blueprint("staff", __name__)

requester_required = roles_required("teacher", "counselor")
board_manager_required = roles_required("principal", "counselor")


# ── Leave requests ─────────────────────────────────────────

def _load_request(pid: str, request_id: str) -> dict:
    leave = get_tree().get(f"leave_requests/{pid}/{request_id}")
    if not leave:
        raise NotFound("Leave request not found.")
    return leave


def _require_pending(leave: dict) -> None:
    if leave.get("status") != "pending":
        raise Conflict("This request has already been resolved.")


@bp.route("/api/leave-requests")
@staff_required
def list_leave_requests():
    items = get_tree().children(f"leave_requests/{principal_scope()}")
    if not current_user.is_principal:
        items = [r for r in items if r.get("teacherId") == current_user.uid]
    items.sort(key=lambda r: r.get("requestedAt", ""), reverse=True)
    return jsonify({
        "requests": items,
        "pendingCount": sum(1 for r in items if r.get("status") == "pending"),
    })


@bp.route("/api/leave-requests", methods=["POST"])
@requester_required
def create_leave_request():
    pid = principal_scope()
    body = str(json_body("requestBody")["requestBody"]).strip()
    rid = push_key()
    leave = {
        "id": rid,
        "teacherId": current_user.uid,
        "principalId": pid,
        "teacherName": current_user.name,
        "requestedAt": now_iso(),
        "status": "pending",
        "requestBody": body,
    }
    get_tree().set(f"leave_requests/{pid}/{rid}", leave)
    return jsonify({"success": True, "request": leave}), 201


@bp.route("/api/leave-requests/<request_id>", methods=["PUT"])
@requester_required
def edit_leave_request(request_id):
    pid = principal_scope()
    leave = _load_request(pid, request_id)
    if leave.get("teacherId") != current_user.uid:
        raise Forbidden("You can only edit your own requests.")
    _require_pending(leave)
    leave["requestBody"] = str(json_body("requestBody")["requestBody"]).strip()
    get_tree().set(f"leave_requests/{pid}/{request_id}/requestBody", leave["requestBody"])
    return jsonify({"success": True, "request": leave})


@bp.route("/api/leave-requests/<request_id>", methods=["DELETE"])
@staff_required
def delete_leave_request(request_id):
    pid = principal_scope()
    leave = _load_request(pid, request_id)
    if not current_user.is_principal:
        if leave.get("teacherId") != current_user.uid:
            raise Forbidden("You can only withdraw your own requests.")
        _require_pending(leave)
    get_tree().remove(f"leave_requests/{pid}/{request_id}")
    return jsonify({"success": True})


@bp.route("/api/leave-requests/<request_id>/approve", methods=["POST"])
@principal_required
def approve_leave_request(request_id):
    pid = principal_scope()
    leave = _load_request(pid, request_id)
    _require_pending(leave)
    data = json_body()
    days = data.get("daysDeducted", 0)
    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        raise ValidationError("daysDeducted must be a non-negative number.")
    leave.update({
        "status": "approved",
        "resolvedAt": now_iso(),
        "approvalBody": str(data.get("approvalBody") or leave["requestBody"]).strip(),
        "daysDeducted": days,
    })
    get_tree().set(f"leave_requests/{pid}/{request_id}", leave)
    return jsonify({"success": True, "request": leave})


@bp.route("/api/leave-requests/<request_id>/reject", methods=["POST"])
@principal_required
def reject_leave_request(request_id):
    pid = principal_scope()
    leave = _load_request(pid, request_id)
    _require_pending(leave)
    leave.update({
        "status": "rejected",
        "resolvedAt": now_iso(),
        "rejectionReason": str(json_body("rejectionReason")["rejectionReason"]).strip(),
    })
    get_tree().set(f"leave_requests/{pid}/{request_id}", leave)
    return jsonify({"success": True, "request": leave})


# ── Behavioral honor board ─────────────────────────────────

def _week_for_request() -> tuple[str, str]:
    raw = request.args.get("date")
    if not raw:
        return week_of(date.today())
    try:
        return week_of(datetime.strptime(raw, "%Y-%m-%d").date())
    except ValueError:
        raise ValidationError("date must be formatted YYYY-MM-DD.") from None


def _board_path(pid: str, stage: str, week_id: str) -> str:
    if stage not in GRADE_LEVELS:
        raise ValidationError("Unknown stage.")
    return f"behavioral_honor_board/{pid}/{stage}/{week_id}"


def _board(pid: str, stage: str, week_id: str, week_start: str) -> dict:
    board = get_tree().get(_board_path(pid, stage, week_id)) or {
        "id": week_id,
        "principalId": pid,
        "stage": stage,
        "weekStartDate": week_start,
    }
    board.setdefault("honoredStudents", {})
    for student in board["honoredStudents"].values():
        student.setdefault("votes", {})
    return board


@bp.route("/api/honor-board/<stage>")
@login_required
def get_honor_board(stage):
    pid = principal_scope()
    if current_user.is_student and stage != current_user.stage:
        raise Forbidden("You can only view your own stage's board.")
    week_id, week_start = _week_for_request()
    return jsonify({"board": _board(pid, stage, week_id, week_start), "criteria": list(HONOR_CRITERIA)})


@bp.route("/api/honor-board/<stage>/nominees", methods=["POST"])
@staff_required
def nominate_student(stage):
    pid = principal_scope()
    week_id, week_start = week_of(date.today())
    board = _board(pid, stage, week_id, week_start)
    cls, student = locate_student(pid, json_body("studentId")["studentId"])
    if cls.get("stage") != stage:
        raise ValidationError("The student is not in this stage.")
    if student["id"] in board["honoredStudents"]:
        raise Conflict("The student is already nominated this week.")
    nominee = {
        "studentId": student["id"],
        "studentName": student.get("name", ""),
        "classId": cls["id"],
        "section": cls.get("section", ""),
        "nominationTimestamp": now_iso(),
        "votes": {},
    }
    if student.get("photoUrl"):
        nominee["studentPhotoUrl"] = student["photoUrl"]
    board["honoredStudents"][student["id"]] = nominee
    get_tree().set(_board_path(pid, stage, week_id), board)
    return jsonify({"success": True, "nominee": nominee}), 201


def _current_nominee(pid: str, stage: str, student_id: str) -> tuple[str, dict]:
    week_id, week_start = week_of(date.today())
    board = _board(pid, stage, week_id, week_start)
    nominee = board["honoredStudents"].get(student_id)
    if not nominee:
        raise NotFound("The student is not nominated this week.")
    return _board_path(pid, stage, week_id), nominee


@bp.route("/api/honor-board/<stage>/nominees/<student_id>/vote", methods=["POST"])
@staff_required
def vote_for_student(stage, student_id):
    path, _ = _current_nominee(principal_scope(), stage, student_id)
    criteria = json_body("criteriaKeys")["criteriaKeys"]
    if not isinstance(criteria, list) or any(c not in HONOR_CRITERIA for c in criteria):
        raise ValidationError(f"criteriaKeys must be drawn from: {', '.join(HONOR_CRITERIA)}")
    vote = {
        "voterId": current_user.uid,
        "voterName": current_user.name,
        "criteriaKeys": list(dict.fromkeys(criteria)),
    }
    get_tree().set(f"{path}/honoredStudents/{student_id}/votes/{current_user.uid}", vote)
    return jsonify({"success": True, "vote": vote})


@bp.route("/api/honor-board/<stage>/nominees/<student_id>/vote", methods=["DELETE"])
@staff_required
def withdraw_vote(stage, student_id):
    path, nominee = _current_nominee(principal_scope(), stage, student_id)
    if current_user.uid not in nominee["votes"]:
        raise NotFound("You have not voted for this student.")
    get_tree().remove(f"{path}/honoredStudents/{student_id}/votes/{current_user.uid}")
    return jsonify({"success": True})


@bp.route("/api/honor-board/<stage>/nominees/<student_id>", methods=["DELETE"])
@board_manager_required
def remove_nominee(stage, student_id):
    path, _ = _current_nominee(principal_scope(), stage, student_id)
    get_tree().remove(f"{path}/honoredStudents/{student_id}")
    return jsonify({"success": True})
