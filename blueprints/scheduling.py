"""Weekly timetable, study plans, lesson swaps and yard duty."""

from __future__ import annotations

import logging
import uuid

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

import smart_scheduler
from errors import Conflict, Forbidden, NotFound, ValidationError
from extensions import limiter
from helpers import (
    json_body,
    principal_classes,
    principal_required,
    principal_scope,
    staff_required,
    teacher_required,
)
from school_config import GRADE_LEVELS, SCHOOL_DAYS, STAFF_ROLES, now_iso, simple_class_name
from smart_scheduler import InvalidTransition, next_swap_status
from tree_store import get_tree

logger = logging.getLogger(__name__)

bp = Blueprint("scheduling", __name__)

PLAN_TYPES = ("primary", "intermediate", "preparatory")


def _teachers_of(pid: str) -> list[dict]:
    return [
        u for u in get_tree().children("users")
        if u.get("principalId") == pid and u.get("role") in STAFF_ROLES
    ]


def _teacher(pid: str, uid: str) -> dict:
    user = get_tree().get(f"users/{uid}")
    if not user or user.get("principalId") != pid or user.get("role") != "teacher":
        raise NotFound("Teacher not found.")
    return user


def _check_day(day) -> str:
    if day not in SCHOOL_DAYS:
        raise ValidationError(f"day must be one of: {', '.join(SCHOOL_DAYS)}")
    return day


# ── Study plans ────────────────────────────────────────────

@bp.route("/api/study-plans")
@staff_required
def get_study_plans():
    return jsonify({"plans": get_tree().get(f"study_plans/{principal_scope()}") or {}})


@bp.route("/api/study-plans/<plan_type>", methods=["PUT"])
@principal_required
def save_study_plan(plan_type):
    if plan_type not in PLAN_TYPES:
        raise ValidationError(f"plan type must be one of: {', '.join(PLAN_TYPES)}")
    grades = json_body("grades")["grades"]
    if not isinstance(grades, dict):
        raise ValidationError("grades must be an object keyed by stage.")

    plan: dict = {"grades": {}}
    for stage, entry in grades.items():
        if stage not in GRADE_LEVELS:
            raise ValidationError(f"Unknown stage: {stage}")
        subjects = (entry or {}).get("subjects") or {}
        counts = {}
        for name, count in subjects.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValidationError(f"Weekly lessons for {name} must be a non-negative integer.")
            counts[name] = count
        plan["grades"][stage] = {"subjects": counts, "total": sum(counts.values())}

    get_tree().set(f"study_plans/{principal_scope()}/{plan_type}", plan)
    return jsonify({"success": True, "plan": plan})


# ── Teacher unavailability ─────────────────────────────────

@bp.route("/api/schedule/unavailability")
@staff_required
def get_unavailability():
    return jsonify({"unavailability": get_tree().get(f"teacher_unavailability/{principal_scope()}") or {}})


@bp.route("/api/schedule/unavailability/<teacher_id>", methods=["PUT"])
@staff_required
def set_unavailability(teacher_id):
    pid = principal_scope()
    if not current_user.is_principal and teacher_id != current_user.uid:
        raise Forbidden("You can only set your own unavailable days.")
    _teacher(pid, teacher_id)
    days = json_body().get("days") or []
    if not isinstance(days, list):
        raise ValidationError("days must be a list.")
    days = [_check_day(d) for d in dict.fromkeys(days)]
    get_tree().set(f"teacher_unavailability/{pid}/{teacher_id}", days)
    return jsonify({"success": True, "days": days})


# ── Timetable ──────────────────────────────────────────────

@bp.route("/api/schedule")
@login_required
def get_schedule():
    pid = principal_scope()
    schedule = get_tree().get(f"schedules/{pid}") or {}
    if current_user.is_student:
        # Students only see their own class column
        mine = simple_class_name(current_user.stage or "", current_user.section or "")
        schedule = {
            day: [
                {"period": p["period"], "assignments": {k: v for k, v in (p.get("assignments") or {}).items() if k == mine}}
                for p in periods or []
            ]
            for day, periods in schedule.items()
        }
    return jsonify({"schedule": schedule})


@bp.route("/api/schedule/generate", methods=["POST"])
@limiter.limit("10 per hour")
@principal_required
def generate_schedule():
    """Generate the whole week with Gemini, one grade and day at a time."""
    pid = principal_scope()
    data = json_body("periodsPerDay")
    days = data.get("days") or list(SCHOOL_DAYS)
    for day in days:
        _check_day(day)

    periods = data["periodsPerDay"]
    if isinstance(periods, int) and not isinstance(periods, bool):
        periods = {day: periods for day in days}
    if not isinstance(periods, dict) or any(
        isinstance(v, bool) or not isinstance(v, int) or not 1 <= v <= 10 for v in periods.values()
    ):
        raise ValidationError("periodsPerDay must be 1-10, per day or for every day.")

    classes = principal_classes(pid)
    if not classes:
        raise ValidationError("Add classes before generating a schedule.")
    tree = get_tree()
    plans = tree.get(f"study_plans/{pid}") or {}
    if not plans:
        raise ValidationError("Save a study plan before generating a schedule.")
    settings = tree.get(f"settings/{pid}") or {}

    schedule, failures = smart_scheduler.generate_week(
        classes,
        _teachers_of(pid),
        plans,
        tree.get(f"teacher_unavailability/{pid}") or {},
        periods,
        grade_periods=data.get("gradePeriods") or {},
        school_level=settings.get("schoolLevel"),
        days=days,
    )
    tree.set(f"schedules/{pid}", schedule)
    logger.info("Schedule generated for %s with %d failure(s)", pid, len(failures))
    return jsonify({"success": not failures, "schedule": schedule, "failures": failures})


@bp.route("/api/schedule/<day>/<int:period>", methods=["PUT"])
@principal_required
def edit_period(day, period):
    """Set or clear one class's lesson in a period."""
    pid = principal_scope()
    _check_day(day)
    data = json_body("classId")
    class_name = data["classId"]
    tree = get_tree()
    periods = tree.get(f"schedules/{pid}/{day}") or []
    index = next((i for i, p in enumerate(periods) if p.get("period") == period), None)
    if index is None:
        raise NotFound("Period not found.")

    path = f"schedules/{pid}/{day}/{index}/assignments/{class_name}"
    if data.get("subject"):
        assignment = {"subject": str(data["subject"]), "teacher": str(data.get("teacher") or "")}
        if assignment["teacher"]:
            busy = any(
                other != class_name and (a or {}).get("teacher") == assignment["teacher"]
                for other, a in (periods[index].get("assignments") or {}).items()
            )
            if busy:
                raise Conflict(f"{assignment['teacher']} already teaches in this period.")
        tree.set(path, assignment)
    else:
        assignment = None
        tree.remove(path)
    return jsonify({"success": True, "assignment": assignment})


@bp.route("/api/schedule", methods=["DELETE"])
@principal_required
def clear_schedule():
    get_tree().remove(f"schedules/{principal_scope()}")
    return jsonify({"success": True})


# ── Swap requests (lessons and yard duty) ──────────────────

def _swap_list(root: str) -> list[dict]:
    items = get_tree().children(root)
    if not current_user.is_principal:
        items = [r for r in items if current_user.uid in (r.get("requesterId"), r.get("responderId"))]
    items.sort(key=lambda r: r.get("createdAt", ""), reverse=True)
    return items


def _load_swap(root: str, request_id: str) -> dict:
    swap = get_tree().get(f"{root}/{request_id}")
    if not swap:
        raise NotFound("Swap request not found.")
    return swap


def _advance(swap: dict, action: str) -> dict:
    try:
        swap["status"] = next_swap_status(swap["status"], action)
    except InvalidTransition as e:
        raise Conflict(str(e)) from None
    swap["updatedAt"] = now_iso()
    return swap


def _respond(root: str, request_id: str) -> dict:
    swap = _load_swap(root, request_id)
    if swap.get("responderId") != current_user.uid:
        raise Forbidden("Only the other teacher can answer this request.")
    accept = json_body().get("accept")
    if not isinstance(accept, bool):
        raise ValidationError("accept must be true or false.")
    return _advance(swap, "accept" if accept else "decline")


def _decide(root: str, request_id: str) -> dict:
    swap = _load_swap(root, request_id)
    approve = json_body().get("approve")
    if not isinstance(approve, bool):
        raise ValidationError("approve must be true or false.")
    return _advance(swap, "approve" if approve else "reject")


def _lesson_slot(value) -> dict:
    if not isinstance(value, dict):
        raise ValidationError("Slots need classId, day and period.")
    try:
        return {"classId": str(value["classId"]), "day": _check_day(value["day"]), "period": int(value["period"])}
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Slots need classId, day and period.") from None


@bp.route("/api/schedule/swap-requests")
@staff_required
def list_swap_requests():
    return jsonify({"requests": _swap_list(f"swap_requests/{principal_scope()}")})


@bp.route("/api/schedule/swap-requests", methods=["POST"])
@teacher_required
def create_swap_request():
    pid = principal_scope()
    data = json_body("responderId", "originalSlot", "requestedSlot")
    responder = _teacher(pid, data["responderId"])
    if responder["id"] == current_user.uid:
        raise ValidationError("Choose another teacher.")
    original = _lesson_slot(data["originalSlot"])
    requested = _lesson_slot(data["requestedSlot"])

    schedule = get_tree().get(f"schedules/{pid}") or {}
    mine = smart_scheduler.find_slot(schedule, original)
    theirs = smart_scheduler.find_slot(schedule, requested)
    if not mine or mine.get("teacher") != current_user.name:
        raise ValidationError("The original slot is not one of your lessons.")
    if not theirs or theirs.get("teacher") != responder.get("name"):
        raise ValidationError("The requested slot is not one of that teacher's lessons.")

    rid = str(uuid.uuid4())
    swap = {
        "id": rid,
        "principalId": pid,
        "requesterId": current_user.uid,
        "requesterName": current_user.name,
        "responderId": responder["id"],
        "responderName": responder.get("name", ""),
        "originalSlot": original,
        "requestedSlot": requested,
        "status": "pending_teacher",
        "createdAt": now_iso(),
    }
    get_tree().set(f"swap_requests/{pid}/{rid}", swap)
    return jsonify({"success": True, "request": swap}), 201


@bp.route("/api/schedule/swap-requests/<request_id>/respond", methods=["POST"])
@teacher_required
def respond_swap_request(request_id):
    root = f"swap_requests/{principal_scope()}"
    swap = _respond(root, request_id)
    get_tree().set(f"{root}/{request_id}", swap)
    return jsonify({"success": True, "request": swap})


@bp.route("/api/schedule/swap-requests/<request_id>/decide", methods=["POST"])
@principal_required
def decide_swap_request(request_id):
    pid = principal_scope()
    root = f"swap_requests/{pid}"
    swap = _decide(root, request_id)
    updates = {f"{root}/{request_id}": swap}
    if swap["status"] == "approved":
        schedule = get_tree().get(f"schedules/{pid}") or {}
        mine = smart_scheduler.find_slot(schedule, swap["originalSlot"]) or {}
        theirs = smart_scheduler.find_slot(schedule, swap["requestedSlot"]) or {}
        if mine.get("teacher") != swap["requesterName"] or theirs.get("teacher") != swap["responderName"]:
            raise Conflict("The timetable changed since this request was made.")
        updates[f"schedules/{pid}"] = smart_scheduler.swap_slots(schedule, swap["originalSlot"], swap["requestedSlot"])
    get_tree().update("", updates)
    return jsonify({"success": True, "request": swap})


# ── Yard duty ──────────────────────────────────────────────

def _yard_duty(pid: str) -> dict:
    duty = get_tree().get(f"yard_duty/{pid}") or {"principalId": pid}
    duty.setdefault("locations", [])
    duty.setdefault("assignments", [])
    return duty


def _duty_teacher(duty: dict, slot: dict) -> str | None:
    return next(
        (a["teacherId"] for a in duty["assignments"]
         if a.get("day") == slot["day"] and a.get("locationId") == slot["locationId"]),
        None,
    )


def _duty_slot(duty: dict, value) -> dict:
    if not isinstance(value, dict) or not value.get("locationId"):
        raise ValidationError("Slots need day and locationId.")
    slot = {"day": _check_day(value.get("day")), "locationId": str(value["locationId"])}
    if not any(loc["id"] == slot["locationId"] for loc in duty["locations"]):
        raise ValidationError("Unknown yard duty location.")
    return slot


@bp.route("/api/yard-duty")
@staff_required
def get_yard_duty():
    return jsonify({"yardDuty": _yard_duty(principal_scope())})


@bp.route("/api/yard-duty/locations", methods=["POST"])
@principal_required
def add_duty_location():
    pid = principal_scope()
    duty = _yard_duty(pid)
    location = {"id": str(uuid.uuid4()), "name": str(json_body("name")["name"]).strip()}
    duty["locations"].append(location)
    get_tree().set(f"yard_duty/{pid}", duty)
    return jsonify({"success": True, "location": location}), 201


@bp.route("/api/yard-duty/locations/<location_id>", methods=["DELETE"])
@principal_required
def delete_duty_location(location_id):
    pid = principal_scope()
    duty = _yard_duty(pid)
    if not any(loc["id"] == location_id for loc in duty["locations"]):
        raise NotFound("Location not found.")
    duty["locations"] = [loc for loc in duty["locations"] if loc["id"] != location_id]
    duty["assignments"] = [a for a in duty["assignments"] if a.get("locationId") != location_id]
    get_tree().set(f"yard_duty/{pid}", duty)
    return jsonify({"success": True})


@bp.route("/api/yard-duty/assignments", methods=["PUT"])
@principal_required
def save_duty_assignments():
    """Replace the week's duty rota; one teacher per (day, location)."""
    pid = principal_scope()
    duty = _yard_duty(pid)
    raw = json_body().get("assignments") or []
    if not isinstance(raw, list):
        raise ValidationError("assignments must be a list.")
    teacher_ids = {t["id"] for t in _teachers_of(pid)}
    assignments, seen = [], set()
    for item in raw:
        slot = _duty_slot(duty, item)
        if item.get("teacherId") not in teacher_ids:
            raise ValidationError("Unknown teacher in yard duty assignments.")
        key = (slot["day"], slot["locationId"])
        if key in seen:
            raise ValidationError("Each location takes one teacher per day.")
        seen.add(key)
        assignments.append({**slot, "teacherId": item["teacherId"]})
    duty["assignments"] = assignments
    get_tree().set(f"yard_duty/{pid}", duty)
    return jsonify({"success": True, "yardDuty": duty})


@bp.route("/api/yard-duty/swap-requests")
@staff_required
def list_duty_swaps():
    return jsonify({"requests": _swap_list(f"yard_duty_swap_requests/{principal_scope()}")})


@bp.route("/api/yard-duty/swap-requests", methods=["POST"])
@staff_required
def create_duty_swap():
    pid = principal_scope()
    if current_user.is_principal:
        raise Forbidden("Principals assign yard duty directly.")
    data = json_body("responderId", "originalSlot", "requestedSlot")
    duty = _yard_duty(pid)
    original = _duty_slot(duty, data["originalSlot"])
    requested = _duty_slot(duty, data["requestedSlot"])
    if _duty_teacher(duty, original) != current_user.uid:
        raise ValidationError("The original slot is not your duty.")
    if _duty_teacher(duty, requested) != data["responderId"] or data["responderId"] == current_user.uid:
        raise ValidationError("The requested slot is not that teacher's duty.")

    rid = str(uuid.uuid4())
    swap = {
        "id": rid,
        "principalId": pid,
        "requesterId": current_user.uid,
        "requesterName": current_user.name,
        "responderId": data["responderId"],
        "originalSlot": original,
        "requestedSlot": requested,
        "status": "pending_teacher",
        "createdAt": now_iso(),
    }
    get_tree().set(f"yard_duty_swap_requests/{pid}/{rid}", swap)
    return jsonify({"success": True, "request": swap}), 201


@bp.route("/api/yard-duty/swap-requests/<request_id>/respond", methods=["POST"])
@staff_required
def respond_duty_swap(request_id):
    root = f"yard_duty_swap_requests/{principal_scope()}"
    swap = _respond(root, request_id)
    get_tree().set(f"{root}/{request_id}", swap)
    return jsonify({"success": True, "request": swap})


@bp.route("/api/yard-duty/swap-requests/<request_id>/decide", methods=["POST"])
@principal_required
def decide_duty_swap(request_id):
    pid = principal_scope()
    root = f"yard_duty_swap_requests/{pid}"
    swap = _decide(root, request_id)
    updates = {f"{root}/{request_id}": swap}
    if swap["status"] == "approved":
        duty = _yard_duty(pid)
        first, second = swap["originalSlot"], swap["requestedSlot"]
        a, b = _duty_teacher(duty, first), _duty_teacher(duty, second)
        if a != swap["requesterId"] or b != swap["responderId"]:
            raise Conflict("The duty rota changed since this request was made.")
        for item in duty["assignments"]:
            slot = (item["day"], item["locationId"])
            if slot == (first["day"], first["locationId"]):
                item["teacherId"] = b
            elif slot == (second["day"], second["locationId"]):
                item["teacherId"] = a
        updates[f"yard_duty/{pid}"] = duty
    get_tree().update("", updates)
    return jsonify({"success": True, "request": swap})
