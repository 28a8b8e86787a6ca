"""Student affairs: registration, parent contacts, access codes, attendance, behavior and evaluations."""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timedelta
from urllib.parse import quote

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from flask_login import current_user, login_required

import blob_store
from ai_resilience import resilient_llm_call
from audit import log_event
from errors import Conflict, Forbidden, NotFound, ValidationError
from extensions import limiter
from helpers import (
    find_student,
    find_subject,
    generate_code,
    json_body,
    load_class,
    locate_student,
    principal_required,
    principal_scope,
    require_class_access,
    roles_required,
    staff_required,
    student_required,
)
from school_config import (
    ABSENCE_STATUSES,
    DEDUCTION_POINTS,
    EVALUATION_RATINGS,
    GRADE_LEVELS,
    now_iso,
)
from tree_store import get_tree, push_key

logger = logging.getLogger(__name__)

bp = Blueprint("students", __name__)

grading_staff_required = roles_required("principal", "teacher")

# Arabic weekday names as written by principals, Saturday first
_ARABIC_WEEKDAYS = {
    "السبت": 5, "الأحد": 6, "الاثنين": 0, "الثلاثاء": 1,
    "الأربعاء": 2, "الخميس": 3, "الجمعة": 4,
}


# ── Stage registration codes & announcements ───────────────

def _check_stage(stage: str) -> str:
    if stage not in GRADE_LEVELS:
        raise ValidationError("Unknown stage.")
    return stage


@bp.route("/api/registration-codes")
@principal_required
def list_registration_codes():
    return jsonify({"codes": get_tree().get(f"student_access_codes/{principal_scope()}") or {}})


@bp.route("/api/registration-codes/<stage>", methods=["PUT"])
@principal_required
def set_registration_code(stage):
    _check_stage(stage)
    code = str(json_body().get("code") or "").strip().upper()
    if not code:
        code = generate_code()
    if not code.isalnum():
        raise ValidationError("Codes may only contain letters and digits.")
    get_tree().set(f"student_access_codes/{principal_scope()}/{stage}", code)
    return jsonify({"success": True, "stage": stage, "code": code})


@bp.route("/api/registration-codes/<stage>", methods=["DELETE"])
@principal_required
def clear_registration_code(stage):
    get_tree().remove(f"student_access_codes/{principal_scope()}/{_check_stage(stage)}")
    return jsonify({"success": True})


@bp.route("/api/announcements")
@login_required
def list_announcements():
    announcements = get_tree().get(f"announcements/{principal_scope()}") or {}
    if current_user.is_student:
        one = announcements.get(current_user.stage)
        return jsonify({"announcements": [one] if one else []})
    return jsonify({"announcements": list(announcements.values())})


@bp.route("/api/announcements/<stage>", methods=["PUT"])
@principal_required
def publish_announcement(stage):
    pid = principal_scope()
    message = str(json_body("message")["message"]).strip()
    announcement = {
        "id": _check_stage(stage),
        "principalId": pid,
        "stage": stage,
        "message": message,
        "timestamp": now_iso(),
    }
    get_tree().set(f"announcements/{pid}/{stage}", announcement)
    return jsonify({"success": True, "announcement": announcement})


@bp.route("/api/announcements/<stage>", methods=["DELETE"])
@principal_required
def delete_announcement(stage):
    get_tree().remove(f"announcements/{principal_scope()}/{_check_stage(stage)}")
    return jsonify({"success": True})


# ── Registration submissions ───────────────────────────────

@bp.route("/api/registration/submissions", methods=["POST"])
@limiter.limit("10 per hour", methods=["POST"])
def submit_registration():
    """Public registration form, unlocked by a prior stage-code check."""
    info = flask_session.get("submission_info")
    if not info:
        raise Forbidden("Enter the registration code for your stage first.")
    if request.files or request.form:
        raw = request.form.get("formData") or "{}"
        try:
            form_data = json.loads(raw)
        except json.JSONDecodeError:
            raise ValidationError("formData must be a JSON object.") from None
        student_name = request.form.get("studentName", "")
    else:
        data = json_body()
        form_data = data.get("formData") or {}
        student_name = data.get("studentName", "")
    if not isinstance(form_data, dict):
        raise ValidationError("formData must be a JSON object.")
    student_name = str(student_name or form_data.get("studentName", "")).strip()
    if not student_name:
        raise ValidationError("Missing required field(s): studentName")

    pid = info["principalId"]
    sid = push_key()
    photo = request.files.get("studentPhoto")
    photo_record = blob_store.save(f"student_submissions/{pid}", photo, key=sid) if photo else None
    submission = {
        "id": sid,
        "principalId": pid,
        "studentName": student_name,
        "stage": info["stage"],
        "formData": {str(k): "" if v is None else str(v) for k, v in form_data.items()},
        "studentPhoto": photo_record["url"] if photo_record else None,
        "studentPhotoPath": photo_record["path"] if photo_record else None,
        "submittedAt": now_iso(),
        "status": "pending",
    }
    get_tree().set(f"student_submissions/{pid}/{sid}", submission)
    flask_session.pop("submission_info", None)
    logger.info("Registration submitted for principal %s stage %s", pid, info["stage"])
    return jsonify({"success": True, "id": sid}), 201


def _load_submission(pid: str, submission_id: str) -> dict:
    submission = get_tree().get(f"student_submissions/{pid}/{submission_id}")
    if not submission:
        raise NotFound("Submission not found.")
    return submission


@bp.route("/api/submissions")
@principal_required
def list_submissions():
    submissions = get_tree().children(f"student_submissions/{principal_scope()}")
    stage = request.args.get("stage")
    if stage:
        submissions = [s for s in submissions if s.get("stage") == stage]
    submissions.sort(key=lambda s: s.get("submittedAt", ""), reverse=True)
    return jsonify({
        "submissions": submissions,
        "pendingCount": sum(1 for s in submissions if s.get("status") == "pending"),
    })


@bp.route("/api/submissions/<submission_id>/viewed", methods=["POST"])
@principal_required
def mark_submission_viewed(submission_id):
    pid = principal_scope()
    _load_submission(pid, submission_id)
    get_tree().set(f"student_submissions/{pid}/{submission_id}/status", "viewed")
    return jsonify({"success": True})


@bp.route("/api/submissions/<submission_id>", methods=["PUT"])
@principal_required
def edit_submission(submission_id):
    pid = principal_scope()
    _load_submission(pid, submission_id)
    form_data = json_body("formData")["formData"]
    if not isinstance(form_data, dict):
        raise ValidationError("formData must be a JSON object.")
    cleaned = {str(k): "" if v is None else str(v) for k, v in form_data.items()}
    get_tree().set(f"student_submissions/{pid}/{submission_id}/formData", cleaned)
    return jsonify({"success": True, "formData": cleaned})


@bp.route("/api/submissions/<submission_id>", methods=["DELETE"])
@principal_required
def delete_submission(submission_id):
    pid = principal_scope()
    submission = _load_submission(pid, submission_id)
    blob_store.delete(submission.get("studentPhotoPath"))
    get_tree().remove(f"student_submissions/{pid}/{submission_id}")
    return jsonify({"success": True})


# ── Parent contacts ────────────────────────────────────────

def normalize_phone(phone: str) -> str:
    """Digits only, in international form with the 964 country code."""
    cleaned = re.sub(r"\D", "", phone or "")
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if not cleaned.startswith("964"):
        cleaned = "964" + cleaned
    return cleaned


@bp.route("/api/parent-contacts")
@principal_required
def list_parent_contacts():
    contacts = get_tree().get(f"parent_contacts/{principal_scope()}") or {}
    items = [{"id": cid, **c} for cid, c in contacts.items()]
    stage = request.args.get("stage")
    if stage:
        items = [c for c in items if c.get("stage") == stage]
    return jsonify({"contacts": sorted(items, key=lambda c: c.get("studentName", ""))})


@bp.route("/api/parent-contacts", methods=["POST"])
@principal_required
def add_parent_contact():
    pid = principal_scope()
    data = json_body("studentName", "parentPhone")
    phone = normalize_phone(str(data["parentPhone"]))
    if phone == "964":
        raise ValidationError("A valid phone number is required.")
    contact = {
        "principalId": pid,
        "studentName": str(data["studentName"]).strip(),
        "parentPhone": phone,
        "stage": data.get("stage", ""),
    }
    cid = get_tree().push(f"parent_contacts/{pid}", contact)
    return jsonify({"success": True, "contact": {"id": cid, **contact}}), 201


@bp.route("/api/parent-contacts/<contact_id>", methods=["DELETE"])
@principal_required
def delete_parent_contact(contact_id):
    path = f"parent_contacts/{principal_scope()}/{contact_id}"
    tree = get_tree()
    if not tree.exists(path):
        raise NotFound("Contact not found.")
    tree.remove(path)
    return jsonify({"success": True})


@bp.route("/api/parent-contacts/import", methods=["POST"])
@principal_required
def import_parent_contacts():
    """Create contacts from registration forms whose student is not listed yet."""
    pid = principal_scope()
    tree = get_tree()
    existing = {c.get("studentName") for c in tree.children(f"parent_contacts/{pid}")}
    updates = {}
    for sub in tree.children(f"student_submissions/{pid}"):
        name = sub.get("studentName")
        form = sub.get("formData") or {}
        phone = (form.get("fatherPhone") or form.get("motherPhone") or "").strip()
        if not name or name in existing or not phone:
            continue
        updates[push_key()] = {
            "principalId": pid,
            "studentName": name,
            "parentPhone": normalize_phone(phone),
            "stage": sub.get("stage", ""),
        }
        existing.add(name)
    if updates:
        tree.update(f"parent_contacts/{pid}", updates)
    return jsonify({"success": True, "imported": len(updates)})


@bp.route("/api/parent-contacts/whatsapp-links", methods=["POST"])
@principal_required
def whatsapp_links():
    data = json_body("contactIds", "message")
    message = str(data["message"]).strip()
    if not message:
        raise ValidationError("The message is empty.")
    contacts = get_tree().get(f"parent_contacts/{principal_scope()}") or {}
    links = []
    for cid in data["contactIds"]:
        contact = contacts.get(cid)
        if not contact:
            raise NotFound(f"Contact {cid} not found.")
        links.append({
            "id": cid,
            "studentName": contact.get("studentName"),
            "url": f"https://wa.me/{normalize_phone(contact['parentPhone'])}?text={quote(message)}",
        })
    return jsonify({"links": links})


def next_weekday_date(day_name: str, today: date | None = None) -> date | None:
    """Date of the next occurrence (after today) of an Arabic weekday name."""
    weekday = _ARABIC_WEEKDAYS.get(day_name)
    if weekday is None:
        return None
    today = today or date.today()
    ahead = (weekday - today.weekday()) % 7 or 7
    return today + timedelta(days=ahead)


def build_rephrase_prompt(message: str, today: date | None = None) -> str:
    date_context = ""
    day = next((d for d in _ARABIC_WEEKDAYS if d in message), None)
    if day:
        upcoming = next_weekday_date(day, today)
        date_context = (
            f" The user mentioned '{day}'. The calculated date for the upcoming {day} is "
            f"{upcoming.isoformat()}. Please incorporate this specific date into your response naturally."
        )
    return (
        "You are an eloquent and professional Iraqi school principal communicating with students' parents. "
        "Take the user's brief message and expand it into a complete, polite and formal announcement "
        "suitable for WhatsApp.\n"
        '- Add a professional Arabic opening (e.g., "تحية طيبة إلى أولياء الأمور الكرام") and a suitable '
        'closing (e.g., "مع خالص التقدير، إدارة المدرسة").\n'
        "- Elaborate on the message's core point and its importance for the student's success.\n"
        "- If the message is a simple statement, infer its purpose and build a full message around it.\n"
        + (f"-{date_context}\n" if date_context else "")
        + "- Maintain a formal but welcoming tone.\n"
        "- Your final output MUST be ONLY the enhanced Arabic message, without extra text or markdown.\n\n"
        f'Original brief message: "{message}"'
    )


@bp.route("/api/parent-contacts/rephrase", methods=["POST"])
@limiter.limit("20 per hour")
@principal_required
def rephrase_parent_message():
    message = str(json_body("message")["message"]).strip()
    text, _ = resilient_llm_call(build_rephrase_prompt(message))
    if not text.strip():
        raise ValidationError("The AI could not rephrase this message. Please try again.")
    return jsonify({"message": text.strip()})


# ── Individual student access codes ────────────────────────

def _codes_of(pid: str) -> dict:
    codes = get_tree().get("student_access_codes_individual") or {}
    return {code: rec for code, rec in codes.items() if rec.get("principalId") == pid}


def _code_limit(pid: str) -> int:
    principal = get_tree().get(f"users/{pid}") or {}
    return int(principal.get("studentCodeLimit", current_app.config["PRINCIPAL_STUDENT_CODE_LIMIT"]))


def _issue_codes(pid: str, cls: dict, student_ids: list[str]) -> dict[str, str]:
    """Give each student a fresh code in one multi-path update."""
    in_use = len(_codes_of(pid))
    new = sum(1 for s in cls["students"] if s["id"] in student_ids and not s.get("studentAccessCode"))
    if in_use + new > _code_limit(pid):
        raise Conflict("The student access code limit for this school has been reached.")

    issued: dict[str, str] = {}
    updates: dict = {}
    students = []
    for student in cls["students"]:
        if student["id"] in student_ids:
            if student.get("studentAccessCode"):
                updates[f"student_access_codes_individual/{student['studentAccessCode']}"] = None
            code = generate_code()
            while code in issued.values():
                code = generate_code()
            issued[student["id"]] = code
            updates[f"student_access_codes_individual/{code}"] = {
                "studentId": student["id"],
                "classId": cls["id"],
                "principalId": pid,
                "disabled": False,
            }
            student = {**student, "studentAccessCode": code}
        students.append(student)
    updates[f"classes/{cls['id']}/students"] = students
    get_tree().update("", updates)
    return issued


@bp.route("/api/access-codes")
@principal_required
def access_code_usage():
    pid = principal_scope()
    codes = _codes_of(pid)
    return jsonify({
        "used": len(codes),
        "disabled": sum(1 for c in codes.values() if c.get("disabled")),
        "limit": _code_limit(pid),
    })


@bp.route("/api/classes/<class_id>/students/<student_id>/access-code", methods=["POST"])
@principal_required
def issue_access_code(class_id, student_id):
    pid = principal_scope()
    cls = load_class(class_id, pid)
    find_student(cls, student_id)
    code = _issue_codes(pid, cls, [student_id])[student_id]
    log_event("student_code_issued", current_user.uid, student_id)
    return jsonify({"success": True, "code": code})


@bp.route("/api/classes/<class_id>/access-codes", methods=["POST"])
@principal_required
def issue_class_access_codes(class_id):
    """Issue codes to every student of a class that has none."""
    pid = principal_scope()
    cls = load_class(class_id, pid)
    pending = [s["id"] for s in cls["students"] if not s.get("studentAccessCode")]
    issued = _issue_codes(pid, cls, pending) if pending else {}
    return jsonify({"success": True, "codes": issued})


@bp.route("/api/access-codes/<code>", methods=["PUT"])
@principal_required
def toggle_access_code(code):
    record = _codes_of(principal_scope()).get(code)
    if not record:
        raise NotFound("Access code not found.")
    disabled = bool(json_body("disabled")["disabled"])
    get_tree().set(f"student_access_codes_individual/{code}/disabled", disabled)
    log_event("student_code_disabled" if disabled else "student_code_enabled", current_user.uid, record["studentId"])
    return jsonify({"success": True, "disabled": disabled})


@bp.route("/api/access-codes/<code>", methods=["DELETE"])
@principal_required
def revoke_access_code(code):
    pid = principal_scope()
    record = _codes_of(pid).get(code)
    if not record:
        raise NotFound("Access code not found.")
    updates = {f"student_access_codes_individual/{code}": None}
    cls = get_tree().get(f"classes/{record['classId']}")
    if cls:
        students = [
            {k: v for k, v in s.items() if k != "studentAccessCode"} if s.get("id") == record["studentId"] else s
            for s in cls.get("students") or []
        ]
        updates[f"classes/{cls['id']}/students"] = students
    get_tree().update("", updates)
    log_event("student_code_revoked", current_user.uid, record["studentId"])
    return jsonify({"success": True})


# ── Absences ───────────────────────────────────────────────

def _check_date(value: str) -> str:
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise ValidationError("Dates must be formatted YYYY-MM-DD.") from None
    return value


@bp.route("/api/classes/<class_id>/absences/<day>")
@staff_required
def get_absences(class_id, day):
    require_class_access(class_id)
    pid = principal_scope()
    return jsonify({"date": day, "records": get_tree().get(f"absences/{pid}/{_check_date(day)}/{class_id}") or {}})


@bp.route("/api/classes/<class_id>/absences/<day>", methods=["PUT"])
@staff_required
def record_absences(class_id, day):
    cls = require_class_access(class_id)
    pid = principal_scope()
    _check_date(day)
    records = json_body("records")["records"]
    if not isinstance(records, dict):
        raise ValidationError("records must map student ids to a status.")
    known = {s["id"] for s in cls["students"]}
    for sid, status in records.items():
        if sid not in known:
            raise NotFound(f"Student {sid} is not in this class.")
        if status not in ABSENCE_STATUSES:
            raise ValidationError(f"Invalid status {status!r}.")
    get_tree().update(f"absences/{pid}/{day}/{class_id}", records)
    return jsonify({"success": True, "recorded": len(records)})


def absence_summary(pid: str, student_id: str) -> dict:
    """Per-status counts and the dates a student was not present."""
    counts = {status: 0 for status in ABSENCE_STATUSES}
    days: list[dict] = []
    for day, classes in sorted((get_tree().get(f"absences/{pid}") or {}).items()):
        for records in (classes or {}).values():
            status = (records or {}).get(student_id)
            if status in counts:
                counts[status] += 1
                if status != "present":
                    days.append({"date": day, "status": status})
    return {"counts": counts, "days": days}


@bp.route("/api/students/<student_id>/absences")
@staff_required
def student_absences(student_id):
    pid = principal_scope()
    cls, _ = locate_student(pid, student_id)
    require_class_access(cls["id"])
    return jsonify(absence_summary(pid, student_id))


@bp.route("/api/student/absences")
@student_required
def my_absences():
    return jsonify(absence_summary(current_user.principal_id, current_user.uid))


# ── Behavior deductions ────────────────────────────────────

def _deductions(pid: str, student_id: str) -> list[dict]:
    items = get_tree().children(f"behavior_deductions/{pid}/{student_id}")
    return sorted(items, key=lambda d: d.get("timestamp", ""), reverse=True)


def _behavior_view(pid: str, student_id: str) -> dict:
    items = _deductions(pid, student_id)
    return {"deductions": items, "totalDeducted": sum(d.get("pointsDeducted", 0) for d in items)}


@bp.route("/api/students/<student_id>/deductions")
@staff_required
def list_deductions(student_id):
    pid = principal_scope()
    cls, _ = locate_student(pid, student_id)
    require_class_access(cls["id"])
    return jsonify(_behavior_view(pid, student_id))


@bp.route("/api/students/<student_id>/deductions", methods=["POST"])
@staff_required
def add_deduction(student_id):
    pid = principal_scope()
    cls, _ = locate_student(pid, student_id)
    require_class_access(cls["id"])
    data = json_body("reason")
    points = data.get("pointsDeducted")
    if points not in DEDUCTION_POINTS or isinstance(points, bool):
        raise ValidationError(f"pointsDeducted must be one of {', '.join(map(str, DEDUCTION_POINTS))}.")
    did = push_key()
    deduction = {
        "id": did,
        "principalId": pid,
        "studentId": student_id,
        "classId": cls["id"],
        "pointsDeducted": points,
        "reason": str(data["reason"]).strip(),
        "timestamp": now_iso(),
        "createdBy": current_user.uid,
    }
    get_tree().set(f"behavior_deductions/{pid}/{student_id}/{did}", deduction)
    return jsonify({"success": True, "deduction": deduction}), 201


@bp.route("/api/students/<student_id>/deductions/<deduction_id>", methods=["DELETE"])
@staff_required
def delete_deduction(student_id, deduction_id):
    pid = principal_scope()
    cls, _ = locate_student(pid, student_id)
    require_class_access(cls["id"])
    path = f"behavior_deductions/{pid}/{student_id}/{deduction_id}"
    tree = get_tree()
    if not tree.exists(path):
        raise NotFound("Deduction not found.")
    tree.remove(path)
    return jsonify({"success": True})


@bp.route("/api/student/behavior")
@student_required
def my_behavior():
    return jsonify(_behavior_view(current_user.principal_id, current_user.uid))


# ── Evaluations ────────────────────────────────────────────

@bp.route("/api/classes/<class_id>/subjects/<subject_id>/evaluations")
@grading_staff_required
def list_evaluations(class_id, subject_id):
    cls = require_class_access(class_id, subject_id)
    pid = principal_scope()
    tree = get_tree()
    result = {}
    for student in cls["students"]:
        evaluation = tree.get(f"student_evaluations/{pid}/{student['id']}/{subject_id}")
        if evaluation:
            result[student["id"]] = evaluation
    return jsonify({"evaluations": result, "ratings": EVALUATION_RATINGS})


@bp.route("/api/classes/<class_id>/subjects/<subject_id>/evaluations", methods=["PUT"])
@grading_staff_required
def save_evaluations(class_id, subject_id):
    cls = require_class_access(class_id, subject_id)
    subject = find_subject(cls, subject_id)
    pid = principal_scope()
    ratings = json_body("ratings")["ratings"]
    if not isinstance(ratings, dict):
        raise ValidationError("ratings must map student ids to a rating.")
    known = {s["id"] for s in cls["students"]}
    updates = {}
    for sid, rating in ratings.items():
        if sid not in known:
            raise NotFound(f"Student {sid} is not in this class.")
        if rating is None:
            updates[f"{sid}/{subject_id}"] = None
            continue
        if rating not in EVALUATION_RATINGS:
            raise ValidationError(f"Invalid rating {rating!r}.")
        updates[f"{sid}/{subject_id}"] = {
            "id": f"{sid}-{subject_id}",
            "studentId": sid,
            "principalId": pid,
            "classId": class_id,
            "subjectId": subject_id,
            "subjectName": subject["name"],
            "teacherId": current_user.uid,
            "teacherName": current_user.name,
            "rating": rating,
            "timestamp": now_iso(),
        }
    get_tree().update(f"student_evaluations/{pid}", updates)
    return jsonify({"success": True, "saved": len(updates)})


@bp.route("/api/student/evaluations")
@student_required
def my_evaluations():
    items = get_tree().children(f"student_evaluations/{current_user.principal_id}/{current_user.uid}")
    return jsonify({"evaluations": sorted(items, key=lambda e: e.get("subjectName", ""))})


@bp.route("/api/student/profile")
@student_required
def my_profile():
    cls = load_class(current_user.class_id)
    student = find_student(cls, current_user.uid)
    public = {k: v for k, v in student.items() if k not in ("studentAccessCode",)}
    return jsonify({
        "student": public,
        "class": {"id": cls["id"], "stage": cls.get("stage"), "section": cls.get("section"),
                  "subjects": cls["subjects"]},
    })

