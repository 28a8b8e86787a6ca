"""Homework: teacher assignments, student submissions, reviews and the hall of fame."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

import blob_store
from errors import Conflict, Forbidden, NotFound, ValidationError
from helpers import (
    find_subject,
    is_assigned,
    json_body,
    load_class,
    principal_scope,
    roles_required,
    student_required,
    teacher_required,
)
from school_config import AWARD_DEFINITIONS, now_iso, now_ms, parse_local_datetime
from tree_store import get_tree, push_key

logger = logging.getLogger(__name__)

bp = Blueprint("homework", __name__)

homework_staff_required = roles_required("principal", "teacher")


def parse_deadline(value: str) -> datetime:
    try:
        return parse_local_datetime(value)
    except ValueError:
        raise ValidationError("deadline must be an ISO date/time.") from None


def earned_awards(total_completed: int) -> list[dict]:
    return [a for a in AWARD_DEFINITIONS if total_completed >= a["minCompletions"]]


def next_award(total_completed: int) -> dict | None:
    return next((a for a in AWARD_DEFINITIONS if total_completed < a["minCompletions"]), None)


def _payload() -> tuple[dict, list]:
    """Form fields (multipart) or JSON body, plus uploaded files."""
    if request.files or request.form:
        data = request.form.to_dict()
        for key in ("classIds", "texts"):
            if key in request.form:
                data[key] = request.form.getlist(key)
        return data, request.files.getlist("attachments") or request.files.getlist("attachment")
    return json_body(), []


def _load_homework(pid: str, homework_id: str) -> dict:
    hw = get_tree().get(f"homework/{pid}/{homework_id}")
    if not hw:
        raise NotFound("Homework not found.")
    hw.setdefault("classIds", [])
    hw.setdefault("attachments", [])
    hw.setdefault("texts", [])
    return hw


def _require_owner(hw: dict) -> None:
    if current_user.is_principal:
        return
    if hw.get("teacherId") != current_user.uid:
        raise Forbidden("This homework belongs to another teacher.")


def _submissions_for(pid: str, homework_id: str) -> list[dict]:
    result = []
    for per_student in (get_tree().get(f"homework_submissions/{pid}") or {}).values():
        submission = (per_student or {}).get(homework_id)
        if submission:
            result.append(submission)
    return sorted(result, key=lambda s: s.get("submittedAt", ""))


# ── Teacher: create / list / delete ────────────────────────

@bp.route("/api/homework", methods=["POST"])
@teacher_required
def create_homework():
    pid = principal_scope()
    data, files = _payload()
    for key in ("title", "subjectId", "deadline"):
        if not data.get(key):
            raise ValidationError(f"Missing required field(s): {key}")
    class_ids = [c for c in data.get("classIds") or [] if c]
    if not class_ids:
        raise ValidationError("Choose at least one class.")

    # The subject is picked in the first class; other classes must teach it under the same name
    first = load_class(class_ids[0], pid)
    subject = find_subject(first, data["subjectId"])
    for class_id in class_ids:
        cls = first if class_id == first["id"] else load_class(class_id, pid)
        match = next((s for s in cls["subjects"] if s.get("name") == subject["name"]), None)
        if not match or not is_assigned(class_id, match["id"]):
            raise Forbidden(f"You do not teach {subject['name']} in class {class_id}.")

    hid = str(uuid.uuid4())
    attachments = [blob_store.save(f"homework/{pid}/{hid}", f) for f in files if f and f.filename]
    texts = data.get("texts") or []
    if isinstance(texts, str):
        texts = [texts]
    homework = {
        "id": hid,
        "principalId": pid,
        "teacherId": current_user.uid,
        "classIds": class_ids,
        "subjectId": subject["id"],
        "subjectName": subject["name"],
        "title": str(data["title"]).strip(),
        "notes": str(data.get("notes") or "").strip(),
        "deadline": parse_deadline(data["deadline"]).isoformat(),
        "texts": [str(t) for t in texts if str(t).strip()],
        "attachments": attachments,
        "createdAt": now_iso(),
    }
    get_tree().set(f"homework/{pid}/{hid}", homework)
    logger.info("Homework %s created by %s for %d class(es)", hid, current_user.uid, len(class_ids))
    return jsonify({"success": True, "homework": homework}), 201


@bp.route("/api/homework")
@login_required
def list_homework():
    pid = principal_scope()
    tree = get_tree()
    items = tree.children(f"homework/{pid}")
    if current_user.is_student:
        mine = tree.get(f"homework_submissions/{pid}/{current_user.uid}") or {}
        items = [
            {**hw, "submission": mine.get(hw["id"])}
            for hw in items if current_user.class_id in (hw.get("classIds") or [])
        ]
    elif current_user.role == "teacher":
        items = [hw for hw in items if hw.get("teacherId") == current_user.uid]
    elif not current_user.is_principal:
        raise Forbidden("You do not have access to homework.")
    items.sort(key=lambda hw: hw.get("createdAt", ""), reverse=True)
    return jsonify({"homework": items})


@bp.route("/api/homework/<homework_id>")
@homework_staff_required
def get_homework(homework_id):
    pid = principal_scope()
    hw = _load_homework(pid, homework_id)
    _require_owner(hw)
    return jsonify({"homework": hw, "submissions": _submissions_for(pid, homework_id)})


@bp.route("/api/homework/<homework_id>", methods=["DELETE"])
@homework_staff_required
def delete_homework(homework_id):
    pid = principal_scope()
    hw = _load_homework(pid, homework_id)
    _require_owner(hw)
    submissions = _submissions_for(pid, homework_id)
    blob_store.delete_all(hw["attachments"])
    for submission in submissions:
        blob_store.delete_all(submission.get("attachments"))

    updates = {f"homework/{pid}/{homework_id}": None}
    for submission in submissions:
        updates[f"homework_submissions/{pid}/{submission['studentId']}/{homework_id}"] = None
    get_tree().update("", updates)
    logger.info("Homework %s deleted with %d submission(s)", homework_id, len(submissions))
    return jsonify({"success": True})


# ── Student: submit ────────────────────────────────────────

@bp.route("/api/homework/<homework_id>/submission", methods=["POST"])
@student_required
def submit_homework(homework_id):
    pid = principal_scope()
    hw = _load_homework(pid, homework_id)
    if current_user.class_id not in hw["classIds"]:
        raise NotFound("Homework not found.")
    if datetime.now() > parse_deadline(hw["deadline"]):
        raise Conflict("The deadline for this homework has passed.")

    path = f"homework_submissions/{pid}/{current_user.uid}/{homework_id}"
    tree = get_tree()
    existing = tree.get(path)
    if existing and existing.get("status") != "pending":
        raise Conflict("This homework has already been reviewed.")

    if request.files or request.form:
        text = request.form.get("text", "")
        upload = request.files.get("attachment")
    else:
        text = json_body().get("text", "")
        upload = None
    text = str(text or "").strip()
    if not text and not upload:
        raise ValidationError("Write an answer or attach a file.")

    if upload:
        new = blob_store.save(f"homework_submissions/{pid}/{current_user.uid}/{homework_id}", upload)
        attachments = [{k: new[k] for k in ("name", "url", "type", "path")}]
        if existing:
            blob_store.delete_all(existing.get("attachments"))
    else:
        attachments = (existing or {}).get("attachments") or []

    submission = {
        "id": (existing or {}).get("id") or str(uuid.uuid4()),
        "homeworkId": homework_id,
        "studentId": current_user.uid,
        "studentName": current_user.name,
        "classId": current_user.class_id,
        "submittedAt": now_iso(),
        "texts": [text],
        "attachments": attachments,
        "status": "pending",
    }
    tree.set(path, submission)
    return jsonify({"success": True, "submission": submission}), 200 if existing else 201


# ── Teacher: review ────────────────────────────────────────

@bp.route("/api/homework/<homework_id>/submissions/<student_id>/review", methods=["POST"])
@homework_staff_required
def review_submission(homework_id, student_id):
    pid = principal_scope()
    hw = _load_homework(pid, homework_id)
    _require_owner(hw)
    tree = get_tree()
    path = f"homework_submissions/{pid}/{student_id}/{homework_id}"
    submission = tree.get(path)
    if not submission:
        raise NotFound("Submission not found.")
    if submission.get("status") != "pending":
        raise Conflict("This submission has already been reviewed.")

    data = json_body("status")
    status = data["status"]
    if status not in ("accepted", "rejected"):
        raise ValidationError("status must be accepted or rejected.")

    reviewed = {**submission, "status": status, "reviewedAt": now_iso()}
    updates: dict = {path: reviewed}
    if status == "rejected":
        reason = str(data.get("rejectionReason") or "").strip()
        if not reason:
            raise ValidationError("A rejection needs a reason.")
        reviewed["rejectionReason"] = reason
        message = f'تم رفض واجب "{hw["title"]}". السبب: {reason}'
    else:
        progress = tree.get(f"homework_progress/{pid}/{student_id}") or {}
        month = datetime.now().strftime("%Y-%m")
        monthly = dict(progress.get("monthlyCompleted") or {})
        monthly[month] = {"count": (monthly.get(month) or {}).get("count", 0) + 1, "lastTimestamp": now_ms()}
        updates[f"homework_progress/{pid}/{student_id}"] = {
            "totalCompleted": progress.get("totalCompleted", 0) + 1,
            "monthlyCompleted": monthly,
        }
        message = f'تم قبول واجب "{hw["title"]}". أحسنت!'

    updates[f"student_notifications/{pid}/{student_id}/{push_key()}"] = {
        "studentId": student_id,
        "message": message,
        "timestamp": now_iso(),
        "isRead": False,
    }
    tree.update("", updates)
    return jsonify({"success": True, "submission": reviewed})


# ── Progress & hall of fame ────────────────────────────────

@bp.route("/api/student/homework-progress")
@student_required
def my_progress():
    progress = get_tree().get(f"homework_progress/{current_user.principal_id}/{current_user.uid}") or {}
    total = progress.get("totalCompleted", 0)
    return jsonify({
        "totalCompleted": total,
        "monthlyCompleted": progress.get("monthlyCompleted") or {},
        "awards": earned_awards(total),
        "nextAward": next_award(total),
    })


@bp.route("/api/homework/hall-of-fame")
@login_required
def hall_of_fame():
    """Students ranked by accepted homework, overall or for ?month=YYYY-MM."""
    pid = principal_scope()
    month = request.args.get("month")
    tree = get_tree()
    names: dict[str, tuple[str, dict]] = {}
    for cls in tree.children("classes"):
        if cls.get("principalId") != pid:
            continue
        for student in cls.get("students") or []:
            names[student["id"]] = (student.get("name", ""), cls)

    ranking = []
    for student_id, progress in (tree.get(f"homework_progress/{pid}") or {}).items():
        if student_id not in names:
            continue
        total = progress.get("totalCompleted", 0)
        score = ((progress.get("monthlyCompleted") or {}).get(month) or {}).get("count", 0) if month else total
        if score <= 0:
            continue
        name, cls = names[student_id]
        ranking.append({
            "studentId": student_id,
            "studentName": name,
            "classId": cls["id"],
            "stage": cls.get("stage"),
            "section": cls.get("section"),
            "completed": score,
            "totalCompleted": total,
            "awards": earned_awards(total),
        })
    ranking.sort(key=lambda r: (-r["completed"], r["studentName"]))
    return jsonify({"ranking": ranking[:50], "awardDefinitions": AWARD_DEFINITIONS})
