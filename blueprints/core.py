"""School settings, staff accounts, classes, students, subjects and grade sheets."""

from __future__ import annotations

import uuid

from flask import Blueprint, current_app, jsonify
from flask_login import current_user, login_required

from audit import log_event, recent_events
from errors import Conflict, NotFound, ValidationError
from helpers import (
    admin_required,
    find_student,
    find_subject,
    generate_code,
    json_body,
    load_class,
    principal_classes,
    principal_required,
    principal_scope,
    require_class_access,
    roles_required,
    staff_required,
    teacher_required,
)
from school_config import (
    GRADE_LEVELS,
    SCHOOL_LEVELS,
    STAFF_ROLES,
    default_settings_for,
    now_iso,
    relevant_grade_levels,
)
from tree_store import InvalidPathError, check_key, get_tree

bp = Blueprint("core", __name__)

grading_staff_required = roles_required("principal", "teacher")

SETTINGS_FIELDS = {
    "schoolName", "principalName", "academicYear", "directorate",
    "supplementarySubjectsCount", "decisionPoints", "principalPhone",
    "schoolType", "schoolGender", "schoolLevel", "governorateCode",
    "schoolCode", "governorateName", "district", "subdistrict",
}

STUDENT_FIELDS = (
    "name", "registrationId", "birthDate", "examId",
    "yearsOfFailure", "motherName", "motherFatherName", "photoUrl",
)

MONTHLY_GRADE_FIELDS = ("october", "november", "december", "january", "february", "march", "april")
TEACHER_GRADE_FIELDS = frozenset((
    "firstSemMonth1", "firstSemMonth2", "midYear", "secondSemMonth1",
    "secondSemMonth2", "finalExam",
) + MONTHLY_GRADE_FIELDS)
PRINCIPAL_GRADE_FIELDS = frozenset((
    "firstTerm", "midYear", "secondTerm", "finalExam1st", "finalExam2nd",
) + MONTHLY_GRADE_FIELDS)


# ── Settings ───────────────────────────────────────────────

def effective_settings(principal_id: str, create: bool = False) -> dict:
    """Stored settings overlaid with the principal's school name and level."""
    tree = get_tree()
    principal = tree.get(f"users/{principal_id}") or {}
    settings = tree.get(f"settings/{principal_id}")
    if settings is None:
        settings = default_settings_for(principal, current_app.config["DEFAULT_ACADEMIC_YEAR"])
        if create:
            tree.set(f"settings/{principal_id}", settings)
    if principal.get("schoolName"):
        settings["schoolName"] = principal["schoolName"]
    if principal.get("schoolLevel"):
        settings["schoolLevel"] = principal["schoolLevel"]
    return settings


@bp.route("/api/settings")
@login_required
def get_settings():
    pid = principal_scope()
    settings = effective_settings(pid, create=current_user.is_principal)
    return jsonify({
        "settings": settings,
        "gradeLevels": relevant_grade_levels(settings.get("schoolLevel")),
    })


@bp.route("/api/settings", methods=["PUT"])
@principal_required
def update_settings():
    pid = principal_scope()
    data = json_body()
    unknown = set(data) - SETTINGS_FIELDS
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    if "schoolLevel" in data and data["schoolLevel"] not in SCHOOL_LEVELS:
        raise ValidationError("Invalid school level.")
    for key in ("supplementarySubjectsCount", "decisionPoints"):
        if key in data and (not isinstance(data[key], int) or data[key] < 0):
            raise ValidationError(f"{key} must be a non-negative integer.")

    settings = effective_settings(pid)
    settings.update(data)
    updates = {f"settings/{pid}": settings}
    # The principal record is the source of the school's name and level
    for key in ("schoolName", "schoolLevel"):
        if key in data:
            updates[f"users/{pid}/{key}"] = data[key]
    get_tree().update("", updates)
    return jsonify({"success": True, "settings": settings})


# ── Staff accounts (principal) ─────────────────────────────

def _staff_of(principal_id: str) -> list[dict]:
    return [
        u for u in get_tree().children("users")
        if u.get("principalId") == principal_id and u.get("role") in STAFF_ROLES
    ]


def _load_staff(principal_id: str, uid: str) -> dict:
    user = get_tree().get(f"users/{uid}")
    if not user or user.get("principalId") != principal_id or user.get("role") not in STAFF_ROLES:
        raise NotFound("User not found.")
    return user


def validate_assignments(principal_id: str, assignments) -> list[dict]:
    """Keep assignments that point at an existing class/subject of the principal."""
    if not isinstance(assignments, list):
        raise ValidationError("assignments must be a list.")
    classes = {c["id"]: c for c in principal_classes(principal_id)}
    result: list[dict] = []
    for a in assignments:
        class_id = (a or {}).get("classId")
        subject_id = (a or {}).get("subjectId")
        cls = classes.get(class_id)
        if not cls or not any(s.get("id") == subject_id for s in cls.get("subjects") or []):
            raise ValidationError(f"Unknown class/subject assignment: {class_id}/{subject_id}")
        entry = {"classId": class_id, "subjectId": subject_id}
        if entry not in result:
            result.append(entry)
    return result


@bp.route("/api/users")
@principal_required
def list_staff():
    staff = sorted(_staff_of(principal_scope()), key=lambda u: u.get("name", ""))
    return jsonify({"users": staff})


@bp.route("/api/users", methods=["POST"])
@principal_required
def create_staff():
    pid = principal_scope()
    data = json_body("name", "role")
    role = data["role"]
    if role not in STAFF_ROLES:
        raise ValidationError("role must be teacher or counselor.")
    uid = str(uuid.uuid4())
    user = {
        "id": uid,
        "role": role,
        "name": str(data["name"]).strip(),
        "principalId": pid,
        "code": generate_code(),
    }
    if role == "teacher":
        user["assignments"] = validate_assignments(pid, data.get("assignments") or [])
    get_tree().set(f"users/{uid}", user)
    log_event("staff_created", current_user.uid, f"{role}:{uid}")
    return jsonify({"success": True, "user": user}), 201


@bp.route("/api/users/<uid>", methods=["PUT"])
@principal_required
def update_staff(uid):
    pid = principal_scope()
    user = _load_staff(pid, uid)
    data = json_body()
    if "name" in data:
        if not str(data["name"]).strip():
            raise ValidationError("name cannot be empty.")
        user["name"] = str(data["name"]).strip()
    if "role" in data:
        if data["role"] not in STAFF_ROLES:
            raise ValidationError("role must be teacher or counselor.")
        user["role"] = data["role"]
    if "assignments" in data:
        user["assignments"] = validate_assignments(pid, data["assignments"])
    if user["role"] != "teacher":
        user.pop("assignments", None)
    for flag in ("disabled", "chatDisabled"):
        if flag in data:
            user[flag] = bool(data[flag])
    get_tree().set(f"users/{uid}", user)
    if "disabled" in data:
        log_event("staff_disabled" if user["disabled"] else "staff_enabled", current_user.uid, uid)
    return jsonify({"success": True, "user": user})


@bp.route("/api/users/<uid>/regenerate-code", methods=["POST"])
@principal_required
def regenerate_staff_code(uid):
    user = _load_staff(principal_scope(), uid)
    code = generate_code()
    get_tree().set(f"users/{uid}/code", code)
    log_event("staff_code_regenerated", current_user.uid, user["id"])
    return jsonify({"success": True, "code": code})


@bp.route("/api/users/<uid>", methods=["DELETE"])
@principal_required
def delete_staff(uid):
    _load_staff(principal_scope(), uid)
    get_tree().remove(f"users/{uid}")
    log_event("staff_deleted", current_user.uid, uid)
    return jsonify({"success": True})


# ── Principals (admin) ─────────────────────────────────────

def _principal_limit(value) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError("studentCodeLimit must be an integer.") from None
    if limit < 0:
        raise ValidationError("studentCodeLimit must be non-negative.")
    return limit


@bp.route("/api/admin/principals")
@admin_required
def list_principals():
    principals = [u for u in get_tree().children("users") if u.get("role") == "principal"]
    return jsonify({"principals": sorted(principals, key=lambda u: u.get("schoolName", ""))})


@bp.route("/api/admin/principals", methods=["POST"])
@admin_required
def create_principal():
    data = json_body("name", "schoolName")
    level = data.get("schoolLevel") or "متوسطة"
    if level not in SCHOOL_LEVELS:
        raise ValidationError("Invalid school level.")
    pid = str(uuid.uuid4())
    principal = {
        "id": pid,
        "role": "principal",
        "name": str(data["name"]).strip(),
        "schoolName": str(data["schoolName"]).strip(),
        "schoolLevel": level,
        "code": generate_code(),
        "studentCodeLimit": _principal_limit(data.get("studentCodeLimit", current_app.config["PRINCIPAL_STUDENT_CODE_LIMIT"])),
    }
    if data.get("email"):
        principal["email"] = str(data["email"]).strip()
    get_tree().set(f"users/{pid}", principal)
    log_event("principal_created", current_user.uid, pid)
    return jsonify({"success": True, "principal": principal}), 201


@bp.route("/api/admin/principals/<pid>", methods=["PUT"])
@admin_required
def update_principal(pid):
    tree = get_tree()
    principal = tree.get(f"users/{pid}")
    if not principal or principal.get("role") != "principal":
        raise NotFound("Principal not found.")
    data = json_body()
    for key in ("name", "schoolName", "email"):
        if key in data:
            principal[key] = str(data[key]).strip()
    if "schoolLevel" in data:
        if data["schoolLevel"] not in SCHOOL_LEVELS:
            raise ValidationError("Invalid school level.")
        principal["schoolLevel"] = data["schoolLevel"]
    if "studentCodeLimit" in data:
        principal["studentCodeLimit"] = _principal_limit(data["studentCodeLimit"])
    if "disabled" in data:
        principal["disabled"] = bool(data["disabled"])
        log_event("principal_disabled" if principal["disabled"] else "principal_enabled", current_user.uid, pid)
    tree.set(f"users/{pid}", principal)
    return jsonify({"success": True, "principal": principal})


@bp.route("/api/admin/audit")
@admin_required
def audit_trail():
    return jsonify({"events": recent_events(limit=200)})


# ── Classes ────────────────────────────────────────────────

def _subject_name(raw) -> str:
    """Subject names double as record keys (grade sheets, question banks)."""
    name = str(raw).strip()
    try:
        check_key(name)
    except InvalidPathError:
        raise ValidationError(f"Subject name {name!r} may not contain / . # $ [ ]") from None
    return name


def _class_sort_key(cls: dict):
    stage = cls.get("stage", "")
    order = GRADE_LEVELS.index(stage) if stage in GRADE_LEVELS else len(GRADE_LEVELS)
    return order, cls.get("section", "")


@bp.route("/api/classes")
@staff_required
def list_classes():
    classes = principal_classes(principal_scope())
    if current_user.role == "teacher":
        assigned = {a.get("classId") for a in current_user.assignments}
        classes = [c for c in classes if c["id"] in assigned]
    return jsonify({"classes": sorted(classes, key=_class_sort_key)})


@bp.route("/api/classes", methods=["POST"])
@principal_required
def create_class():
    pid = principal_scope()
    data = json_body("stage", "section")
    if data["stage"] not in GRADE_LEVELS:
        raise ValidationError("Unknown stage.")
    section = str(data["section"]).strip()
    if any(c.get("stage") == data["stage"] and c.get("section") == section for c in principal_classes(pid)):
        raise Conflict("This class already exists.")
    cid = str(uuid.uuid4())
    names = [_subject_name(n) for n in data.get("subjects") or [] if str(n).strip()]
    cls = {
        "id": cid,
        "stage": data["stage"],
        "section": section,
        "principalId": pid,
        "subjects": [{"id": str(uuid.uuid4()), "name": n} for n in dict.fromkeys(names)],
        "students": [],
    }
    get_tree().set(f"classes/{cid}", cls)
    return jsonify({"success": True, "class": cls}), 201


@bp.route("/api/classes/<class_id>")
@staff_required
def get_class(class_id):
    return jsonify({"class": require_class_access(class_id)})


@bp.route("/api/classes/<class_id>", methods=["PUT"])
@principal_required
def update_class(class_id):
    load_class(class_id, principal_scope())
    data = json_body()
    updates = {}
    if "stage" in data:
        if data["stage"] not in GRADE_LEVELS:
            raise ValidationError("Unknown stage.")
        updates["stage"] = data["stage"]
    if "section" in data:
        updates["section"] = str(data["section"]).strip()
    for key in ("ministerialDecisionPoints", "ministerialSupplementarySubjects"):
        if key in data:
            updates[key] = data[key]
    if updates:
        get_tree().update(f"classes/{class_id}", updates)
    return jsonify({"success": True, "class": load_class(class_id)})


def _strip_assignments(principal_id: str, class_id: str, subject_id: str | None = None) -> dict:
    """Multi-path updates removing teacher assignments to a class (or one subject)."""
    updates = {}
    for teacher in _staff_of(principal_id):
        assignments = teacher.get("assignments") or []
        kept = [
            a for a in assignments
            if not (a.get("classId") == class_id and (subject_id is None or a.get("subjectId") == subject_id))
        ]
        if len(kept) != len(assignments):
            updates[f"users/{teacher['id']}/assignments"] = kept
    return updates


@bp.route("/api/classes/<class_id>", methods=["DELETE"])
@principal_required
def delete_class(class_id):
    pid = principal_scope()
    cls = load_class(class_id, pid)
    updates = _strip_assignments(pid, class_id)
    updates[f"classes/{class_id}"] = None
    for student in cls["students"]:
        if student.get("studentAccessCode"):
            updates[f"student_access_codes_individual/{student['studentAccessCode']}"] = None
    get_tree().update("", updates)
    log_event("class_deleted", current_user.uid, class_id)
    return jsonify({"success": True})


# ── Subjects ───────────────────────────────────────────────

@bp.route("/api/classes/<class_id>/subjects", methods=["POST"])
@principal_required
def add_subject(class_id):
    cls = load_class(class_id, principal_scope())
    name = _subject_name(json_body("name")["name"])
    if any(s.get("name") == name for s in cls["subjects"]):
        raise Conflict("Subject already exists in this class.")
    subject = {"id": str(uuid.uuid4()), "name": name}
    get_tree().set(f"classes/{class_id}/subjects", cls["subjects"] + [subject])
    return jsonify({"success": True, "subject": subject}), 201


@bp.route("/api/classes/<class_id>/subjects/<subject_id>", methods=["DELETE"])
@principal_required
def remove_subject(class_id, subject_id):
    pid = principal_scope()
    cls = load_class(class_id, pid)
    find_subject(cls, subject_id)
    updates = _strip_assignments(pid, class_id, subject_id)
    updates[f"classes/{class_id}/subjects"] = [s for s in cls["subjects"] if s.get("id") != subject_id]
    get_tree().update("", updates)
    return jsonify({"success": True})


# ── Students ───────────────────────────────────────────────

def _student_fields(data: dict) -> dict:
    return {k: str(data[k]).strip() for k in STUDENT_FIELDS if data.get(k) is not None}


@bp.route("/api/classes/<class_id>/students", methods=["POST"])
@principal_required
def add_student(class_id):
    load_class(class_id, principal_scope())
    data = json_body("name")
    student = {"id": str(uuid.uuid4()), "grades": {}, **_student_fields(data)}

    def _append(students):
        return (students or []) + [student]

    get_tree().transaction(f"classes/{class_id}/students", _append)
    return jsonify({"success": True, "student": student}), 201


@bp.route("/api/classes/<class_id>/students/<student_id>", methods=["PUT"])
@principal_required
def update_student(class_id, student_id):
    cls = load_class(class_id, principal_scope())
    find_student(cls, student_id)
    fields = _student_fields(json_body())
    if "name" in fields and not fields["name"]:
        raise ValidationError("name cannot be empty.")

    def _apply(students):
        return [{**s, **fields} if s.get("id") == student_id else s for s in students or []]

    students = get_tree().transaction(f"classes/{class_id}/students", _apply)
    return jsonify({"success": True, "student": find_student({"students": students}, student_id)})


@bp.route("/api/classes/<class_id>/students/<student_id>", methods=["DELETE"])
@principal_required
def remove_student(class_id, student_id):
    cls = load_class(class_id, principal_scope())
    student = find_student(cls, student_id)
    updates = {f"classes/{class_id}/students": [s for s in cls["students"] if s.get("id") != student_id]}
    if student.get("studentAccessCode"):
        updates[f"student_access_codes_individual/{student['studentAccessCode']}"] = None
    get_tree().update("", updates)
    return jsonify({"success": True})


# ── Grade sheets ───────────────────────────────────────────

def _clean_grade(entry, allowed: frozenset) -> dict:
    if not isinstance(entry, dict):
        raise ValidationError("Each grade entry must be an object.")
    unknown = set(entry) - allowed
    if unknown:
        raise ValidationError(f"Unknown grade field(s): {', '.join(sorted(unknown))}")
    for key, value in entry.items():
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
            raise ValidationError(f"{key} must be a number between 0 and 100.")
    return entry


@bp.route("/api/classes/<class_id>/subjects/<subject_id>/grades", methods=["PUT"])
@grading_staff_required
def save_grades(class_id, subject_id):
    """Store raw grades for one subject: the principal's sheet or the teacher's."""
    cls = require_class_access(class_id, subject_id)
    subject = find_subject(cls, subject_id)
    grades = json_body("grades")["grades"]
    if not isinstance(grades, dict):
        raise ValidationError("grades must map student ids to grade entries.")
    field, allowed = (
        ("teacherGrades", TEACHER_GRADE_FIELDS) if current_user.role == "teacher"
        else ("grades", PRINCIPAL_GRADE_FIELDS)
    )
    known = {s["id"] for s in cls["students"]}
    missing = set(grades) - known
    if missing:
        raise NotFound(f"Unknown student(s): {', '.join(sorted(missing))}")
    cleaned = {sid: _clean_grade(entry, allowed) for sid, entry in grades.items()}

    def _apply(students):
        result = []
        for s in students or []:
            if s.get("id") in cleaned:
                sheet = dict(s.get(field) or {})
                sheet[subject["name"]] = {**(sheet.get(subject["name"]) or {}), **cleaned[s["id"]]}
                s = {**s, field: sheet}
            result.append(s)
        return result

    get_tree().transaction(f"classes/{class_id}/students", _apply)
    return jsonify({"success": True, "updated": len(cleaned)})


@bp.route("/api/classes/<class_id>/subjects/<subject_id>/submit-grades", methods=["POST"])
@teacher_required
def submit_grades(class_id, subject_id):
    """Send the teacher's sheet for a subject to the principal."""
    pid = principal_scope()
    cls = require_class_access(class_id, subject_id)
    subject = find_subject(cls, subject_id)
    sid = str(uuid.uuid4())
    submission = {
        "id": sid,
        "teacherId": current_user.uid,
        "classId": class_id,
        "subjectId": subject_id,
        "submittedAt": now_iso(),
        "grades": {
            s["id"]: (s.get("teacherGrades") or {}).get(subject["name"]) or {}
            for s in cls["students"]
        },
    }
    get_tree().set(f"teacher_submissions/{pid}/{sid}", submission)
    return jsonify({"success": True, "submission": submission}), 201


@bp.route("/api/teacher-submissions")
@principal_required
def list_teacher_submissions():
    submissions = get_tree().children(f"teacher_submissions/{principal_scope()}")
    submissions.sort(key=lambda s: s.get("submittedAt", ""), reverse=True)
    return jsonify({"submissions": submissions})


@bp.route("/api/teacher-submissions/<submission_id>", methods=["DELETE"])
@principal_required
def delete_teacher_submission(submission_id):
    path = f"teacher_submissions/{principal_scope()}/{submission_id}"
    tree = get_tree()
    if not tree.exists(path):
        raise NotFound("Submission not found.")
    tree.remove(path)
    return jsonify({"success": True})
