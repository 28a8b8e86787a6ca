"""
User Authentication — Flask-Login blueprint.

Staff and principals sign in with a personal access code stored on their
``users/{id}`` record; the administrator uses a code from configuration;
students sign in with an individual code issued by their principal.
Every request re-resolves the session user, so disabling an account or a
student code ends the session on the next call.
"""

from __future__ import annotations

import secrets

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from flask_login import LoginManager, UserMixin, current_user, login_required, login_user, logout_user

from audit import log_event
from extensions import limiter
from school_config import STAFF_ROLES
from tree_store import get_tree

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()

ADMIN_SESSION_ID = "admin"
ADMIN_USER_ID = "admin_user"


class User(UserMixin):
    """Session user resolved from the record tree.

    ``id`` is the Flask-Login session id ("admin", "staff:<uid>" or
    "student:<code>"); ``uid`` is the record id used everywhere else.
    """

    def __init__(self, session_id: str, uid: str, role: str, name: str, *,
                 principal_id: str | None = None, record: dict | None = None,
                 class_id: str | None = None, section: str | None = None,
                 stage: str | None = None, code: str | None = None):
        self.id = session_id
        self.uid = uid
        self.role = role
        self.name = name
        self.principal_id = principal_id
        self.record = record or {}
        self.class_id = class_id
        self.section = section
        self.stage = stage
        self.code = code

    @property
    def is_admin(self):
        return self.role == "admin"

    @property
    def is_principal(self):
        return self.role == "principal"

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    @property
    def is_student(self):
        return self.role == "student"

    @property
    def assignments(self) -> list[dict]:
        return list(self.record.get("assignments") or [])

    def to_dict(self) -> dict:
        data = {
            "id": self.uid,
            "role": self.role,
            "name": self.name,
            "principalId": self.principal_id,
        }
        if self.is_student:
            data.update({"classId": self.class_id, "section": self.section, "stage": self.stage})
        elif self.record:
            for key in ("schoolName", "schoolLevel", "assignments", "chatDisabled", "studentCodeLimit"):
                if key in self.record:
                    data[key] = self.record[key]
        return data

    # ── resolution ─────────────────────────────────────────

    @staticmethod
    def admin():
        return User(ADMIN_SESSION_ID, ADMIN_USER_ID, "admin", "المسؤول")

    @staticmethod
    def from_record(record: dict):
        role = record.get("role", "")
        principal_id = record["id"] if role == "principal" else record.get("principalId")
        return User(f"staff:{record['id']}", record["id"], role, record.get("name", ""),
                    principal_id=principal_id, record=record, code=record.get("code"))

    @staticmethod
    def get(session_id: str):
        if session_id == ADMIN_SESSION_ID:
            return User.admin() if current_app.config.get("ADMIN_LOGIN_CODE") else None
        kind, _, key = session_id.partition(":")
        if kind == "staff":
            record = get_tree().get(f"users/{key}")
            if not record or _staff_refusal(record):
                return None
            return User.from_record(record)
        if kind == "student":
            return resolve_student(key)
        return None


def _staff_refusal(record: dict) -> str | None:
    """Reason a staff/principal record may not sign in, or None."""
    if record.get("disabled"):
        return "تم تعطيل حسابك."
    if record.get("role") in STAFF_ROLES:
        principal = get_tree().get(f"users/{record.get('principalId')}") if record.get("principalId") else None
        if not principal or principal.get("disabled"):
            return "رمز الدخول غير صحيح."
    return None


def resolve_student(code: str):
    """Build the student session user for an individual access code."""
    tree = get_tree()
    code_data = tree.get(f"student_access_codes_individual/{code}")
    if not code_data or code_data.get("disabled"):
        return None
    principal = tree.get(f"users/{code_data.get('principalId')}")
    if not principal or principal.get("disabled"):
        return None
    class_data = tree.get(f"classes/{code_data.get('classId')}")
    if not class_data:
        return None
    student = next((s for s in class_data.get("students") or [] if s.get("id") == code_data.get("studentId")), None)
    if not student:
        return None
    return User(f"student:{code}", student["id"], "student", student.get("name", ""),
                principal_id=code_data["principalId"], class_id=class_data["id"],
                section=class_data.get("section"), stage=class_data.get("stage"), code=code)


@login_manager.user_loader
def load_user(session_id):
    return User.get(session_id)


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"error": "Authentication required."}), 401


def seed_bootstrap_principal() -> None:
    """Create the configured principal record if it does not exist yet."""
    cfg = current_app.config
    code = cfg.get("PRINCIPAL_LOGIN_CODE")
    if not code:
        return
    tree = get_tree()
    pid = cfg.get("PRINCIPAL_ID", "principal_user_01")
    if tree.exists(f"users/{pid}"):
        return
    tree.set(f"users/{pid}", {
        "id": pid,
        "role": "principal",
        "name": cfg.get("PRINCIPAL_NAME", ""),
        "schoolName": cfg.get("SCHOOL_NAME", ""),
        "schoolLevel": cfg.get("SCHOOL_LEVEL", "متوسطة"),
        "code": code,
        "studentCodeLimit": cfg.get("PRINCIPAL_STUDENT_CODE_LIMIT", 999999),
    })
    current_app.logger.info("Seeded bootstrap principal %s", pid)


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per 15 minutes", methods=["POST"])
def login():
    code = str(_payload().get("code", "")).strip()
    if not code:
        return jsonify({"error": "رمز الدخول مطلوب."}), 400

    admin_code = current_app.config.get("ADMIN_LOGIN_CODE", "")
    if admin_code and secrets.compare_digest(code, admin_code):
        user = User.admin()
        login_user(user, remember=True)
        log_event("login_success", user.uid, "role=admin")
        return jsonify({"success": True, "user": user.to_dict()})

    record = next(
        (u for u in get_tree().children("users")
         if u.get("code") == code and u.get("role") in ("principal",) + STAFF_ROLES),
        None,
    )
    if not record:
        log_event("login_failed", None, "unknown code")
        return jsonify({"error": "رمز الدخول غير صحيح. يرجى التأكد من الرمز والمحاولة مرة أخرى."}), 401

    refusal = _staff_refusal(record)
    if refusal:
        log_event("login_refused", record["id"], refusal)
        return jsonify({"error": refusal}), 403

    user = User.from_record(record)
    login_user(user, remember=True)
    log_event("login_success", user.uid, f"role={user.role}")
    return jsonify({"success": True, "user": user.to_dict()})


@auth_bp.route("/login/student", methods=["POST"])
@limiter.limit("10 per 15 minutes", methods=["POST"])
def login_student():
    code = str(_payload().get("code", "")).strip()
    user = resolve_student(code) if code else None
    if not user:
        log_event("student_login_failed", None)
        return jsonify({"error": "رمز الدخول غير صحيح أو معطل."}), 401
    login_user(user, remember=True)
    log_event("login_success", user.uid, "role=student")
    return jsonify({"success": True, "user": user.to_dict()})


@auth_bp.route("/registration/check-code", methods=["POST"])
@limiter.limit("10 per 15 minutes", methods=["POST"])
def check_submission_code():
    """Match a stage registration code and remember it for the form submit."""
    code = str(_payload().get("code", "")).strip().upper()
    if code:
        for principal_id, stage_codes in (get_tree().get("student_access_codes") or {}).items():
            for stage, stage_code in (stage_codes or {}).items():
                if stage_code == code:
                    info = {"principalId": principal_id, "stage": stage}
                    flask_session["submission_info"] = info
                    return jsonify({"success": True, **info})
    flask_session.pop("submission_info", None)
    return jsonify({"success": False, "error": "رمز التسجيل غير صحيح."}), 404


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    log_event("logout", current_user.uid)
    logout_user()
    flask_session.pop("submission_info", None)
    return jsonify({"success": True})


@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
