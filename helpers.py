"""
Shared helpers used across blueprints.

Role decorators, principal scoping and request-body access live here so the
blueprints don't import each other.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import request
from flask_login import current_user

from auth import login_manager
from errors import Forbidden, NotFound, ValidationError
from school_config import CODE_ALPHABET
from tree_store import get_tree


def roles_required(*roles: str) -> Callable:
    """Decorator that requires the user to hold one of ``roles``."""
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated(*args: Any, **kwargs: Any) -> Any:
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if current_user.role not in roles:
                raise Forbidden("You do not have access to this resource.")
            return f(*args, **kwargs)
        return decorated
    return decorator


principal_required = roles_required("principal")
staff_required = roles_required("principal", "teacher", "counselor")
teacher_required = roles_required("teacher")
student_required = roles_required("student")
admin_required = roles_required("admin")


def principal_scope() -> str:
    """Principal id whose records the current user works with."""
    pid = current_user.principal_id
    if not pid:
        raise Forbidden("No school is associated with this account.")
    return pid


def json_body(*required: str) -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form.to_dict() if request.form else {}
    missing = [k for k in required if data.get(k) in (None, "", [])]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
    return data


def load_class(class_id: str, principal_id: str | None = None) -> dict:
    """Fetch a class record, enforcing that it belongs to ``principal_id``."""
    cls = get_tree().get(f"classes/{class_id}")
    if not cls or (principal_id and cls.get("principalId") != principal_id):
        raise NotFound("Class not found.")
    cls.setdefault("students", [])
    cls.setdefault("subjects", [])
    return cls


def principal_classes(principal_id: str) -> list[dict]:
    return [c for c in get_tree().children("classes") if c.get("principalId") == principal_id]


def find_student(cls: dict, student_id: str) -> dict:
    student = next((s for s in cls.get("students") or [] if s.get("id") == student_id), None)
    if not student:
        raise NotFound("Student not found.")
    return student


def find_subject(cls: dict, subject_id: str) -> dict:
    subject = next((s for s in cls.get("subjects") or [] if s.get("id") == subject_id), None)
    if not subject:
        raise NotFound("Subject not found.")
    return subject


def is_assigned(class_id: str, subject_id: str | None = None) -> bool:
    """Whether the current teacher teaches ``class_id`` (and ``subject_id``)."""
    return any(
        a.get("classId") == class_id and (subject_id is None or a.get("subjectId") == subject_id)
        for a in current_user.assignments
    )


def require_class_access(class_id: str, subject_id: str | None = None) -> dict:
    """Load a class the current staff member may work with."""
    cls = load_class(class_id, principal_scope())
    if current_user.role == "teacher" and not is_assigned(class_id, subject_id):
        raise Forbidden("You are not assigned to this class.")
    return cls


def locate_student(principal_id: str, student_id: str) -> tuple[dict, dict]:
    """Find a student (and their class) anywhere in the principal's classes."""
    for cls in principal_classes(principal_id):
        for student in cls.get("students") or []:
            if student.get("id") == student_id:
                return cls, student
    raise NotFound("Student not found.")


def generate_code(length: int = 8) -> str:
    """Random access code not already used by a user or a student."""
    tree = get_tree()
    taken = {u.get("code") for u in tree.children("users")}
    taken.update((tree.get("student_access_codes_individual") or {}).keys())
    while True:
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        if code not in taken:
            return code
