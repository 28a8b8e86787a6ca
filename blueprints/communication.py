"""Staff/student chat, student notifications and administrator broadcasts."""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

import blob_store
from errors import Forbidden, NotFound, ValidationError
from helpers import (
    admin_required,
    find_subject,
    is_assigned,
    json_body,
    load_class,
    locate_student,
    principal_scope,
    staff_required,
    student_required,
)
from school_config import now_iso, now_ms
from tree_store import get_tree, push_key

logger = logging.getLogger(__name__)

bp = Blueprint("communication", __name__)

NOTIFICATION_SCOPES = ("all_principals", "all_teachers")


# ── Conversation ids & access ──────────────────────────────

def direct_conversation_id(staff_id: str, student_id: str, principal: bool = False) -> str:
    prefix = "p" if principal else "t"
    return f"{prefix}_{staff_id}__s_{student_id}"


def group_conversation_id(teacher_id: str, class_id: str, subject_id: str) -> str:
    return f"group_t_{teacher_id}_c_{class_id}_s_{subject_id}"


def _load_conversation(pid: str, conv_id: str) -> dict:
    conv = get_tree().get(f"conversations/{pid}/{conv_id}")
    if not conv:
        raise NotFound("Conversation not found.")
    return conv


def _staff_can_see(conv: dict) -> bool:
    if current_user.is_principal:
        return True
    if conv.get("teacherId") == current_user.uid:
        return True
    return bool(conv.get("classId")) and is_assigned(conv["classId"])


def _student_can_see(conv: dict) -> bool:
    if conv.get("classId"):
        return conv["classId"] == current_user.class_id
    return conv.get("studentId") == current_user.uid


def _authorize(conv: dict) -> None:
    allowed = _student_can_see(conv) if current_user.is_student else _staff_can_see(conv)
    if not allowed:
        raise Forbidden("You are not a participant in this conversation.")


def _unread_for_me(conv: dict) -> bool:
    if current_user.is_student:
        return bool(conv.get("unreadByStudent")) and not conv.get("classId")
    return bool(conv.get("unreadByStaff"))


# ── Staff: listing & opening conversations ─────────────────

@bp.route("/api/conversations")
@staff_required
def list_conversations():
    pid = principal_scope()
    include_archived = request.args.get("archived") in ("1", "true")
    convs = [
        c for c in get_tree().children(f"conversations/{pid}")
        if _staff_can_see(c) and (include_archived or not c.get("isArchived"))
    ]
    convs.sort(key=lambda c: c.get("lastMessageTimestamp", 0), reverse=True)
    return jsonify({
        "conversations": convs,
        "unreadCount": sum(1 for c in convs if c.get("unreadByStaff")),
    })


@bp.route("/api/conversations", methods=["POST"])
@staff_required
def open_direct_conversation():
    """Open (or return) the 1-on-1 conversation with a student."""
    pid = principal_scope()
    data = json_body("studentId")
    cls, student = locate_student(pid, data["studentId"])
    subject_name = ""
    if current_user.role == "teacher":
        subject_id = data.get("subjectId")
        if not subject_id or not is_assigned(cls["id"], subject_id):
            raise Forbidden("You are not assigned to this student's class and subject.")
        subject_name = find_subject(cls, subject_id)["name"]
    if not student.get("studentAccessCode"):
        raise ValidationError("This student has no access code and cannot receive messages.")

    conv_id = direct_conversation_id(current_user.uid, student["id"], principal=current_user.is_principal)
    tree = get_tree()
    conv = tree.get(f"conversations/{pid}/{conv_id}")
    if not conv:
        conv = {
            "id": conv_id,
            "principalId": pid,
            "teacherId": current_user.uid,
            "studentId": student["id"],
            "studentName": student.get("name", ""),
            "staffName": current_user.name,
            "subjectName": subject_name,
            "lastMessageText": "",
            "lastMessageTimestamp": now_ms(),
            "unreadByStudent": False,
            "unreadByStaff": False,
            "isArchived": False,
            "chatDisabled": False,
        }
        tree.set(f"conversations/{pid}/{conv_id}", conv)
    return jsonify({"conversation": conv})


@bp.route("/api/conversations/group", methods=["POST"])
@staff_required
def open_group_conversation():
    if current_user.role != "teacher":
        raise Forbidden("Only teachers open class group chats.")
    pid = principal_scope()
    data = json_body("classId", "subjectId")
    if not is_assigned(data["classId"], data["subjectId"]):
        raise Forbidden("You are not assigned to this class and subject.")
    cls = load_class(data["classId"], pid)
    subject = find_subject(cls, data["subjectId"])

    conv_id = group_conversation_id(current_user.uid, cls["id"], subject["id"])
    tree = get_tree()
    conv = tree.get(f"conversations/{pid}/{conv_id}")
    if not conv:
        conv = {
            "id": conv_id,
            "principalId": pid,
            "teacherId": current_user.uid,
            "classId": cls["id"],
            "groupName": f"مجموعة {subject['name']}",
            "staffName": current_user.name,
            "subjectName": subject["name"],
            "lastMessageText": "",
            "lastMessageTimestamp": now_ms(),
            "unreadByStaff": False,
            "isArchived": False,
            "chatDisabled": False,
        }
        tree.set(f"conversations/{pid}/{conv_id}", conv)
    return jsonify({"conversation": conv})


@bp.route("/api/conversations/<conv_id>", methods=["PUT"])
@staff_required
def update_conversation(conv_id):
    """Archive a conversation or toggle whether the student may write."""
    pid = principal_scope()
    conv = _load_conversation(pid, conv_id)
    if not _staff_can_see(conv):
        raise Forbidden("You are not a participant in this conversation.")
    data = json_body()
    updates = {k: bool(data[k]) for k in ("isArchived", "chatDisabled") if k in data}
    if not updates:
        raise ValidationError("Nothing to update.")
    get_tree().update(f"conversations/{pid}/{conv_id}", updates)
    return jsonify({"success": True, "conversation": {**conv, **updates}})


# ── Messages ───────────────────────────────────────────────

@bp.route("/api/conversations/<conv_id>/messages")
@login_required
def list_messages(conv_id):
    pid = principal_scope()
    conv = _load_conversation(pid, conv_id)
    _authorize(conv)
    tree = get_tree()
    messages = sorted(tree.children(f"messages/{conv_id}"), key=lambda m: m.get("timestamp", 0))
    if current_user.is_student:
        if conv.get("unreadByStudent"):
            tree.set(f"conversations/{pid}/{conv_id}/unreadByStudent", False)
    elif conv.get("unreadByStaff"):
        tree.set(f"conversations/{pid}/{conv_id}/unreadByStaff", False)
    return jsonify({"conversation": conv, "messages": messages})


def _student_notification_updates(pid: str, conv: dict, sender_name: str) -> dict:
    """One notification per student of the group's class who can sign in."""
    cls = get_tree().get(f"classes/{conv['classId']}") or {}
    label = conv.get("groupName") or conv.get("subjectName", "")
    updates = {}
    for student in cls.get("students") or []:
        if not student.get("studentAccessCode"):
            continue
        updates[f"student_notifications/{pid}/{student['id']}/{push_key()}"] = {
            "studentId": student["id"],
            "message": f'رسالة جديدة في مجموعة "{label}" من المدرس {sender_name}.',
            "timestamp": now_iso(),
            "isRead": False,
        }
    return updates


@bp.route("/api/conversations/<conv_id>/messages", methods=["POST"])
@login_required
def send_message(conv_id):
    pid = principal_scope()
    conv = _load_conversation(pid, conv_id)
    _authorize(conv)

    if current_user.is_student:
        if conv.get("classId"):
            raise Forbidden("Students cannot post in class group chats.")
        staff = get_tree().get(f"users/{conv.get('teacherId')}") or {}
        if conv.get("chatDisabled") or staff.get("chatDisabled"):
            raise Forbidden("Chat is disabled for this conversation.")

    payload = request.form if (request.form or request.files) else (request.get_json(silent=True) or {})
    text = str(payload.get("text") or "").strip()
    upload = request.files.get("attachment")
    if not text and not upload:
        raise ValidationError("A message needs text or an attachment.")

    message_id = push_key()
    timestamp = now_ms()
    message = {
        "id": message_id,
        "senderId": current_user.uid,
        "senderName": current_user.name,
        "text": text,
        "timestamp": timestamp,
    }
    if upload:
        stored = blob_store.save(f"chat_attachments/{pid}/{conv_id}", upload, key=message_id)
        message["attachment"] = {k: stored[k] for k in ("type", "url", "name", "size", "path")}

    summary = {
        **conv,
        "lastMessageText": text or f"مرفق: {message['attachment']['name']}",
        "lastMessageTimestamp": timestamp,
        "isArchived": False,
    }
    if current_user.is_student:
        summary["unreadByStaff"] = True
    else:
        summary["unreadByStaff"] = False
        summary["staffName"] = conv.get("staffName") or current_user.name
        if not conv.get("classId"):
            summary["unreadByStudent"] = True

    updates = {
        f"conversations/{pid}/{conv_id}": summary,
        f"messages/{conv_id}/{message_id}": message,
    }
    if conv.get("classId") and not current_user.is_student:
        updates.update(_student_notification_updates(pid, conv, current_user.name))
    get_tree().update("", updates)
    logger.info("Message %s sent in %s by %s", message_id, conv_id, current_user.uid)
    return jsonify({"success": True, "message": message}), 201


# ── Student side ───────────────────────────────────────────

@bp.route("/api/student/conversations")
@student_required
def my_conversations():
    convs = [c for c in get_tree().children(f"conversations/{current_user.principal_id}") if _student_can_see(c)]
    convs.sort(key=lambda c: c.get("lastMessageTimestamp", 0), reverse=True)
    return jsonify({
        "conversations": convs,
        "unreadCount": sum(1 for c in convs if _unread_for_me(c)),
    })


@bp.route("/api/student/notifications")
@student_required
def my_notifications():
    items = get_tree().get(f"student_notifications/{current_user.principal_id}/{current_user.uid}") or {}
    notifications = sorted(
        ({"id": nid, **n} for nid, n in items.items()),
        key=lambda n: n.get("timestamp", ""),
        reverse=True,
    )
    return jsonify({
        "notifications": notifications,
        "unreadCount": sum(1 for n in notifications if not n.get("isRead")),
    })


@bp.route("/api/student/notifications/<notification_id>/read", methods=["POST"])
@student_required
def read_notification(notification_id):
    path = f"student_notifications/{current_user.principal_id}/{current_user.uid}/{notification_id}"
    tree = get_tree()
    if not tree.exists(path):
        raise NotFound("Notification not found.")
    tree.set(f"{path}/isRead", True)
    return jsonify({"success": True})


@bp.route("/api/student/notifications/read-all", methods=["POST"])
@student_required
def read_all_notifications():
    base = f"student_notifications/{current_user.principal_id}/{current_user.uid}"
    items = get_tree().get(base) or {}
    updates = {f"{nid}/isRead": True for nid, n in items.items() if not n.get("isRead")}
    if updates:
        get_tree().update(base, updates)
    return jsonify({"success": True, "updated": len(updates)})


# ── Administrator broadcasts ───────────────────────────────

def _scope_for_current_user() -> str | None:
    if current_user.is_principal:
        return "all_principals"
    if current_user.is_staff:
        return "all_teachers"
    return None


@bp.route("/api/admin/notifications")
@admin_required
def admin_list_notifications():
    items = get_tree().get("notifications") or {}
    notifications = sorted(({"id": k, **v} for k, v in items.items()), key=lambda n: n["timestamp"], reverse=True)
    return jsonify({"notifications": notifications})


@bp.route("/api/admin/notifications", methods=["POST"])
@admin_required
def admin_send_notification():
    data = json_body("recipientScope", "message")
    if data["recipientScope"] not in NOTIFICATION_SCOPES:
        raise ValidationError("recipientScope must be all_principals or all_teachers.")
    nid = push_key()
    notification = {
        "id": nid,
        "senderId": current_user.uid,
        "senderName": current_user.name,
        "recipientScope": data["recipientScope"],
        "message": str(data["message"]).strip(),
        "timestamp": now_iso(),
    }
    get_tree().set(f"notifications/{nid}", notification)
    return jsonify({"success": True, "notification": notification}), 201


@bp.route("/api/admin/notifications/<notification_id>", methods=["DELETE"])
@admin_required
def admin_delete_notification(notification_id):
    tree = get_tree()
    if not tree.exists(f"notifications/{notification_id}"):
        raise NotFound("Notification not found.")
    tree.remove(f"notifications/{notification_id}")
    return jsonify({"success": True})


def _my_admin_notifications() -> list[dict]:
    scope = _scope_for_current_user()
    return [n for n in get_tree().children("notifications") if n.get("recipientScope") == scope]


@bp.route("/api/notifications")
@staff_required
def list_notifications():
    read = get_tree().get(f"user_read_notifications/{current_user.uid}") or {}
    notifications = [
        {**n, "isRead": bool(read.get(n["id"]))}
        for n in sorted(_my_admin_notifications(), key=lambda n: n.get("timestamp", ""), reverse=True)
    ]
    return jsonify({
        "notifications": notifications,
        "unreadCount": sum(1 for n in notifications if not n["isRead"]),
    })


@bp.route("/api/notifications/<notification_id>/read", methods=["POST"])
@staff_required
def mark_notification_read(notification_id):
    if not any(n["id"] == notification_id for n in _my_admin_notifications()):
        raise NotFound("Notification not found.")
    get_tree().set(f"user_read_notifications/{current_user.uid}/{notification_id}", True)
    return jsonify({"success": True})


@bp.route("/api/notifications/read-all", methods=["POST"])
@staff_required
def mark_all_notifications_read():
    updates = {n["id"]: True for n in _my_admin_notifications()}
    if updates:
        get_tree().update(f"user_read_notifications/{current_user.uid}", updates)
    return jsonify({"success": True, "updated": len(updates)})
