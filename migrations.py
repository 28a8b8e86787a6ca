"""
One-off data patches over the record tree.

``consolidate_subjects`` merges the split Arabic and English subjects of the
intermediate stages into one subject each and moves teacher assignments onto
the merged subject. Classes that were patched carry ``subjects_migrated_v1``
and are skipped on later runs.
"""

from __future__ import annotations

import logging
import uuid

from tree_store import get_tree

logger = logging.getLogger(__name__)

MIGRATION_FLAG = "subjects_migrated_v1"
TARGET_STAGES = ("الاول متوسط", "الثاني متوسط", "الثالث متوسط")

# merged subject name -> legacy subject names it replaces
SUBJECT_MERGES = {
    "اللغة العربية": ("اللغة العربية الجزء الاول", "اللغة العربية الجزء الثاني"),
    "اللغة الإنكليزية": ("اللغة الإنكليزية كتاب الطالب", "اللغة الإنكليزية كتاب النشاط"),
}


def _merge_class_subjects(subjects: list[dict]) -> tuple[list[dict], dict[str, str]]:
    """Return the merged subject list and a legacy-id -> merged-id map."""
    subjects = list(subjects)
    remap: dict[str, str] = {}
    for merged_name, legacy_names in SUBJECT_MERGES.items():
        legacy = [s for s in subjects if s.get("name") in legacy_names]
        if not legacy:
            continue
        merged = next((s for s in subjects if s.get("name") == merged_name), None)
        if merged is None:
            merged = {"id": str(uuid.uuid4()), "name": merged_name}
            subjects.append(merged)
        for old in legacy:
            remap[old["id"]] = merged["id"]
        subjects = [s for s in subjects if s.get("name") not in legacy_names]
    return subjects, remap


def _remap_assignments(assignments: list[dict], class_id: str, remap: dict[str, str]) -> list[dict] | None:
    """Rewrite a teacher's assignments for one class; None when unchanged."""
    if not any(a.get("classId") == class_id and a.get("subjectId") in remap for a in assignments):
        return None
    result: list[dict] = []
    for a in assignments:
        if a.get("classId") == class_id and a.get("subjectId") in remap:
            a = {"classId": class_id, "subjectId": remap[a["subjectId"]]}
        if a not in result:
            result.append(a)
    return result


def consolidate_subjects(principal_id: str) -> dict:
    """Merge legacy split subjects for ``principal_id``'s classes.

    All class and teacher changes go out in a single multi-path update.
    """
    tree = get_tree()
    classes = [
        c for c in tree.children("classes")
        if c.get("principalId") == principal_id
        and c.get("stage") in TARGET_STAGES
        and not c.get(MIGRATION_FLAG)
    ]
    teachers = {
        u["id"]: list(u.get("assignments") or [])
        for u in tree.children("users")
        if u.get("role") == "teacher" and u.get("principalId") == principal_id
    }

    updates: dict = {}
    changed_teachers: set[str] = set()
    for cls in classes:
        subjects, remap = _merge_class_subjects(cls.get("subjects") or [])
        if not remap:
            continue
        updates[f"classes/{cls['id']}/subjects"] = subjects
        updates[f"classes/{cls['id']}/{MIGRATION_FLAG}"] = True
        for teacher_id, assignments in teachers.items():
            rewritten = _remap_assignments(assignments, cls["id"], remap)
            if rewritten is not None:
                teachers[teacher_id] = rewritten
                changed_teachers.add(teacher_id)

    for teacher_id in changed_teachers:
        updates[f"users/{teacher_id}/assignments"] = teachers[teacher_id]

    if updates:
        tree.update("", updates)
        logger.info("Consolidated subjects for principal %s: %d update(s)", principal_id, len(updates))

    return {
        "classesUpdated": sum(1 for k in updates if k.endswith(MIGRATION_FLAG)),
        "teachersUpdated": len(changed_teachers),
    }
