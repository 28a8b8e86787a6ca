"""
AI-assisted weekly class schedule generation.

The week is built one (day, grade) pair at a time. For each pair a prompt is
assembled from what the grade still needs this week (study plan minus lessons
already placed), who teaches what, which teachers are away that day and what
other grades already occupy. Gemini returns the day's periods for that grade
as JSON; an invalid answer earns exactly one retry with a stricter prompt.

Schedules are keyed by day name and by a compact class label such as
"الاول-متوسط-أ"; teachers appear by name, as in the generated timetable.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from ai_resilience import resilient_llm_call
from errors import AIUnavailable
from school_config import (
    GRADE_LEVELS,
    SCHOOL_DAYS,
    plan_type_for_stage,
    relevant_grade_levels,
    simple_class_name,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
SCHEDULE_TEMPERATURE = 0.5
SCHEDULE_MAX_TOKENS = 4096

SWAP_STATUSES = ("pending_teacher", "pending_principal", "approved", "rejected")

# (current status, action) -> next status
SWAP_TRANSITIONS = {
    ("pending_teacher", "accept"): "pending_principal",
    ("pending_teacher", "decline"): "rejected",
    ("pending_principal", "approve"): "approved",
    ("pending_principal", "reject"): "rejected",
}


class InvalidTransition(Exception):
    pass


def next_swap_status(status: str, action: str) -> str:
    try:
        return SWAP_TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidTransition(f"Cannot {action} a request that is {status}.") from None


# ── Prompt inputs ──────────────────────────────────────────

def remaining_weekly_lessons(classes_in_grade: list[dict], study_plans: dict, full_schedule: dict) -> dict:
    """Weekly lessons per class still to place: plan counts minus scheduled lessons."""
    remaining: dict[str, dict[str, int]] = {}
    for cls in classes_in_grade:
        plan = study_plans.get(plan_type_for_stage(cls["stage"])) or {}
        grade_plan = (plan.get("grades") or {}).get(cls["stage"])
        if grade_plan:
            remaining[simple_class_name(cls["stage"], cls["section"])] = dict(grade_plan.get("subjects") or {})

    for day_schedule in full_schedule.values():
        for period in day_schedule or []:
            for class_name, assignment in (period.get("assignments") or {}).items():
                subjects = remaining.get(class_name)
                subject = (assignment or {}).get("subject")
                if subjects is not None and subject in subjects:
                    subjects[subject] -= 1
    return remaining


def teacher_assignments_by_subject(teachers: list[dict], all_classes: list[dict]) -> dict:
    """Subject name -> [{teacher: name, classes: [class label, ...]}]."""
    classes = {c["id"]: c for c in all_classes}
    subject_names = {s["id"]: s["name"] for c in all_classes for s in c.get("subjects") or []}
    result: dict[str, list[dict]] = {}
    for teacher in teachers:
        for assignment in teacher.get("assignments") or []:
            subject = subject_names.get(assignment.get("subjectId"))
            cls = classes.get(assignment.get("classId"))
            if not subject or not cls:
                continue
            entries = result.setdefault(subject, [])
            entry = next((e for e in entries if e["teacher"] == teacher["name"]), None)
            if entry is None:
                entry = {"teacher": teacher["name"], "classes": []}
                entries.append(entry)
            entry["classes"].append(simple_class_name(cls["stage"], cls["section"]))
    return result


def unavailability_by_name(teachers: list[dict], unavailability: dict) -> dict:
    """Re-key {teacherId: [days]} by teacher name, dropping unknown teachers."""
    names = {t["id"]: t["name"] for t in teachers}
    return {names[tid]: list(days or []) for tid, days in unavailability.items() if tid in names}


def build_grade_schedule_prompt(
    day: str,
    grade: str,
    class_names: list[str],
    periods_for_day: int,
    target_periods: int,
    schedule_for_day_so_far: list,
    remaining_lessons: dict,
    assignments_by_subject: dict,
    unavailability: dict,
    attempt: int,
) -> str:
    classes_line = ", ".join(class_names)
    retry = ""
    if attempt > 0:
        retry = (
            f"\n**CRITICAL: ATTEMPT {attempt + 1} FAILED**. Your previous attempt was invalid.\n"
            "**New Strategy**: Focus on the constraints. Do not create teacher conflicts. "
            "Do not schedule unavailable teachers. "
            f"Ensure the output is a complete JSON array for all {periods_for_day} periods.\n"
        )

    def block(value) -> str:
        return "```json\n" + json.dumps(value, ensure_ascii=False, indent=2) + "\n```"

    return f"""
You are a master school scheduler. Your task is to schedule all classes for a SINGLE GRADE LEVEL for a SINGLE DAY.

**Mission:**
-   **Day**: {day}
-   **Grade Level**: {grade}
-   **Classes to Schedule**: {classes_line}
-   **Periods to fill for this grade**: You MUST generate lessons for EXACTLY the first {target_periods} periods for this grade.
-   **Total Periods in Day**: The school day has {periods_for_day} periods. For any period after period {target_periods}, you MUST return an empty 'assignments' object for all classes in this grade. Your final JSON array must contain exactly {periods_for_day} period objects.

**Context & Data:**
1.  **Schedule for {day} So Far (for other grades)**: This part of the schedule is already fixed. You MUST NOT create any teacher conflicts with it.
{block(schedule_for_day_so_far)}

2.  **Remaining Lessons for {grade}**: Only schedule subjects with a count greater than zero.
{block(remaining_lessons)}

3.  **Teacher Assignments**: Use this to find the correct teacher for a subject/class.
{block(assignments_by_subject)}

4.  **Teacher Unavailability**: A list of teachers and the days they are unavailable for the entire week.
{block(unavailability)}

**SCHEDULING GUIDELINES:**
- If a teacher is unavailable on some days, you may need to schedule more of their lessons on their available days to meet the weekly requirement. This might mean scheduling the same subject for the same class twice on {day}. This is allowed and sometimes necessary.
- If you repeat a subject for the same class, try to avoid placing the lessons in consecutive periods.

**ABSOLUTE RULES:**
1.  **NO TEACHER CONFLICTS**: A teacher cannot be in two places at once. Check your assignments against the "Schedule for {day} So Far". A teacher CANNOT teach two different classes in the same period.
2.  **RESPECT UNAVAILABILITY**: You MUST NOT schedule any lessons for teachers on their specified unavailable days. For today, {day}, you cannot schedule any teacher who has "{day}" in their unavailability list.
3.  **ONE GRADE ONLY**: Your output must ONLY contain assignments for the specified classes: {classes_line}.
4.  **VALID JSON ARRAY**: Your entire response must be ONLY a valid JSON array of {periods_for_day} period objects, matching the required schema. No extra text, no markdown, just the raw JSON.
5.  **RESPECT PERIOD LIMIT**: Only fill the first {target_periods} periods. Later periods must have empty assignments for this grade.
{retry}
Now, create the schedule portion for the "{grade}" grade for {day}.
"""


def parse_periods(text: str | None) -> list | None:
    """The model's answer as a non-empty list, or None when it is unusable."""
    if not text or not text.strip().startswith("["):
        return None
    try:
        periods = json.loads(text.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(periods, list) or not periods:
        return None
    return periods


# ── Generation ─────────────────────────────────────────────

def generate_schedule_for_grade_on_day(
    day: str,
    grade: str,
    classes_in_grade: list[dict],
    schedule_for_day_so_far: list,
    teachers: list[dict],
    study_plans: dict,
    periods_for_day: int,
    target_periods: int,
    full_schedule: dict,
    all_classes: list[dict],
    teacher_unavailability: dict,
    llm_call: Callable[..., tuple[str, dict]] = resilient_llm_call,
) -> list | None:
    """Ask Gemini for one grade's periods on one day; None after two bad answers.

    AIUnavailable (no API key, circuit open) is raised rather than retried.
    """
    class_names = [simple_class_name(c["stage"], c["section"]) for c in classes_in_grade]
    remaining = remaining_weekly_lessons(classes_in_grade, study_plans, full_schedule)
    by_subject = teacher_assignments_by_subject(teachers, all_classes)
    away = unavailability_by_name(teachers, teacher_unavailability)

    for attempt in range(MAX_ATTEMPTS):
        prompt = build_grade_schedule_prompt(
            day, grade, class_names, periods_for_day, target_periods,
            schedule_for_day_so_far, remaining, by_subject, away, attempt,
        )
        try:
            text, _ = llm_call(
                prompt,
                json_mode=True,
                temperature=SCHEDULE_TEMPERATURE,
                max_output_tokens=SCHEDULE_MAX_TOKENS,
            )
        except AIUnavailable:
            raise
        except Exception:
            logger.exception("Attempt %d for grade %s on %s failed", attempt + 1, grade, day)
            continue
        periods = parse_periods(text)
        if periods is not None:
            return periods
        logger.warning("Attempt %d for grade %s on %s returned an invalid schedule", attempt + 1, grade, day)
    return None


def merge_grade_periods(day_schedule: list, generated: list, class_names: list[str], periods_for_day: int) -> list:
    """Fold one grade's generated periods into the day's schedule.

    Only assignments for ``class_names`` are taken from the model output.
    """
    by_number = {p["period"]: {"period": p["period"], "assignments": dict(p.get("assignments") or {})}
                 for p in day_schedule}
    for number in range(1, periods_for_day + 1):
        by_number.setdefault(number, {"period": number, "assignments": {}})

    allowed = set(class_names)
    for item in generated:
        if not isinstance(item, dict):
            continue
        try:
            number = int(item.get("period"))
        except (TypeError, ValueError):
            continue
        if number not in by_number:
            continue
        for class_name, assignment in (item.get("assignments") or {}).items():
            if class_name in allowed and isinstance(assignment, dict) and assignment.get("subject"):
                by_number[number]["assignments"][class_name] = {
                    "subject": str(assignment["subject"]),
                    "teacher": str(assignment.get("teacher", "")),
                }
    return [by_number[n] for n in sorted(by_number)]


def grades_in_order(classes: list[dict]) -> list[str]:
    present = {c["stage"] for c in classes}
    ordered = [g for g in GRADE_LEVELS if g in present]
    return ordered + sorted(present - set(ordered))


def generate_week(
    classes: list[dict],
    teachers: list[dict],
    study_plans: dict,
    teacher_unavailability: dict,
    periods_per_day: dict[str, int],
    grade_periods: dict[str, dict[str, int]] | None = None,
    school_level: str | None = None,
    days: list[str] | None = None,
    llm_call: Callable[..., tuple[str, dict]] = resilient_llm_call,
) -> tuple[dict, list[dict]]:
    """Walk days x grades and assemble the week's ScheduleData.

    Returns (schedule, failures) where failures lists the (day, grade) pairs
    the model could not produce.
    """
    days = days or list(SCHOOL_DAYS)
    grade_periods = grade_periods or {}
    schedule: dict[str, list] = {}
    failures: list[dict] = []
    grades = grades_in_order(classes)
    if school_level:
        taught = relevant_grade_levels(school_level)
        grades = [g for g in grades if g in taught]

    for day in days:
        periods_for_day = int(periods_per_day.get(day, 0))
        if periods_for_day <= 0:
            continue
        day_schedule = [{"period": n, "assignments": {}} for n in range(1, periods_for_day + 1)]
        for grade in grades:
            in_grade = sorted((c for c in classes if c["stage"] == grade), key=lambda c: c.get("section", ""))
            target = min(periods_for_day, int((grade_periods.get(grade) or {}).get(day, periods_for_day)))
            generated = generate_schedule_for_grade_on_day(
                day, grade, in_grade, day_schedule, teachers, study_plans,
                periods_for_day, target, schedule, classes, teacher_unavailability, llm_call,
            )
            if generated is None:
                failures.append({"day": day, "grade": grade})
                continue
            names = [simple_class_name(c["stage"], c["section"]) for c in in_grade]
            day_schedule = merge_grade_periods(day_schedule, generated, names, periods_for_day)
        schedule[day] = day_schedule
        logger.info("Scheduled %s for %d grade(s)", day, len(grades))
    return schedule, failures


# ── Slot helpers ───────────────────────────────────────────

def find_slot(schedule: dict, slot: dict) -> dict | None:
    """The assignment at {classId, day, period}, or None when the slot is empty."""
    for period in schedule.get(slot.get("day")) or []:
        if period.get("period") == slot.get("period"):
            return (period.get("assignments") or {}).get(slot.get("classId"))
    return None


def swap_slots(schedule: dict, first: dict, second: dict) -> dict:
    """Exchange the assignments of two slots; returns the updated schedule."""
    a = find_slot(schedule, first)
    b = find_slot(schedule, second)
    for slot, value in ((first, b), (second, a)):
        for period in schedule.get(slot["day"]) or []:
            if period.get("period") == slot["period"]:
                assignments = period.setdefault("assignments", {})
                if value:
                    assignments[slot["classId"]] = value
                else:
                    assignments.pop(slot["classId"], None)
    return schedule
