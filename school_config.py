"""
School-wide constants and small lookups shared by the blueprints.

Stage names, rating scales and enumerations are stored verbatim in records,
so changing a value here changes what new records contain.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

ROLES = ("admin", "principal", "teacher", "counselor", "student")
STAFF_ROLES = ("teacher", "counselor")

SCHOOL_LEVELS = (
    "ابتدائية", "متوسطة", "اعدادية", "ثانوية",
    "اعدادي علمي", "اعدادي ادبي", "ثانوية علمي", "ثانوية ادبي",
)
PRIMARY_LEVEL = "ابتدائية"

GRADE_LEVELS = [
    "الاول ابتدائي", "الثاني ابتدائي", "الثالث ابتدائي",
    "الرابع ابتدائي", "الخامس ابتدائي", "السادس ابتدائي",
    "الاول متوسط", "الثاني متوسط", "الثالث متوسط",
    "الرابع العلمي", "الرابع الادبي",
    "الخامس العلمي", "الخامس الادبي",
    "السادس العلمي", "السادس الادبي",
]

EVALUATION_RATINGS = ["ممتاز", "جيد جدا", "متوسط", "ضعيف", "ضعيف جدا"]

ABSENCE_STATUSES = ("present", "absent", "excused", "runaway")

DEDUCTION_POINTS = (0, 5, 10, 15)

# Student-facing awards earned by accepted homework submissions
AWARD_DEFINITIONS = [
    {"id": "bronze", "name": "النجمة البرونزية", "description": "أنجز 5 واجبات", "icon": "🥉", "minCompletions": 5},
    {"id": "silver", "name": "النجمة الفضية", "description": "أنجز 15 واجباً", "icon": "🥈", "minCompletions": 15},
    {"id": "gold", "name": "النجمة الذهبية", "description": "أنجز 30 واجباً", "icon": "🥇", "minCompletions": 30},
    {"id": "legend", "name": "بطل الواجبات", "description": "أنجز 60 واجباً", "icon": "🏆", "minCompletions": 60},
]

HONOR_CRITERIA = ("respect", "discipline", "cooperation", "cleanliness", "punctuality")

SCHOOL_DAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday"]

DAY_NAMES_AR = {
    "Sunday": "الأحد", "Monday": "الاثنين", "Tuesday": "الثلاثاء",
    "Wednesday": "الأربعاء", "Thursday": "الخميس",
}

# Unambiguous alphabet for generated access codes (no 0/O, 1/I)
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def relevant_grade_levels(school_level: str | None) -> list[str]:
    """Stages a school of the given level teaches."""
    if not school_level:
        return list(GRADE_LEVELS)
    if school_level == PRIMARY_LEVEL:
        return [g for g in GRADE_LEVELS if "ابتدائي" in g]
    if school_level == "متوسطة":
        return [g for g in GRADE_LEVELS if "متوسط" in g]
    upper = [g for g in GRADE_LEVELS if any(w in g for w in ("الرابع", "الخامس", "السادس")) and "ابتدائي" not in g]
    if "اعدادي" in school_level:
        return upper
    if "ثانوية" in school_level:
        return [g for g in GRADE_LEVELS if "متوسط" in g] + upper
    return list(GRADE_LEVELS)


def default_settings_for(principal: dict, academic_year: str) -> dict:
    return {
        "schoolName": principal.get("schoolName", ""),
        "principalName": principal.get("name", ""),
        "academicYear": academic_year,
        "directorate": "",
        "supplementarySubjectsCount": 3,
        "decisionPoints": 5,
        "principalPhone": "",
        "schoolType": "نهاري",
        "schoolGender": "بنين",
        "schoolLevel": principal.get("schoolLevel") or "متوسطة",
        "governorateCode": "",
        "schoolCode": "",
        "governorateName": "بغداد",
        "district": "",
        "subdistrict": "",
    }


def simple_class_name(stage: str, section: str) -> str:
    """Compact class label used as a schedule key, e.g. "الاول-متوسط-أ"."""
    return f"{stage.replace(' ', '-')}-{section}"


def plan_type_for_stage(stage: str) -> str:
    if "ابتدائي" in stage:
        return "primary"
    if "متوسط" in stage:
        return "intermediate"
    return "preparatory"


def week_of(day: date) -> tuple[str, str]:
    """Honor-board id and ISO timestamp of the Monday starting ``day``'s week."""
    year, week, _ = day.isocalendar()
    monday = day - timedelta(days=day.weekday())
    start = datetime(monday.year, monday.month, monday.day).isoformat()
    return f"week-{week}-{year}", start


def now_iso() -> str:
    return datetime.now().isoformat()


def now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


def parse_local_datetime(value: str) -> datetime:
    """Parse an ISO timestamp (``Z`` suffix allowed) as naive local time.

    Raises ValueError for anything that is not an ISO date/time.
    """
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed
