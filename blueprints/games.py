"""XO quiz game: question bank, settings, challenges, live games and leaderboards."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

import xo_game
from errors import Conflict, Forbidden, NotFound, ValidationError
from extensions import limiter
from helpers import (
    json_body,
    locate_student,
    principal_required,
    principal_scope,
    roles_required,
    student_required,
)
from school_config import GRADE_LEVELS, now_ms, parse_local_datetime
from tree_store import get_tree

logger = logging.getLogger(__name__)

bp = Blueprint("games", __name__)

question_staff_required = roles_required("principal", "teacher")


def _settings(pid: str) -> dict:
    return {**xo_game.DEFAULT_SETTINGS, **(get_tree().get(f"xo_settings/{pid}") or {})}


def _require_open(settings: dict) -> None:
    now = datetime.now()
    try:
        start = parse_local_datetime(settings["startTime"]) if settings.get("startTime") else None
        end = parse_local_datetime(settings["endTime"]) if settings.get("endTime") else None
    except ValueError:
        logger.warning("Ignoring malformed XO game window %r-%r", settings.get("startTime"), settings.get("endTime"))
        return
    if (start and now < start) or (end and now > end):
        raise Conflict("The competition is closed right now.")


def _check_grade(grade: str) -> str:
    if grade not in GRADE_LEVELS:
        raise ValidationError("Unknown grade.")
    return grade


# ── Settings ───────────────────────────────────────────────

@bp.route("/api/xo/settings")
@login_required
def get_settings():
    return jsonify({"settings": _settings(principal_scope())})


@bp.route("/api/xo/settings", methods=["PUT"])
@principal_required
def save_settings():
    pid = principal_scope()
    data = json_body()
    settings = _settings(pid)
    if "pointsPolicy" in data:
        if data["pointsPolicy"] not in xo_game.POINTS_POLICIES:
            raise ValidationError(f"pointsPolicy must be one of: {', '.join(xo_game.POINTS_POLICIES)}")
        settings["pointsPolicy"] = data["pointsPolicy"]
    for key in ("startTime", "endTime"):
        if key in data:
            value = str(data[key] or "")
            if value:
                try:
                    value = parse_local_datetime(value).isoformat()
                except ValueError:
                    raise ValidationError(f"{key} must be an ISO date/time.") from None
            settings[key] = value
    if "questionTimeLimit" in data:
        limit = data["questionTimeLimit"]
        if isinstance(limit, bool) or not isinstance(limit, int) or not 5 <= limit <= 600:
            raise ValidationError("questionTimeLimit must be 5-600 seconds.")
        settings["questionTimeLimit"] = limit
    if "allowSinglePlayer" in data:
        settings["allowSinglePlayer"] = bool(data["allowSinglePlayer"])
    get_tree().set(f"xo_settings/{pid}", settings)
    return jsonify({"success": True, "settings": settings})


# ── Question bank ──────────────────────────────────────────

def _bank_path(pid: str, grade: str, subject: str) -> str:
    return f"xo_questions/{pid}/{_check_grade(grade)}/{subject}"


def _bank(pid: str, grade: str, subject: str) -> list[dict]:
    return get_tree().children(_bank_path(pid, grade, subject))


def _load_question(pid: str, grade: str, subject: str, question_id: str) -> dict:
    question = get_tree().get(f"{_bank_path(pid, grade, subject)}/{question_id}")
    if not question:
        raise NotFound("Question not found.")
    if current_user.role == "teacher" and question.get("createdBy") not in ("ai", current_user.uid):
        raise Forbidden("This question belongs to another teacher.")
    return question


@bp.route("/api/xo/questions")
@question_staff_required
def list_questions():
    pid = principal_scope()
    grade = request.args.get("grade", "")
    subject = request.args.get("subject", "")
    if not grade or not subject:
        raise ValidationError("grade and subject are required.")
    questions = _bank(pid, grade, subject)
    if request.args.get("chapter"):
        questions = [q for q in questions if q.get("chapter") == request.args["chapter"]]
    return jsonify({"questions": questions, "count": len(questions)})


@bp.route("/api/xo/questions", methods=["POST"])
@question_staff_required
def create_question():
    pid = principal_scope()
    data = json_body("grade", "subject")
    cleaned = xo_game.clean_question(data)
    if not cleaned:
        raise ValidationError("A question needs text, 4 options and a valid correctOptionIndex.")
    settings = get_tree().get(f"settings/{pid}") or {}
    question = {
        **cleaned,
        "id": str(uuid.uuid4()),
        "principalId": pid,
        "grade": data["grade"],
        "subject": str(data["subject"]).strip(),
        "createdBy": current_user.uid,
        "creatorName": current_user.name,
        "creatorSchool": settings.get("schoolName", ""),
    }
    if data.get("chapter"):
        question["chapter"] = str(data["chapter"])
    get_tree().set(f"{_bank_path(pid, question['grade'], question['subject'])}/{question['id']}", question)
    return jsonify({"success": True, "question": question}), 201


@bp.route("/api/xo/questions/<grade>/<subject>/<question_id>", methods=["PUT"])
@question_staff_required
def edit_question(grade, subject, question_id):
    pid = principal_scope()
    question = _load_question(pid, grade, subject, question_id)
    data = json_body()
    cleaned = xo_game.clean_question({**question, **data})
    if not cleaned:
        raise ValidationError("A question needs text, 4 options and a valid correctOptionIndex.")
    question.update(cleaned)
    if "chapter" in data:
        question["chapter"] = str(data["chapter"] or "") or None
    get_tree().set(f"{_bank_path(pid, grade, subject)}/{question_id}", question)
    return jsonify({"success": True, "question": question})


@bp.route("/api/xo/questions/<grade>/<subject>/<question_id>", methods=["DELETE"])
@question_staff_required
def delete_question(grade, subject, question_id):
    pid = principal_scope()
    _load_question(pid, grade, subject, question_id)
    get_tree().remove(f"{_bank_path(pid, grade, subject)}/{question_id}")
    return jsonify({"success": True})


@bp.route("/api/xo/questions/generate", methods=["POST"])
@limiter.limit("20 per hour")
@question_staff_required
def generate_questions():
    """Generate questions with Gemini from pasted text or from a book URL."""
    pid = principal_scope()
    data = json_body("grade", "subject")
    grade = _check_grade(data["grade"])
    subject = str(data["subject"]).strip()
    count = data.get("count", 10)
    if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= 50:
        raise ValidationError("count must be 1-50.")
    chapter = data.get("chapter") or xo_game.ALL_CHAPTERS

    page_range = None
    if data.get("url"):
        try:
            start, end = int(data.get("startPage", 1)), int(data.get("endPage", data.get("startPage", 1)))
        except (TypeError, ValueError):
            raise ValidationError("startPage and endPage must be numbers.") from None
        if start < 1 or end < start:
            raise ValidationError("Invalid page range.")
        text = xo_game.extract_text_from_url(str(data["url"]), start, end, chapter)
        page_range = {"start": start, "end": end}
    elif data.get("text"):
        text = xo_game.slice_chapter(str(data["text"]), chapter)
    else:
        raise ValidationError("Provide text or a url.")

    questions = xo_game.generate_questions_from_text(text, count, grade, subject, pid, chapter)
    updates = {}
    for question in questions:
        if page_range:
            question["pageRange"] = page_range
        updates[question["id"]] = question
    get_tree().update(_bank_path(pid, grade, subject), updates)
    logger.info("Generated %d XO question(s) for %s/%s", len(questions), grade, subject)
    return jsonify({"success": True, "questions": questions}), 201


# ── Challenges ─────────────────────────────────────────────

def _player(symbol: str | None, default: str) -> dict:
    symbol = symbol or default
    if symbol not in xo_game.PLAYER_SYMBOLS:
        raise ValidationError(f"symbol must be one of: {' '.join(xo_game.PLAYER_SYMBOLS)}")
    return {
        "id": current_user.uid,
        "name": current_user.name,
        "symbol": symbol,
        "classId": current_user.class_id,
        "section": current_user.section,
    }


@bp.route("/api/xo/opponents")
@student_required
def list_opponents():
    """Students of the same stage who can be challenged."""
    pid = principal_scope()
    codes = get_tree().get("student_access_codes_individual") or {}
    with_code = {c.get("studentId") for c in codes.values() if c.get("principalId") == pid and not c.get("disabled")}
    opponents = []
    for cls in get_tree().children("classes"):
        if cls.get("principalId") != pid or cls.get("stage") != current_user.stage:
            continue
        for student in cls.get("students") or []:
            if student["id"] != current_user.uid and student["id"] in with_code:
                opponents.append({"id": student["id"], "name": student.get("name", ""), "section": cls.get("section", "")})
    return jsonify({"opponents": opponents})


@bp.route("/api/xo/challenges")
@login_required
def list_challenges():
    items = get_tree().children(f"xo_challenges/{principal_scope()}")
    if current_user.is_student:
        items = [c for c in items if current_user.uid in (c.get("challengerId"), c.get("targetId"))]
    elif not current_user.is_staff:
        raise Forbidden("You do not have access to challenges.")
    items.sort(key=lambda c: c.get("createdAt", 0), reverse=True)
    return jsonify({"challenges": items})


@bp.route("/api/xo/challenges", methods=["POST"])
@student_required
def create_challenge():
    pid = principal_scope()
    _require_open(_settings(pid))
    data = json_body("targetId", "subject")
    if data["targetId"] == current_user.uid:
        raise ValidationError("You cannot challenge yourself.")
    cls, target = locate_student(pid, data["targetId"])
    if cls.get("stage") != current_user.stage:
        raise ValidationError("You can only challenge students in your stage.")
    player = _player(data.get("symbol"), "X")

    cid = str(uuid.uuid4())
    challenge = {
        "id": cid,
        "challengerId": current_user.uid,
        "challengerName": current_user.name,
        "challengerClass": f"{current_user.stage} - {current_user.section}",
        "challengerClassId": current_user.class_id,
        "challengerSection": current_user.section,
        "challengerSymbol": player["symbol"],
        "targetId": target["id"],
        "targetName": target.get("name", ""),
        "grade": current_user.stage,
        "subject": str(data["subject"]).strip(),
        "status": "pending",
        "createdAt": now_ms(),
    }
    get_tree().set(f"xo_challenges/{pid}/{cid}", challenge)
    return jsonify({"success": True, "challenge": challenge}), 201


def _pending_challenge(pid: str, challenge_id: str) -> dict:
    challenge = get_tree().get(f"xo_challenges/{pid}/{challenge_id}")
    if not challenge or challenge.get("targetId") != current_user.uid:
        raise NotFound("Challenge not found.")
    if challenge.get("status") != "pending":
        raise Conflict("This challenge has already been answered.")
    return challenge


@bp.route("/api/xo/challenges/<challenge_id>/accept", methods=["POST"])
@student_required
def accept_challenge(challenge_id):
    pid = principal_scope()
    _require_open(_settings(pid))
    challenge = _pending_challenge(pid, challenge_id)
    challenger_symbol = challenge.get("challengerSymbol", "X")
    default = next(s for s in xo_game.PLAYER_SYMBOLS if s != challenger_symbol)
    me = _player(json_body().get("symbol"), default)

    cls, student = locate_student(pid, challenge["challengerId"])
    challenger = {
        "id": student["id"],
        "name": student.get("name", challenge["challengerName"]),
        "symbol": challenger_symbol,
        "classId": cls["id"],
        "section": cls.get("section", ""),
    }
    game = xo_game.new_game(pid, challenge["grade"], challenge["subject"], challenger, me, now_ms())
    challenge.update({"status": "in_game", "gameId": game["id"]})
    get_tree().update("", {
        f"xo_challenges/{pid}/{challenge_id}": challenge,
        f"xo_games/{pid}/{game['id']}": game,
    })
    logger.info("XO game %s started from challenge %s", game["id"], challenge_id)
    return jsonify({"success": True, "challenge": challenge, "game": _public(game)}), 201


@bp.route("/api/xo/challenges/<challenge_id>/decline", methods=["POST"])
@student_required
def decline_challenge(challenge_id):
    pid = principal_scope()
    challenge = _pending_challenge(pid, challenge_id)
    challenge["status"] = "declined"
    get_tree().set(f"xo_challenges/{pid}/{challenge_id}", challenge)
    return jsonify({"success": True, "challenge": challenge})


# ── Games ──────────────────────────────────────────────────

def _public(game: dict) -> dict:
    shown = {k: v for k, v in game.items() if k != "usedQuestionIds"}
    shown["currentQuestion"] = xo_game.public_question(game.get("currentQuestion"))
    shown.setdefault("winner", None)
    shown.setdefault("questionForSquare", None)
    shown.setdefault("questionTimerStart", None)
    return shown


def _game_path(pid: str, game_id: str) -> str:
    return f"xo_games/{pid}/{game_id}"


def _load_game(pid: str, game_id: str) -> dict:
    game = get_tree().get(_game_path(pid, game_id))
    if not game:
        raise NotFound("Game not found.")
    game = xo_game.load_game(game)
    if current_user.is_student:
        xo_game.player_of(game, current_user.uid)
    elif not current_user.is_staff:
        raise Forbidden("You do not have access to this game.")
    return game


def _record_points(pid: str, game: dict, policy: str) -> None:
    tree = get_tree()
    base = f"xo_leaderboards/{pid}/{game['grade']}/{game['subject']}"
    updates = {}
    for player in game["players"]:
        points = xo_game.points_for(game, policy).get(player["id"], 0)
        entry = tree.get(f"{base}/{player['id']}") or {
            "studentId": player["id"],
            "studentName": player["name"],
            "classId": player.get("classId") or "",
            "section": player.get("section") or "",
            "points": 0,
        }
        entry["points"] = entry.get("points", 0) + points
        updates[player["id"]] = entry
    tree.update(base, updates)


def _play(game_id: str, move):
    """Run ``move(game, settings)`` on the stored game inside one transaction."""
    pid = principal_scope()
    settings = _settings(pid)
    outcome: dict = {}

    def apply(current):
        if not current:
            raise NotFound("Game not found.")
        game = xo_game.load_game(current)
        outcome["wasFinished"] = game["status"] == "finished"
        outcome["result"] = move(game, settings)
        return game

    game = get_tree().transaction(_game_path(pid, game_id), apply)
    game = xo_game.load_game(game)
    if game["status"] == "finished" and not outcome["wasFinished"]:
        _record_points(pid, game, settings["pointsPolicy"])
        logger.info("XO game %s finished: %s", game_id, game.get("winner"))
    return game, outcome["result"]


@bp.route("/api/xo/games")
@student_required
def my_games():
    games = [xo_game.load_game(g) for g in get_tree().children(f"xo_games/{principal_scope()}")]
    mine = [_public(g) for g in games if any(p["id"] == current_user.uid for p in g["players"])]
    mine.sort(key=lambda g: g.get("updatedAt", 0), reverse=True)
    return jsonify({"games": mine})


@bp.route("/api/xo/games/solo", methods=["POST"])
@student_required
def start_solo_game():
    pid = principal_scope()
    settings = _settings(pid)
    if not settings["allowSinglePlayer"]:
        raise Forbidden("Single-player games are turned off.")
    _require_open(settings)
    data = json_body("subject")
    player = _player(data.get("symbol"), "X")
    if player["symbol"] == xo_game.HOUSE_SYMBOL:
        raise ValidationError(f"{xo_game.HOUSE_SYMBOL} is reserved for the house in single-player games.")
    game = xo_game.new_game(pid, current_user.stage, str(data["subject"]).strip(), player, None, now_ms())
    get_tree().set(_game_path(pid, game["id"]), game)
    return jsonify({"success": True, "game": _public(game)}), 201


@bp.route("/api/xo/games/<game_id>")
@login_required
def get_game(game_id):
    return jsonify({"game": _public(_load_game(principal_scope(), game_id))})


@bp.route("/api/xo/games/<game_id>/square", methods=["POST"])
@student_required
def pick_square(game_id):
    pid = principal_scope()
    square = json_body().get("square")
    stored = _load_game(pid, game_id)
    bank = _bank(pid, stored["grade"], stored["subject"])

    def move(game, settings):
        question = xo_game.choose_question(bank, game["usedQuestionIds"])
        xo_game.pick_square(game, current_user.uid, square, question, now_ms())
        return None

    game, _ = _play(game_id, move)
    return jsonify({"success": True, "game": _public(game)})


@bp.route("/api/xo/games/<game_id>/answer", methods=["POST"])
@student_required
def answer(game_id):
    option = json_body().get("optionIndex")

    def move(game, settings):
        return xo_game.answer_question(game, current_user.uid, option, now_ms(), settings["questionTimeLimit"])

    game, result = _play(game_id, move)
    return jsonify({"success": True, **result, "game": _public(game)})


@bp.route("/api/xo/games/<game_id>/timeout", methods=["POST"])
@student_required
def timeout(game_id):
    def move(game, settings):
        return xo_game.expire_question(game, current_user.uid, now_ms(), settings["questionTimeLimit"])

    game, _ = _play(game_id, move)
    return jsonify({"success": True, "game": _public(game)})


@bp.route("/api/xo/games/<game_id>/chat", methods=["POST"])
@student_required
def send_chat(game_id):
    text = str(json_body("text")["text"])

    def move(game, settings):
        xo_game.player_of(game, current_user.uid)
        return xo_game.add_chat_message(game, current_user.uid, current_user.name, text, now_ms())

    _, message = _play(game_id, move)
    return jsonify({"success": True, "message": message}), 201


# ── Leaderboards ───────────────────────────────────────────

@bp.route("/api/xo/leaderboard/<grade>/<subject>")
@login_required
def subject_leaderboard(grade, subject):
    pid = principal_scope()
    scores = get_tree().children(f"xo_leaderboards/{pid}/{_check_grade(grade)}/{subject}")
    scores.sort(key=lambda s: (-s.get("points", 0), s.get("studentName", "")))
    return jsonify({"scores": scores})


@bp.route("/api/xo/leaderboard")
@login_required
def overall_leaderboard():
    """Points summed over every subject, optionally for one ?grade."""
    pid = principal_scope()
    boards = get_tree().get(f"xo_leaderboards/{pid}") or {}
    grade = request.args.get("grade")
    totals: dict[str, dict] = {}
    for grade_name, subjects in boards.items():
        if grade and grade_name != grade:
            continue
        for scores in (subjects or {}).values():
            for entry in (scores or {}).values():
                total = totals.setdefault(entry["studentId"], {
                    "studentId": entry["studentId"],
                    "studentName": entry.get("studentName", ""),
                    "totalPoints": 0,
                })
                total["totalPoints"] += entry.get("points", 0)
    ranking = sorted(totals.values(), key=lambda t: (-t["totalPoints"], t["studentName"]))
    return jsonify({"leaderboard": ranking})
