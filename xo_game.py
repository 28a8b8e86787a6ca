"""
XO quiz game: question generation and board rules.

Two students share a 3x3 board. The player whose turn it is picks an empty
square and is asked a multiple-choice question from the bank for the game's
grade and subject. A correct answer inside the time limit claims the square;
a wrong or late answer leaves it empty and passes the turn. In single-player
games the house (symbol "O") takes the square instead.

Board squares hold a player symbol or "" when empty.
"""

from __future__ import annotations

import json
import logging
import random
import re
import uuid

import requests
from bs4 import BeautifulSoup

from ai_resilience import resilient_llm_call
from cache_backend import get_cache, question_batch_key
from errors import Conflict, Forbidden, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

PLAYER_SYMBOLS = ("X", "O", "⭐", "🌙", "❤️", "🔷")
HOUSE_SYMBOL = "O"
POINTS_POLICIES = ("grant_all", "winner_takes_all")
ALL_CHAPTERS = "الكل"

WIN_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),
    (0, 3, 6), (1, 4, 7), (2, 5, 8),
    (0, 4, 8), (2, 4, 6),
)

DEFAULT_SETTINGS = {
    "pointsPolicy": "grant_all",
    "startTime": "",
    "endTime": "",
    "questionTimeLimit": 30,
    "allowSinglePlayer": False,
}

MAX_SOURCE_CHARS = 30000
MAX_CHAT_MESSAGES = 100
QUESTION_CACHE_TTL = 7 * 86400
FETCH_TIMEOUT = 20

QUESTION_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "questionText": {"type": "STRING"},
            "options": {"type": "ARRAY", "items": {"type": "STRING"}},
            "correctOptionIndex": {"type": "INTEGER"},
        },
        "required": ["questionText", "options", "correctOptionIndex"],
    },
}

CHAPTER_WORDS = {
    1: ["الاول", "الأول"], 2: ["الثاني"], 3: ["الثالث"], 4: ["الرابع"], 5: ["الخامس"],
    6: ["السادس"], 7: ["السابع"], 8: ["الثامن"], 9: ["التاسع"], 10: ["العاشر"],
    11: ["الحادي عشر"], 12: ["الثاني عشر"], 13: ["الثالث عشر"], 14: ["الرابع عشر"],
}

PAGE_SELECTORS = (
    '[aria-label="Page {i}"]', "#page{i}-div", "#page-{i}", "#pg-{i}",
    "#page_{i}", "#page{i}", '[id="page {i}"]',
)


# ── Source text ────────────────────────────────────────────

def _chapter_markers(number: int) -> list[str]:
    markers = []
    for word in CHAPTER_WORDS.get(number, []):
        markers.append(f"الفصل {word}")
        markers.append(f"الوحدة {word}")
    return markers


def slice_chapter(text: str, chapter: str | None) -> str:
    """Cut ``text`` down to one chapter using "الفصل X" / "الوحدة X" headings."""
    if not chapter or chapter == ALL_CHAPTERS:
        return text
    match = re.search(r"\d+", chapter)
    if not match:
        return text
    number = int(match.group())

    start = next((i for i in (text.find(m) for m in _chapter_markers(number)) if i != -1), -1)
    if start == -1:
        raise ValidationError(f'لم يتم العثور على بداية "{chapter}" في النص المستخلص.')
    rest = text[start:]
    ends = [i for i in (rest.find(m, 1) for m in _chapter_markers(number + 1)) if i != -1]
    return rest[:min(ends)] if ends else rest


def page_text(html: str, start_page: int, end_page: int) -> str:
    """Text of pages start..end, or of the whole body when no page markup is found."""
    soup = BeautifulSoup(html, "html.parser")
    parts = []
    for i in range(start_page, end_page + 1):
        for selector in PAGE_SELECTORS:
            element = soup.select_one(selector.format(i=i))
            if element is not None:
                parts.append(element.get_text())
                break
    if parts:
        return "".join(parts)

    logger.info("No page markup found, using the full body text")
    body = soup.body or soup
    for element in body.select("script, style, nav, header, footer"):
        element.decompose()
    return body.get_text()


def extract_text_from_url(url: str, start_page: int, end_page: int, chapter: str | None = None) -> str:
    try:
        response = requests.get(url, timeout=FETCH_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.warning("Fetching %s failed: %s", url, e)
        raise UpstreamError(
            "فشل الاتصال بالرابط. قد يكون الرابط غير صحيح، أو أن الموقع يمنع الوصول."
        ) from e

    text = page_text(response.text, start_page, end_page)
    if not text.strip():
        raise UpstreamError(f"Could not extract any text content from the URL for pages {start_page}-{end_page}.")
    return slice_chapter(text, chapter)


# ── Question generation ────────────────────────────────────

def build_question_prompt(text: str, count: int, grade: str, subject: str) -> str:
    return (
        f'Based on the following content for the subject "{subject}" in the grade "{grade}", '
        f"generate exactly {count} multiple-choice questions. Each question must have 4 options, "
        "and one must be correct. Ensure a mix of difficulties: 20% easy, 50% medium, 30% difficult. "
        "The questions should be in Arabic, unless the content is in English.\n\n"
        f"Content:\n---\n{text[:MAX_SOURCE_CHARS]}\n---\n"
    )


def clean_question(raw) -> dict | None:
    """Normalise one generated or submitted question; None when it is malformed."""
    if not isinstance(raw, dict):
        return None
    text = str(raw.get("questionText") or "").strip()
    options = raw.get("options")
    index = raw.get("correctOptionIndex")
    if not text or not isinstance(options, list) or len(options) != 4:
        return None
    options = [str(o).strip() for o in options]
    if not all(options) or isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < 4:
        return None
    return {"questionText": text, "options": options, "correctOptionIndex": index}


def generate_questions_from_text(
    text: str,
    count: int,
    grade: str,
    subject: str,
    principal_id: str,
    chapter: str | None = None,
) -> list[dict]:
    """Ask Gemini for ``count`` questions over ``text``; batches are cached per source."""
    if not text.strip():
        raise ValidationError("Input text is empty.")
    cache = get_cache()
    key = question_batch_key(principal_id, grade, subject, chapter or ALL_CHAPTERS, count, text)
    batch = cache.get(key)

    if batch is None:
        raw, _ = resilient_llm_call(
            build_question_prompt(text, count, grade, subject),
            json_mode=True,
            response_schema=QUESTION_SCHEMA,
        )
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            raise UpstreamError("AI did not return a valid JSON array.") from None
        if not isinstance(parsed, list):
            raise UpstreamError("AI did not return a valid JSON array.")
        batch = [q for q in map(clean_question, parsed) if q]
        if not batch:
            raise UpstreamError("AI returned no usable questions.")
        cache.set(key, batch, QUESTION_CACHE_TTL)
    else:
        logger.info("Question batch cache hit for %s/%s", grade, subject)

    questions = []
    for q in batch:
        question = {
            **q,
            "id": str(uuid.uuid4()),
            "principalId": principal_id,
            "grade": grade,
            "subject": subject,
            "createdBy": "ai",
        }
        if chapter and chapter != ALL_CHAPTERS:
            question["chapter"] = chapter
        questions.append(question)
    return questions


# ── Board rules ────────────────────────────────────────────

def winner_of(board: list[str]) -> str | None:
    """Winning symbol, "draw" on a full board, otherwise None."""
    for a, b, c in WIN_LINES:
        if board[a] and board[a] == board[b] == board[c]:
            return board[a]
    if all(board):
        return "draw"
    return None


def public_question(question: dict | None) -> dict | None:
    """A question as shown to players, without its answer."""
    if not question:
        return None
    return {k: v for k, v in question.items() if k != "correctOptionIndex"}


def new_game(principal_id: str, grade: str, subject: str, first: dict, second: dict | None, now: int) -> dict:
    players = [first]
    if second is not None:
        if second["symbol"] == first["symbol"]:
            raise ValidationError("Players must use different symbols.")
        players.append(second)
    return {
        "id": str(uuid.uuid4()),
        "principalId": principal_id,
        "grade": grade,
        "subject": subject,
        "status": "in_progress",
        "players": players,
        "board": [""] * 9,
        "xIsNext": True,
        "scores": {},
        "chat": [],
        "usedQuestionIds": [],
        "createdAt": now,
        "updatedAt": now,
    }


def load_game(game: dict) -> dict:
    """Fill the keys an empty value drops from a stored game."""
    game.setdefault("players", [])
    game.setdefault("board", [""] * 9)
    game.setdefault("scores", {})
    game.setdefault("chat", [])
    game.setdefault("usedQuestionIds", [])
    return game


def single_player(game: dict) -> bool:
    return len(game["players"]) == 1


def current_player(game: dict) -> dict:
    if single_player(game) or game["xIsNext"]:
        return game["players"][0]
    return game["players"][1]


def player_of(game: dict, user_id: str) -> dict:
    player = next((p for p in game["players"] if p["id"] == user_id), None)
    if player is None:
        raise Forbidden("You are not playing in this game.")
    return player


def _require_turn(game: dict, user_id: str) -> dict:
    if game["status"] != "in_progress":
        raise Conflict("This game is over.")
    player = player_of(game, user_id)
    if current_player(game)["id"] != user_id:
        raise Conflict("It is not your turn.")
    return player


def choose_question(bank: list[dict], used_ids: list[str]) -> dict:
    if not bank:
        raise Conflict("No questions are available for this subject yet.")
    fresh = [q for q in bank if q["id"] not in used_ids]
    return random.choice(fresh or bank)


def pick_square(game: dict, user_id: str, square: int, question: dict, now: int) -> dict:
    _require_turn(game, user_id)
    if game.get("currentQuestion"):
        raise Conflict("Answer the current question first.")
    if not isinstance(square, int) or isinstance(square, bool) or not 0 <= square < 9:
        raise ValidationError("square must be between 0 and 8.")
    if game["board"][square]:
        raise Conflict("That square is taken.")
    game["currentQuestion"] = question
    game["questionForSquare"] = square
    game["questionTimerStart"] = now
    game["usedQuestionIds"].append(question["id"])
    game["updatedAt"] = now
    return game


def _clear_question(game: dict) -> None:
    for key in ("currentQuestion", "questionForSquare", "questionTimerStart"):
        game.pop(key, None)


def _finish_turn(game: dict, now: int) -> None:
    _clear_question(game)
    result = winner_of(game["board"])
    if result:
        game["winner"] = result
        game["status"] = "finished"
    else:
        game["xIsNext"] = not game["xIsNext"]
    game["updatedAt"] = now


def question_expired(game: dict, now: int, time_limit: int) -> bool:
    start = game.get("questionTimerStart")
    return start is not None and now - start > time_limit * 1000


def answer_question(game: dict, user_id: str, option_index, now: int, time_limit: int) -> dict:
    """Apply an answer; returns {"correct", "timedOut", "correctOptionIndex"}."""
    player = _require_turn(game, user_id)
    question = game.get("currentQuestion")
    if not question:
        raise Conflict("Pick a square first.")

    timed_out = question_expired(game, now, time_limit)
    correct = not timed_out and option_index == question["correctOptionIndex"]
    square = game["questionForSquare"]
    if correct:
        game["board"][square] = player["symbol"]
        game["scores"][player["symbol"]] = game["scores"].get(player["symbol"], 0) + 1
    elif single_player(game):
        game["board"][square] = HOUSE_SYMBOL
    _finish_turn(game, now)
    return {"correct": correct, "timedOut": timed_out, "correctOptionIndex": question["correctOptionIndex"]}


def expire_question(game: dict, user_id: str, now: int, time_limit: int) -> dict:
    """Let either player move the game on once the timer has run out."""
    player_of(game, user_id)
    if game["status"] != "in_progress" or not game.get("currentQuestion"):
        raise Conflict("There is no open question.")
    if not question_expired(game, now, time_limit):
        raise Conflict("The question time has not run out yet.")
    if single_player(game):
        game["board"][game["questionForSquare"]] = HOUSE_SYMBOL
    _finish_turn(game, now)
    return game


def add_chat_message(game: dict, sender_id: str, sender_name: str, text: str, now: int) -> dict:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Message is empty.")
    message = {"id": str(uuid.uuid4()), "senderId": sender_id, "senderName": sender_name, "text": text[:500], "timestamp": now}
    game["chat"] = (game["chat"] + [message])[-MAX_CHAT_MESSAGES:]
    game["updatedAt"] = now
    return message


def points_for(game: dict, policy: str) -> dict[str, int]:
    """Leaderboard points per player id for a finished game.

    ``grant_all``: each player keeps one point per square they won.
    ``winner_takes_all``: the winner collects everyone's points; on a draw
    each player keeps their own.
    """
    own = {p["id"]: game["scores"].get(p["symbol"], 0) for p in game["players"]}
    if policy != "winner_takes_all" or game.get("winner") in (None, "draw"):
        return own
    winner = next((p["id"] for p in game["players"] if p["symbol"] == game["winner"]), None)
    if winner is None:
        return {pid: 0 for pid in own}
    return {pid: (sum(own.values()) if pid == winner else 0) for pid in own}
