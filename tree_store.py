"""
Path-addressed record tree on top of the SQLite connection.

Every record in the portal lives somewhere under a slash-separated path such
as ``classes/{id}`` or ``messages/{conversationId}/{messageId}``. Leaves are
stored one row per path in the ``nodes`` table, so any subtree can be read,
replaced or removed with a single range query. Writes are atomic and the last
writer wins.

Usage:
    from tree_store import get_tree
    tree = get_tree()
    tree.set(f"users/{uid}", {"name": "..."})
    tree.update("", {f"conversations/{pid}/{cid}": conv, f"messages/{cid}/{mid}": msg})
    users = tree.children("users")
"""

from __future__ import annotations

import json
import secrets
import threading
import time
from typing import Any

from database import get_db
from errors import ValidationError

_FORBIDDEN_KEY_CHARS = set(".#$[]")
_PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class InvalidPathError(ValidationError):
    pass


def check_key(key: str) -> None:
    """Reject keys that cannot name a node: empty, or holding ``/ . # $ [ ]``."""
    if not key or not key.strip():
        raise InvalidPathError("Empty key")
    if "/" in key or _FORBIDDEN_KEY_CHARS & set(key):
        raise InvalidPathError(f"Key {key!r} contains a forbidden character")


def _split(path: str) -> list[str]:
    stripped = path.strip("/")
    keys = stripped.split("/") if stripped else []
    for key in keys:
        check_key(key)
    return keys


def normalize(path: str) -> str:
    return "/".join(_split(path))


def join(*parts: str) -> str:
    return normalize("/".join(p.strip("/") for p in parts if p and p.strip("/")))


def _flatten(value: Any, prefix: str) -> list[tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, dict):
        rows: list[tuple[str, str]] = []
        for key, child in value.items():
            key = str(key)
            check_key(key)
            rows.extend(_flatten(child, f"{prefix}/{key}" if prefix else key))
        return rows
    if isinstance(value, (list, tuple)):
        rows = []
        for i, child in enumerate(value):
            rows.extend(_flatten(child, f"{prefix}/{i}" if prefix else str(i)))
        return rows
    if not prefix:
        raise InvalidPathError("Cannot store a scalar at the root")
    return [(prefix, json.dumps(value, ensure_ascii=False))]


def _listify(node: Any) -> Any:
    """Dicts keyed exactly "0".."n-1" read back as lists."""
    if not isinstance(node, dict):
        return node
    converted = {k: _listify(v) for k, v in node.items()}
    keys = list(converted)
    if keys and all(k.isdigit() for k in keys):
        indices = sorted(int(k) for k in keys)
        if indices == list(range(len(indices))) and all(str(i) in converted for i in indices):
            return [converted[str(i)] for i in indices]
    return converted


class _PushKeyGenerator:
    """Chronologically sortable 20-char keys, unique within the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = 0
        self._last_rand: list[int] = [0] * 12

    def __call__(self) -> str:
        with self._lock:
            now = int(time.time() * 1000)
            if now == self._last_ms:
                for i in range(11, -1, -1):
                    if self._last_rand[i] != 63:
                        self._last_rand[i] += 1
                        break
                    self._last_rand[i] = 0
            else:
                self._last_ms = now
                self._last_rand = [secrets.randbelow(64) for _ in range(12)]

            ts_chars = []
            for _ in range(8):
                ts_chars.append(_PUSH_CHARS[now % 64])
                now //= 64
            return "".join(reversed(ts_chars)) + "".join(_PUSH_CHARS[r] for r in self._last_rand)


push_key = _PushKeyGenerator()


class TreeStore:
    """Read/write access to the record tree over one connection."""

    def __init__(self, db) -> None:
        self.db = db

    # ── reads ──────────────────────────────────────────────

    def _rows(self, path: str) -> list:
        if not path:
            return self.db.execute("SELECT path, value FROM nodes ORDER BY path").fetchall()
        # '/' sorts immediately before '0', so [p/, p0) is exactly the subtree
        return self.db.execute(
            "SELECT path, value FROM nodes WHERE path = ? OR (path >= ? AND path < ?) ORDER BY path",
            (path, path + "/", path + "0"),
        ).fetchall()

    def get(self, path: str) -> Any:
        path = normalize(path)
        rows = self._rows(path)
        if not rows:
            return None
        if len(rows) == 1 and rows[0]["path"] == path:
            return json.loads(rows[0]["value"])

        root: dict = {}
        offset = len(path) + 1 if path else 0
        for row in rows:
            keys = row["path"][offset:].split("/")
            node = root
            for key in keys[:-1]:
                node = node.setdefault(key, {})
            node[keys[-1]] = json.loads(row["value"])
        return _listify(root)

    def exists(self, path: str) -> bool:
        return bool(self._rows(normalize(path)))

    def children(self, path: str) -> list:
        """Child values of a node, in key order."""
        value = self.get(path)
        if isinstance(value, dict):
            return list(value.values())
        if isinstance(value, list):
            return [v for v in value if v is not None]
        return []

    # ── writes ─────────────────────────────────────────────

    def _write(self, path: str, value: Any) -> None:
        if path:
            self.db.execute(
                "DELETE FROM nodes WHERE path = ? OR (path >= ? AND path < ?)",
                (path, path + "/", path + "0"),
            )
            keys = path.split("/")
            ancestors = ["/".join(keys[:i]) for i in range(1, len(keys))]
            if ancestors:
                placeholders = ",".join("?" for _ in ancestors)
                self.db.execute(f"DELETE FROM nodes WHERE path IN ({placeholders})", ancestors)
        else:
            self.db.execute("DELETE FROM nodes")
        rows = _flatten(value, path)
        if rows:
            self.db.executemany("INSERT INTO nodes (path, value) VALUES (?, ?)", rows)

    def set(self, path: str, value: Any) -> None:
        path = normalize(path)
        with self.db:
            self._write(path, value)

    def remove(self, path: str) -> None:
        self.set(path, None)

    def update(self, path: str, updates: dict[str, Any]) -> None:
        """Apply several writes relative to ``path`` in one transaction."""
        base = normalize(path)
        targets: set[str] = set()
        for rel in updates:
            target = join(base, rel)
            if target in targets:
                raise InvalidPathError(f"Overlapping update paths: {target!r} appears twice")
            targets.add(target)
        for target in targets:
            keys = target.split("/")
            for depth in range(1, len(keys)):
                ancestor = "/".join(keys[:depth])
                if ancestor in targets:
                    raise InvalidPathError(f"Overlapping update paths: {ancestor!r} and {target!r}")
        with self.db:
            for rel, value in updates.items():
                self._write(join(base, rel), value)

    def push(self, path: str, value: Any) -> str:
        key = push_key()
        self.set(join(path, key), value)
        return key

    def transaction(self, path: str, fn) -> Any:
        """Read-modify-write of one node inside a single transaction."""
        path = normalize(path)
        if not self.db.in_transaction:
            self.db.execute("BEGIN IMMEDIATE")
        with self.db:
            current = self.get(path)
            new_value = fn(current)
            self._write(path, new_value)
        return new_value


def get_tree() -> TreeStore:
    return TreeStore(get_db())
