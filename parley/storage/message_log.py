"""Append-only JSONL message log, one file per conversation."""

from __future__ import annotations

import hashlib
import json
import threading
from pathlib import Path
from typing import Any

from loguru import logger

from parley.bus.events import ChatMessage
from parley.storage.base import MessageStore
from parley.utils.helpers import ensure_dir, safe_filename


class JsonlMessageStore(MessageStore):
    """
    Message records are appended as ``{"type": "message", ...}`` lines and
    responded flags as ``{"type": "responded", "id": ...}`` lines. Reading a
    conversation folds the log: later message records replace earlier ones
    with the same id, and a responded flag is never cleared.

    After every ``compact_every`` appended records the conversation file is
    rewritten as its folded newest ``retain`` messages, so reads stay bounded.
    """

    def __init__(self, root: Path, compact_every: int = 500, retain: int = 1000):
        self.root = ensure_dir(root / "messages")
        self.compact_every = compact_every
        self.retain = retain
        self._lock = threading.Lock()
        self._appended: dict[str, int] = {}

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
        return self.root / f"{safe_filename(key)}-{digest}.jsonl"

    def _append(self, key: str, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        lines = "".join(json.dumps(record, ensure_ascii=False) + "\n" for record in records)
        path = self._path(key)
        with self._lock:
            if key not in self._appended:
                self._appended[key] = self._count_lines(path)
            with open(path, "a", encoding="utf-8") as f:
                f.write(lines)
            self._appended[key] += len(records)
            if self.compact_every > 0 and self._appended[key] >= self.compact_every:
                self._compact(key, path)

    @staticmethod
    def _count_lines(path: Path) -> int:
        if not path.exists():
            return 0
        with open(path, encoding="utf-8") as f:
            return sum(1 for _ in f)

    def _compact(self, key: str, path: Path) -> None:
        """Rewrite ``path`` as folded message records. Caller holds the lock."""
        messages = self._fold_lines(path, path.read_text(encoding="utf-8").splitlines())
        messages.sort(key=lambda m: m.timestamp)
        kept = messages[-self.retain :] if self.retain > 0 else messages
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(
            "".join(json.dumps({"type": "message", "message": m.to_dict()}, ensure_ascii=False) + "\n" for m in kept),
            encoding="utf-8",
        )
        tmp_path.replace(path)
        self._appended[key] = len(kept)
        logger.debug(f"Compacted {path.name}: {len(messages)} messages folded, {len(kept)} kept")

    def persist_messages(self, key: str, parent_key: str | None, messages: list[ChatMessage]) -> None:
        records = []
        for message in messages:
            payload = message.to_dict()
            if parent_key and not payload.get("parent_key"):
                payload["parent_key"] = parent_key
            records.append({"type": "message", "message": payload})
        self._append(key, records)

    def mark_responded(self, key: str, message_id: str) -> None:
        self._append(key, [{"type": "responded", "id": message_id}])

    def _fold(self, key: str) -> list[ChatMessage]:
        path = self._path(key)
        if not path.exists():
            return []
        with self._lock:
            raw_lines = path.read_text(encoding="utf-8").splitlines()
        return self._fold_lines(path, raw_lines)

    @staticmethod
    def _fold_lines(path: Path, raw_lines: list[str]) -> list[ChatMessage]:
        messages: dict[str, ChatMessage] = {}
        responded: set[str] = set()
        for line_no, line in enumerate(raw_lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                kind = record.get("type")
                if kind == "message":
                    message = ChatMessage.from_dict(record["message"])
                    if message.id in messages and messages[message.id].responded_to:
                        message.responded_to = True
                    messages[message.id] = message
                elif kind == "responded":
                    responded.add(str(record["id"]))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping corrupt line {line_no} in {path.name}: {e}")

        for message_id in responded:
            if message_id in messages:
                messages[message_id].responded_to = True
        return list(messages.values())

    def get_recent_messages(self, key: str, limit: int, min_timestamp: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        recent = [m for m in self._fold(key) if m.timestamp >= min_timestamp]
        recent.sort(key=lambda m: m.timestamp)
        recent.reverse()
        return recent[:limit]
