"""Proactive message rows kept in a single JSON document."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from loguru import logger

from parley.storage.base import STATUS_SCHEDULED, ProactiveMessage, ProactiveStore
from parley.utils.helpers import ensure_dir, now_ms


class JsonProactiveStore(ProactiveStore):
    """Rows live in ``proactive.json``; every write replaces the file atomically."""

    def __init__(self, root: Path):
        self.path = ensure_dir(root) / "proactive.json"
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        try:
            if self.path.exists():
                parsed = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(parsed, dict):
                    return parsed
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Proactive store unreadable at {self.path}: {e}")
        return {"version": 1, "next_id": 1, "rows": {}}

    def _safe_write(self, payload: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self.path)

    def _rows(self, state: dict[str, Any]) -> list[ProactiveMessage]:
        rows = state.get("rows")
        if not isinstance(rows, dict):
            return []
        return [ProactiveMessage.from_dict(row) for row in rows.values()]

    def _find(self, state: dict[str, Any], public_id: str) -> dict[str, Any] | None:
        for row in (state.get("rows") or {}).values():
            if row.get("public_id") == public_id:
                return row
        return None

    def insert(
        self,
        *,
        public_id: str,
        conversation_key: str,
        persona_id: str,
        content: str,
        scheduled_at: int,
        reason: str | None,
        metadata: dict[str, Any] | None,
    ) -> int:
        with self._lock:
            state = self._read()
            internal_id = int(state.get("next_id", 1))
            stamp = now_ms()
            row = ProactiveMessage(
                internal_id=internal_id,
                public_id=public_id,
                conversation_key=conversation_key,
                persona_id=persona_id,
                content=content,
                scheduled_at=scheduled_at,
                reason=reason,
                metadata=dict(metadata or {}),
                created_at=stamp,
                updated_at=stamp,
            )
            state.setdefault("rows", {})[str(internal_id)] = row.to_dict()
            state["next_id"] = internal_id + 1
            state["version"] = 1
            self._safe_write(state)
            return internal_id

    def set_public_id(self, internal_id: int, public_id: str) -> None:
        with self._lock:
            state = self._read()
            row = (state.get("rows") or {}).get(str(internal_id))
            if row is None:
                return
            row["public_id"] = public_id
            row["updated_at"] = now_ms()
            self._safe_write(state)

    def get_by_public_id(self, public_id: str) -> ProactiveMessage | None:
        with self._lock:
            row = self._find(self._read(), public_id)
        return ProactiveMessage.from_dict(row) if row else None

    def list_by_status(self, key: str | None, status: str) -> list[ProactiveMessage]:
        with self._lock:
            rows = self._rows(self._read())
        matched = [
            row for row in rows
            if row.status == status and (key is None or row.conversation_key == key)
        ]
        return sorted(matched, key=lambda row: (row.scheduled_at, row.internal_id))

    def list_due(self, now_ms: int) -> list[ProactiveMessage]:
        return [row for row in self.list_by_status(None, STATUS_SCHEDULED) if row.scheduled_at <= now_ms]

    def _mutate(self, public_id: str, changes: dict[str, Any]) -> bool:
        with self._lock:
            state = self._read()
            row = self._find(state, public_id)
            if row is None or row.get("status") != STATUS_SCHEDULED:
                return False
            row.update(changes)
            row["updated_at"] = now_ms()
            self._safe_write(state)
            return True

    def update_status(self, public_id: str, status: str) -> bool:
        return self._mutate(public_id, {"status": status})

    def reschedule(
        self,
        public_id: str,
        scheduled_at: int,
        content: str | None = None,
        reason: str | None = None,
    ) -> bool:
        changes: dict[str, Any] = {"scheduled_at": scheduled_at}
        if content is not None:
            changes["content"] = content
        if reason is not None:
            changes["reason"] = reason
        return self._mutate(public_id, changes)

    def update_content(self, public_id: str, content: str) -> bool:
        return self._mutate(public_id, {"content": content})
