"""File-backed storage for extracted memories."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Sequence

from .extractor import ExtractedMemory

LOGGER = logging.getLogger(__name__)

_DEFAULT_MEMORY_PATH = Path.home() / ".crowchat" / "memories.jsonl"


class JsonlMemorySink:
    """Appends one JSON record per memory to a ``.jsonl`` file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_MEMORY_PATH

    @property
    def path(self) -> Path:
        return self._path

    async def save_memories(self, conversation_id: str, memories: Sequence[ExtractedMemory]) -> None:
        if not memories:
            return
        created_at = int(time.time() * 1000)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            for memory in memories:
                record = {"conversationId": conversation_id, "createdAt": created_at, **memory.to_dict()}
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        LOGGER.info("Saved %d memor(ies) from %s to %s", len(memories), conversation_id, self._path)

    def load(self) -> list[dict[str, Any]]:
        """Return every stored record; unreadable lines are skipped."""

        if not self._path.exists():
            return []
        records: list[dict[str, Any]] = []
        for number, line in enumerate(self._path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                LOGGER.warning("Skipping malformed memory record on line %d of %s", number, self._path)
        return records


__all__ = ["JsonlMemorySink"]
