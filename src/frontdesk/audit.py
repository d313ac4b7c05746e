"""
Audit sink for finished calls.

Built once per process and shared by all pipelines. Each session record is
written exactly once to `<audit_dir>/<session_id>.json`.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, Optional, Set

import msgspec
import structlog

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


class AuditSink:
    def __init__(self, audit_dir: str = "logs"):
        self.audit_dir = Path(audit_dir)
        self._written: Set[str] = set()
        self._encoder = msgspec.json.Encoder()

    def path_for(self, session_id: str) -> Path:
        return self.audit_dir / f"{_UNSAFE_CHARS.sub('_', session_id)}.json"

    def has_written(self, session_id: str) -> bool:
        return session_id in self._written

    async def write(self, record: Dict[str, Any]) -> Optional[Path]:
        """Persist one session record. A second write for the same session is ignored."""
        session_id = str(record.get("session_id", ""))
        if session_id in self._written:
            logger.warning("Audit record already written", session_id=session_id)
            return None
        self._written.add(session_id)

        path = self.path_for(session_id)
        payload = msgspec.json.format(self._encoder.encode(record), indent=2)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)

        await asyncio.to_thread(_write)
        logger.info(
            "Audit record saved",
            session_id=session_id,
            path=str(path),
            intents=record.get("intents", []),
            tool_calls=len(record.get("tool_trace", [])),
        )
        return path
