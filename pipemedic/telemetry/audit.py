from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class AuditLogger:
    """
    Append-only JSONL audit trail. Every incident transition, provider failure
    and self-heal decision is written here; the status API tails it.
    """

    _lock = threading.Lock()

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "pipemedic",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z",
            "correlation_id": correlation_id,
            "actor": actor,
            "event_type": event_type,
            "payload": payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)

    def tail(self, n: int = 200) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.readlines()[-max(1, n) :]
        out: List[Dict[str, Any]] = []
        for ln in lines:
            try:
                out.append(json.loads(ln))
            except json.JSONDecodeError:
                continue
        return out
