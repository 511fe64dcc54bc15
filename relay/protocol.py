from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

PROTOCOL_VERSION = 1


@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 8765
    request_timeout: float = 10.0

    @property
    def url(self) -> str:
        host = "127.0.0.1" if self.host in ("0.0.0.0", "") else self.host
        return f"ws://{host}:{self.port}"


def envelope(msg_type: str, payload: Dict[str, Any]) -> str:
    body: Dict[str, Any] = {"type": msg_type, "v": PROTOCOL_VERSION, "ts": datetime.now(timezone.utc).isoformat()}
    body.update(payload)
    return json.dumps(body)


def decode(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        message = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return message if isinstance(message, dict) else {}
