"""
Audit log: one JSON document per proxied request.

Records are written once into a flat directory and never read back by the
service. Writing is best-effort: failures come back as an AuditResult and never
reach the proxied request.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from config import AppConfig
from logger import mask_secret
from mapping import MappingInfo
from sse_handler import sse_data_payloads

log = logging.getLogger("claude_proxy")

_SECRET_HEADERS = frozenset({"x-api-key", "authorization"})


@dataclass(frozen=True)
class RequestSnapshot:
    url: str
    method: str
    headers: Dict[str, str]
    body: Any
    mapping: Optional[MappingInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method,
            "headers": redact_headers(self.headers),
            "body": self.body,
            "mapping": self.mapping.to_dict() if self.mapping else None,
        }


@dataclass(frozen=True)
class ResponseSnapshot:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "headers": dict(self.headers), "body": self.body}


@dataclass(frozen=True)
class AuditResult:
    """Outcome of one record() call."""

    path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def written(self) -> bool:
        return self.path is not None


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: (mask_secret(v) if k.lower() in _SECRET_HEADERS else v) for k, v in headers.items()}


def parse_response_body(raw: bytes) -> Any:
    """
    Best structured form of a response body.

    1. the whole body as one JSON value;
    2. an event stream: {"isStreaming": True, "chunks": [...], "rawText": ...}
       built from every "data: " line that parses as JSON;
    3. the raw text.
    """
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        pass

    if "data:" in text:
        chunks = []
        for payload in sse_data_payloads(text):
            try:
                chunks.append(json.loads(payload))
            except ValueError:
                continue
        if chunks:
            return {"isStreaming": True, "chunks": chunks, "rawText": text}
    return text


def request_body_for_record(json_body: Any, raw: bytes) -> Any:
    """Parsed body when the request was JSON, otherwise its text (None when empty)."""
    if json_body is not None:
        return json_body
    if not raw:
        return None
    return raw.decode("utf-8", errors="replace")


class AuditSink:
    """Writes audit records into a directory when enabled."""

    def __init__(self, log_dir: str | Path, enabled: bool = False) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._enabled = enabled

    @classmethod
    def from_config(cls, config: AppConfig) -> AuditSink:
        return cls(config.audit_log_dir, enabled=config.json_logging)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def record(
        self,
        request: RequestSnapshot,
        response: Optional[ResponseSnapshot],
        error: Optional[str] = None,
    ) -> AuditResult:
        """Write one record. Never raises."""
        if not self._enabled:
            return AuditResult()

        now = datetime.now(timezone.utc)
        timestamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        record_id = secrets.token_hex(6)
        doc = {
            "id": record_id,
            "timestamp": timestamp,
            "request": request.to_dict(),
            "response": response.to_dict() if response else None,
            "error": error,
        }
        filename = f"{timestamp.replace(':', '-')}-{record_id}.json"
        path = self._log_dir / filename
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            data = json.dumps(doc, ensure_ascii=False, indent=2, default=str)
            path.write_text(data, encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            log.warning("Failed to write audit record %s: %s", path, e)
            return AuditResult(error=f"{type(e).__name__}: {e}")
        log.debug("Audit record saved: %s", filename)
        return AuditResult(path=path)
