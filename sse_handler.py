"""Server-Sent Events (SSE) handling: response relay and content filtering."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx

log = logging.getLogger("claude_proxy")

# Framing headers that belong to the backend connection, not to the relayed response.
# content-encoding is dropped too: the relay forwards decoded bytes.
_HOP_HEADERS = frozenset({"connection", "keep-alive", "transfer-encoding", "content-length", "content-encoding"})
DEFAULT_CONTENT_TYPE = "application/json"

StreamCompleteCallback = Callable[[bytes, Optional[str]], None]


def is_done_data_line(line: str) -> bool:
    """True for an SSE data line carrying the [DONE] sentinel, with any spacing."""
    if not line.startswith("data:"):
        return False
    return line[len("data:"):].strip() == "[DONE]"


def sse_data_payloads(text: str) -> List[str]:
    """Payloads of every "data: " line (literal prefix with one space), excluding [DONE]."""
    out: List[str] = []
    for line in text.split("\n"):
        line = line.rstrip("\r")
        if not line.startswith("data: ") or is_done_data_line(line):
            continue
        out.append(line[len("data: "):])
    return out


def is_empty_content_block(payload: Any) -> bool:
    """
    True for a content_block_start payload announcing an empty block:
    tool_use with input == {} or text with text == "".
    """
    if not isinstance(payload, dict):
        return False
    block = payload.get("content_block")
    if not isinstance(block, dict):
        return False
    block_type = block.get("type")
    if block_type == "tool_use":
        tool_input = block.get("input")
        return isinstance(tool_input, dict) and not tool_input
    if block_type == "text":
        return block.get("text") == ""
    return False


def filter_empty_content_blocks(chunk: bytes) -> bytes:
    """
    Drop empty content_block_start events from one SSE chunk.

    The whole event is removed: its "event:" line, its "data:" line and the
    blank line that terminates it. Everything else passes through unchanged,
    including data lines that fail to parse. Works on the lines contained in
    this chunk only; nothing is carried over between chunks.
    """
    text = chunk.decode("utf-8", errors="replace")
    lines = text.split("\n")
    out: List[str] = []

    current_event = ""
    event_start = 0  # index in `out` of the current event's first line
    skipping = False

    for line in lines:
        bare = line.rstrip("\r")

        if skipping:
            if bare == "":
                # Terminator of the dropped event.
                skipping = False
                current_event = ""
                event_start = len(out)
                continue
            if not bare.startswith("event:"):
                continue
            skipping = False

        if bare.startswith("event:"):
            current_event = bare[len("event:"):].strip()
            event_start = len(out)
        elif bare.startswith("data:") and current_event == "content_block_start":
            try:
                payload = json.loads(bare[len("data:"):].strip())
            except ValueError:
                payload = None
            if is_empty_content_block(payload):
                del out[event_start:]
                skipping = True
                continue

        out.append(line)
        if bare == "":
            current_event = ""
            event_start = len(out)

    if out == lines:
        return chunk
    return "\n".join(out).encode("utf-8")


def relay_headers(headers: httpx.Headers) -> Dict[str, str]:
    """Backend response headers for the caller, minus framing headers, always with a content-type."""
    out: Dict[str, str] = {}
    for key, value in headers.multi_items():
        k = key.lower()
        if k in _HOP_HEADERS:
            continue
        if k in out:
            out[k] = f"{out[k]}, {value}"
        else:
            out[k] = value
    if not out.get("content-type"):
        out["content-type"] = DEFAULT_CONTENT_TYPE
    return out


class StreamRelay:
    """Copy a backend response to the caller chunk by chunk."""

    def __init__(
        self,
        resp: httpx.Response,
        *,
        filter_events: bool = False,
        collect: bool = False,
        on_complete: Optional[StreamCompleteCallback] = None,
        req_id: str = "",
    ) -> None:
        self._resp = resp
        self._filter_events = filter_events
        self._collect = collect
        self._on_complete = on_complete
        self._req_id = req_id
        self._chunks: List[bytes] = []

    @property
    def body(self) -> bytes:
        """Everything forwarded so far (only when collecting)."""
        return b"".join(self._chunks)

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """
        Yield backend chunks as they arrive.

        The backend response is always closed, including when the caller
        disconnects and the generator is cancelled. The completion callback runs
        only when the stream ended on its own (normally or with a read error).
        """
        error: Optional[str] = None
        cancelled = False
        try:
            async for chunk in self._resp.aiter_bytes():
                if self._filter_events:
                    chunk = filter_empty_content_blocks(chunk)
                    if not chunk:
                        continue
                if self._collect:
                    self._chunks.append(chunk)
                yield chunk
        except (asyncio.CancelledError, GeneratorExit):
            cancelled = True
            raise
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__
            log.warning("Backend stream ended with error req_id=%s err=%r", self._req_id, e)
        finally:
            with contextlib.suppress(Exception):
                await self._resp.aclose()
            if cancelled:
                log.info("Client disconnected; backend stream closed req_id=%s", self._req_id)

        log.info("Request complete req_id=%s status=%s", self._req_id, self._resp.status_code)
        if self._on_complete is not None:
            self._on_complete(self.body, error)
