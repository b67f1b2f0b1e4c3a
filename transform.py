"""Request transformation: body rewrite, header assembly and target URL construction."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from mapping import ResolvedTarget
from providers import AuthMethod, ProviderKind

log = logging.getLogger("claude_proxy")

# Transport-local headers, recomputed by the outbound client. accept-encoding is
# left to httpx so the backend only picks encodings the relay can decode.
_STRIPPED_HEADERS = frozenset({"host", "connection", "content-length", "transfer-encoding", "accept-encoding"})
_AUTH_HEADERS = frozenset({"x-api-key", "authorization"})


@dataclass(frozen=True)
class ForwardEnvelope:
    """Everything needed for one outbound call."""

    url: str
    headers: Dict[str, str]
    body: bytes
    provider: Optional[ProviderKind] = None
    # Post-transformation parsed body (None when the body is not JSON).
    json_body: Any = None


def parse_json_body(raw: bytes) -> Any:
    """Parse a request body as JSON; None when it is empty or not JSON."""
    if not raw:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def merge_headers(items: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Lower-case header names; repeated headers are joined with ', '."""
    out: Dict[str, str] = {}
    for k, v in items:
        key = k.lower()
        if key in out:
            out[key] = f"{out[key]}, {v}"
        else:
            out[key] = v
    return out


def rewrite_model(raw: bytes, body: Any, model: Optional[str]) -> Tuple[bytes, Any]:
    """
    Replace the top-level "model" field.

    Returns (outbound bytes, outbound parsed body). The original bytes are kept
    when there is nothing to replace or the body is not a JSON object with a model.
    """
    if not model or not isinstance(body, dict) or "model" not in body:
        return raw, body
    out = dict(body)
    out["model"] = model
    data = json.dumps(out, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return data, out


def build_headers(inbound: Dict[str, str], target: Optional[ResolvedTarget]) -> Dict[str, str]:
    """Outbound headers: inbound minus transport headers, auth replaced when the target has a credential."""
    credential = None
    method = AuthMethod.NONE
    if target is not None and target.credential and target.auth_method is not AuthMethod.NONE:
        credential = target.credential
        method = target.auth_method

    out: Dict[str, str] = {}
    for key, value in inbound.items():
        k = key.lower()
        if k in _STRIPPED_HEADERS:
            continue
        if credential and k in _AUTH_HEADERS:
            continue
        out[k] = value

    if method is AuthMethod.X_API_KEY:
        out["x-api-key"] = credential
    elif method is AuthMethod.BEARER:
        out["authorization"] = f"Bearer {credential}"
    return out


def build_url(base_url: str, path_and_query: str) -> str:
    """Join a base URL with the inbound path and query, which are kept verbatim."""
    if not path_and_query.startswith("/"):
        path_and_query = "/" + path_and_query
    return base_url.rstrip("/") + path_and_query


def build_envelope(
    raw_body: bytes,
    body: Any,
    target: Optional[ResolvedTarget],
    inbound_headers: Dict[str, str],
    path_and_query: str,
    default_base_url: str,
) -> ForwardEnvelope:
    """Build the outbound request for a resolved target, or for pass-through when target is None."""
    if target is None:
        return ForwardEnvelope(
            url=build_url(default_base_url, path_and_query),
            headers=build_headers(inbound_headers, None),
            body=raw_body,
            provider=None,
            json_body=body,
        )

    out_bytes, out_body = rewrite_model(raw_body, body, target.model)
    return ForwardEnvelope(
        url=build_url(target.endpoint, path_and_query),
        headers=build_headers(inbound_headers, target),
        body=out_bytes,
        provider=target.provider,
        json_body=out_body,
    )
