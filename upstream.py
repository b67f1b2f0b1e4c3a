"""Upstream provider communication and restart-and-retry for supervised providers."""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from config import AppConfig
from providers import is_supervised
from supervisor import ProcessManager
from transform import ForwardEnvelope

log = logging.getLogger("claude_proxy")


class UpstreamError(Exception):
    """The outbound call produced no HTTP response (bad URL, protocol error, ...)."""


class UpstreamTransportError(UpstreamError):
    """The outbound call failed below HTTP (connect refused/reset, DNS, ...)."""


# Failures of the outbound call other than transport errors. InvalidURL is not an HTTPError.
_SEND_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


def describe_error(e: BaseException) -> str:
    return str(e) or type(e).__name__


def build_timeout(connect_timeout_s: float) -> httpx.Timeout:
    """Bounded connect/write/pool; unbounded read so long-running streams are never cut."""
    return httpx.Timeout(
        connect=connect_timeout_s,
        write=connect_timeout_s,
        pool=connect_timeout_s,
        read=None,
    )


class UpstreamClient:
    """Send forward envelopes to provider endpoints."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(self, envelope: ForwardEnvelope) -> httpx.Response:
        """
        POST the envelope and return once response headers arrive.

        The body is left unread (streamed); the caller must close the response.
        HTTP error statuses are returned like any other response.
        """
        t0 = time.time()
        req = self._client.build_request(
            "POST",
            envelope.url,
            headers=envelope.headers,
            content=envelope.body,
        )
        resp = await self._client.send(req, stream=True)

        dt = (time.time() - t0) * 1000
        provider = envelope.provider.value if envelope.provider else "pass"
        log.info("Upstream %s provider=%s status=%s ms=%.1f", envelope.url, provider, resp.status_code, dt)
        if resp.status_code >= 400:
            log.warning(
                "Upstream error provider=%s status=%s content-type=%s",
                provider,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp


class RetrySupervisor:
    """
    Single restart-and-retry for supervised providers.

    A transport failure against a locally supervised provider restarts its
    process, waits settle_s and tries exactly once more. Other transport
    failures propagate as UpstreamTransportError; any other failure of the
    outbound call (malformed URL, protocol error) as UpstreamError, never retried.
    """

    def __init__(self, upstream: UpstreamClient, processes: ProcessManager, settle_s: float = 2.0) -> None:
        self._upstream = upstream
        self._processes = processes
        self._settle_s = settle_s

    async def send(self, envelope: ForwardEnvelope, config: AppConfig) -> httpx.Response:
        proc = self._processes.get(envelope.provider) if is_supervised(envelope.provider) else None
        generation = proc.generation if proc is not None else None

        try:
            return await self._upstream.send(envelope)
        except httpx.TransportError as e:
            if proc is None or envelope.provider is None:
                raise UpstreamTransportError(describe_error(e)) from e
            log.warning("[%s] first request failed (%s); restarting and retrying", envelope.provider.value, describe_error(e))
        except _SEND_ERRORS as e:
            raise UpstreamError(describe_error(e)) from e

        await self._processes.restart(envelope.provider, config, observed_generation=generation)
        await asyncio.sleep(self._settle_s)

        try:
            return await self._upstream.send(envelope)
        except httpx.TransportError as e:
            log.error("[%s] retry failed: %s", envelope.provider.value, describe_error(e))
            raise UpstreamTransportError(describe_error(e)) from e
        except _SEND_ERRORS as e:
            raise UpstreamError(describe_error(e)) from e
