"""
End-to-end tests for the proxy front door.

Backends are httpx.MockTransport handlers; the app is driven in-process through
httpx.ASGITransport.

Tests cover:
- Routed and pass-through requests
- Method restriction
- Audit records
- Event filtering for litellm
- Restart-and-retry and the synthetic 500
"""

import asyncio
import gzip
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from proxy_service import ProxyContext, create_app
from providers import ProviderKind

SSE_BODY = (
    'event: message_start\ndata: {"type":"message_start"}\n\n'
    'event: content_block_start\ndata: {"type":"content_block_start","index":0,'
    '"content_block":{"type":"text","text":""}}\n\n'
    'event: content_block_start\ndata: {"type":"content_block_start","index":1,'
    '"content_block":{"type":"text","text":"Hello"}}\n\n'
    'event: message_stop\ndata: {"type":"message_stop"}\n\n'
)


class Backend:
    """Records outbound requests and answers them with a configurable handler."""

    def __init__(self, responder=None):
        self.requests = []
        self._responder = responder or (lambda request: httpx.Response(200, json={"id": "msg_1"}))

    def __call__(self, request):
        self.requests.append(request)
        return self._responder(request)

    @property
    def last(self):
        return self.requests[-1]

    def last_json(self):
        return json.loads(self.last.content)


class FakeProcess:
    def __init__(self):
        self.pid = 4242
        self.returncode = None
        self.stdout = None
        self.stderr = None

    def terminate(self):
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    async def wait(self):
        return self.returncode


@pytest.fixture
async def make_client(make_config):
    """Yield a factory building an in-process client for a config and backend."""
    built = []

    async def _make(env, backend, launcher=None):
        config = make_config(env)
        ctx = ProxyContext.create(
            config,
            config_loader=lambda: config,
            transport=httpx.MockTransport(backend),
            launcher=launcher or AsyncMock(side_effect=lambda *a, **kw: FakeProcess()),
        )
        app = create_app(ctx)
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
        client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
        built.append((client, ctx))
        return client

    yield _make

    for client, ctx in built:
        await client.aclose()
        await ctx.aclose()


async def _post(client, body, path="/v1/messages", headers=None):
    headers = {"x-api-key": "user-key", "anthropic-version": "2023-06-01", **(headers or {})}
    if isinstance(body, (bytes, str)):
        return await client.post(path, content=body, headers=headers)
    return await client.post(path, json=body, headers=headers)


GLM_ENV = {
    "MAPPING_HAIKU": "glm:glm-4.5-air",
    "MAPPING_MAIN": "pass",
    "GLM_ENABLED": "true",
    "GLM_API_KEY": "glm-secret-key",
}


# ============================================================================
# Routing Tests
# ============================================================================

class TestRouting:

    @pytest.mark.asyncio
    async def test_haiku_routed_to_provider(self, make_client):
        backend = Backend()
        client = await make_client(GLM_ENV, backend)

        resp = await _post(client, {"model": "claude-3-5-haiku-20241022", "max_tokens": 5, "messages": []})

        assert resp.status_code == 200
        assert resp.json() == {"id": "msg_1"}
        assert str(backend.last.url) == "https://open.bigmodel.cn/api/anthropic/v1/messages"
        assert backend.last_json() == {"model": "glm-4.5-air", "max_tokens": 5, "messages": []}
        assert backend.last.headers["x-api-key"] == "glm-secret-key"
        assert backend.last.headers["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_main_passed_through_unchanged(self, make_client):
        backend = Backend()
        client = await make_client(GLM_ENV, backend)
        raw = b'{"model":  "claude-sonnet-4-5",   "messages": []}'

        resp = await _post(client, raw, path="/v1/messages?beta=true")

        assert resp.status_code == 200
        assert str(backend.last.url) == "https://api.anthropic.com/v1/messages?beta=true"
        assert backend.last.content == raw
        assert backend.last.headers["x-api-key"] == "user-key"

    @pytest.mark.asyncio
    async def test_disabled_provider_passes_through(self, make_client):
        backend = Backend()
        client = await make_client({**GLM_ENV, "GLM_ENABLED": "false"}, backend)

        resp = await _post(client, {"model": "claude-3-5-haiku-20241022"})

        assert resp.status_code == 200
        assert backend.last.url.host == "api.anthropic.com"
        assert backend.last_json() == {"model": "claude-3-5-haiku-20241022"}
        assert backend.last.headers["x-api-key"] == "user-key"

    @pytest.mark.asyncio
    async def test_non_json_body_passes_through(self, make_client):
        backend = Backend()
        client = await make_client(GLM_ENV, backend)

        resp = await _post(client, b"not json at all", headers={"content-type": "text/plain"})

        assert resp.status_code == 200
        assert backend.last.url.host == "api.anthropic.com"
        assert backend.last.content == b"not json at all"

    @pytest.mark.asyncio
    async def test_backend_error_status_is_relayed(self, make_client):
        backend = Backend(lambda request: httpx.Response(401, json={"error": {"type": "authentication_error"}}))
        client = await make_client(GLM_ENV, backend)

        resp = await _post(client, {"model": "claude-3-5-haiku-20241022"})

        assert resp.status_code == 401
        assert resp.json() == {"error": {"type": "authentication_error"}}

    @pytest.mark.asyncio
    async def test_client_accept_encoding_not_forwarded(self, make_client):
        client_encodings = "br;q=1.0, gzip;q=0.5"
        payload = {"id": "msg_1", "content": [{"type": "text", "text": "hi"}]}

        def responder(request):
            if request.headers.get("accept-encoding") == client_encodings:
                # Backend honours the client's preference; bytes the relay cannot decode.
                return httpx.Response(
                    200,
                    content=b"\x1b\x0b\x00\xf8\xa5[\xb2\x8f",
                    headers={"content-type": "application/json", "content-encoding": "br"},
                )
            return httpx.Response(
                200,
                content=gzip.compress(json.dumps(payload).encode()),
                headers={"content-type": "application/json", "content-encoding": "gzip"},
            )

        backend = Backend(responder)
        client = await make_client(GLM_ENV, backend)

        resp = await _post(client, {"model": "claude-sonnet-4-5"}, headers={"accept-encoding": client_encodings})

        assert backend.last.headers.get("accept-encoding") != client_encodings
        assert resp.status_code == 200
        assert "content-encoding" not in resp.headers
        assert resp.json() == payload

    @pytest.mark.asyncio
    async def test_custom_response_headers_relayed(self, make_client):
        backend = Backend(
            lambda request: httpx.Response(
                200, content=b"data: {}\n\n", headers={"content-type": "text/event-stream", "request-id": "req_9"}
            )
        )
        client = await make_client(GLM_ENV, backend)

        resp = await _post(client, {"model": "claude-sonnet-4-5", "stream": True})

        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["request-id"] == "req_9"
        assert resp.content == b"data: {}\n\n"


# ============================================================================
# Method Tests
# ============================================================================

class TestMethods:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH", "OPTIONS"])
    async def test_non_post_rejected(self, make_client, method):
        backend = Backend()
        client = await make_client(GLM_ENV, backend)

        resp = await client.request(method, "/v1/messages")

        assert resp.status_code == 405
        assert resp.headers["allow"] == "POST"
        assert resp.text == "Method Not Allowed"
        assert backend.requests == []


# ============================================================================
# Audit Tests
# ============================================================================

class TestAudit:

    @pytest.mark.asyncio
    async def test_audit_record_written(self, make_client, tmp_path):
        backend = Backend()
        client = await make_client({**GLM_ENV, "JSON_LOGGING": "true"}, backend)

        resp = await _post(client, {"model": "claude-3-5-haiku-20241022", "messages": []})
        assert resp.status_code == 200

        files = list((tmp_path / "audit").glob("*.json"))
        assert len(files) == 1
        doc = json.loads(files[0].read_text(encoding="utf-8"))
        assert doc["request"]["method"] == "POST"
        assert doc["request"]["url"] == "/v1/messages"
        assert doc["request"]["body"]["model"] == "glm-4.5-air"
        assert doc["request"]["headers"]["x-api-key"] == "glm-se...-key"
        assert doc["request"]["mapping"] == {
            "originalModel": "claude-3-5-haiku-20241022",
            "targetModel": "glm-4.5-air",
            "endpoint": "https://open.bigmodel.cn/api/anthropic",
            "modelType": "haiku",
            "provider": "glm",
        }
        assert doc["response"]["status"] == 200
        assert doc["response"]["body"] == {"id": "msg_1"}
        assert doc["error"] is None

    @pytest.mark.asyncio
    async def test_streamed_response_recorded(self, make_client, tmp_path):
        backend = Backend(
            lambda request: httpx.Response(200, content=SSE_BODY.encode(), headers={"content-type": "text/event-stream"})
        )
        client = await make_client({**GLM_ENV, "JSON_LOGGING": "true"}, backend)

        await _post(client, {"model": "claude-sonnet-4-5", "stream": True})

        doc = json.loads(next((tmp_path / "audit").glob("*.json")).read_text(encoding="utf-8"))
        assert doc["request"]["mapping"] is None
        assert doc["response"]["body"]["isStreaming"] is True
        assert len(doc["response"]["body"]["chunks"]) == 4

    @pytest.mark.asyncio
    async def test_audit_disabled(self, make_client, tmp_path):
        client = await make_client(GLM_ENV, Backend())
        await _post(client, {"model": "claude-3-5-haiku-20241022"})
        assert not (tmp_path / "audit").exists()


# ============================================================================
# Supervised Provider Tests
# ============================================================================

class TestSupervisedProviders:

    @pytest.fixture
    def litellm_env(self, tmp_path):
        cfg_file = tmp_path / "litellm.yaml"
        cfg_file.write_text("model_list: []\n", encoding="utf-8")
        return {
            "MAPPING_MAIN": "litellm:qwen3-coder",
            "LITELLM_ENABLED": "true",
            "LITELLM_CONFIG_PATH": str(cfg_file),
            "RETRY_SETTLE_S": "0",
        }

    @pytest.fixture
    def cliproxyapi_env(self, tmp_path):
        cfg_file = tmp_path / "cliproxyapi.yaml"
        cfg_file.write_text("port: 4200\n", encoding="utf-8")
        return {
            "MAPPING_MAIN": "cliproxyapi:gpt-5",
            "CLIPROXYAPI_ENABLED": "true",
            "CLIPROXYAPI_API_KEY": "cpa-key",
            "CLIPROXYAPI_CONFIG_PATH": str(cfg_file),
            "RETRY_SETTLE_S": "0",
        }

    @pytest.mark.asyncio
    async def test_litellm_empty_blocks_filtered(self, make_client, litellm_env):
        backend = Backend(
            lambda request: httpx.Response(200, content=SSE_BODY.encode(), headers={"content-type": "text/event-stream"})
        )
        client = await make_client(litellm_env, backend)

        resp = await _post(client, {"model": "claude-sonnet-4-5", "stream": True})

        assert resp.status_code == 200
        assert str(backend.last.url) == "http://127.0.0.1:4100/v1/messages"
        assert backend.last_json()["model"] == "qwen3-coder"
        assert '"text":""' not in resp.text
        assert '"text":"Hello"' in resp.text
        assert resp.text.count("event: content_block_start") == 1
        assert "event: message_stop" in resp.text

    @pytest.mark.asyncio
    async def test_other_providers_not_filtered(self, make_client, cliproxyapi_env):
        backend = Backend(
            lambda request: httpx.Response(200, content=SSE_BODY.encode(), headers={"content-type": "text/event-stream"})
        )
        client = await make_client(cliproxyapi_env, backend)

        resp = await _post(client, {"model": "claude-sonnet-4-5", "stream": True})

        assert resp.text == SSE_BODY
        assert backend.last.headers["authorization"] == "Bearer cpa-key"
        assert "x-api-key" not in backend.last.headers

    @pytest.mark.asyncio
    async def test_restart_and_retry_succeeds(self, make_client, cliproxyapi_env):
        def responder(request):
            if len(backend.requests) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"id": "msg_retry"})

        backend = Backend(responder)
        launched = []

        async def launch(*argv, **kwargs):
            launched.append(argv)
            return FakeProcess()

        client = await make_client(cliproxyapi_env, backend, launcher=AsyncMock(side_effect=launch))

        resp = await _post(client, {"model": "claude-sonnet-4-5"})

        assert resp.status_code == 200
        assert resp.json() == {"id": "msg_retry"}
        assert len(backend.requests) == 2
        # Started by the first request's reconcile, then restarted once.
        assert len(launched) == 2

    @pytest.mark.asyncio
    async def test_retry_failure_returns_500(self, make_client, cliproxyapi_env, tmp_path):
        def responder(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = Backend(responder)
        client = await make_client({**cliproxyapi_env, "JSON_LOGGING": "true"}, backend)

        resp = await _post(client, {"model": "claude-sonnet-4-5"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "connection refused"}
        assert resp.headers["connection"] == "close"
        assert len(backend.requests) == 2

        doc = json.loads(next((tmp_path / "audit").glob("*.json")).read_text(encoding="utf-8"))
        assert doc["response"] is None
        assert doc["error"] == "connection refused"

    @pytest.mark.asyncio
    async def test_remote_failure_returns_500_without_retry(self, make_client):
        def responder(request):
            raise httpx.ConnectError("name resolution failed", request=request)

        backend = Backend(responder)
        client = await make_client(GLM_ENV, backend)

        resp = await _post(client, {"model": "claude-3-5-haiku-20241022"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "name resolution failed"}
        assert len(backend.requests) == 1


    @pytest.mark.asyncio
    async def test_malformed_endpoint_returns_json_500(self, make_client, tmp_path):
        backend = Backend()
        env = {
            "MAPPING_MAIN": "custom:m",
            "CUSTOM_ENABLED": "true",
            "CUSTOM_BASE_URL": "http://[::1",
            "JSON_LOGGING": "true",
        }
        client = await make_client(env, backend)

        resp = await _post(client, {"model": "claude-sonnet-4-5"})

        assert resp.status_code == 500
        assert resp.headers["connection"] == "close"
        assert resp.json()["error"]
        assert backend.requests == []

        doc = json.loads(next((tmp_path / "audit").glob("*.json")).read_text(encoding="utf-8"))
        assert doc["response"] is None
        assert doc["error"] == resp.json()["error"]
        assert doc["request"]["mapping"]["provider"] == "custom"


# ============================================================================
# Config Change Tests
# ============================================================================

class TestConfigChange:

    @pytest.mark.asyncio
    async def test_restart_does_not_block_other_requests(self, make_config, tmp_path):
        cfg_file = tmp_path / "litellm.yaml"
        cfg_file.write_text("model_list: []\n", encoding="utf-8")
        env = {"MAPPING_MAIN": "pass", "LITELLM_ENABLED": "true", "LITELLM_CONFIG_PATH": str(cfg_file)}
        exit_allowed = asyncio.Event()

        class SlowExitProcess(FakeProcess):
            async def wait(self):
                await exit_allowed.wait()
                return self.returncode

        launcher = AsyncMock(side_effect=lambda *a, **kw: SlowExitProcess())
        current = {"config": make_config(env)}
        backend = Backend()
        ctx = ProxyContext.create(
            current["config"],
            config_loader=lambda: current["config"],
            transport=httpx.MockTransport(backend),
            launcher=launcher,
        )
        await ctx.processes.start_all(current["config"])

        # litellm's port changes; stopping the old process hangs until exit_allowed is set.
        current["config"] = make_config({**env, "LITELLM_PORT": "4999"})
        transport = httpx.ASGITransport(app=create_app(ctx), raise_app_exceptions=False)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            first = await asyncio.wait_for(_post(client, {"model": "claude-sonnet-4-5"}), timeout=1.0)
            second = await asyncio.wait_for(_post(client, {"model": "claude-sonnet-4-5"}), timeout=1.0)

        assert first.status_code == 200
        assert second.status_code == 200
        assert len(backend.requests) == 2
        assert launcher.await_count == 1

        exit_allowed.set()
        await ctx.aclose()
        assert launcher.await_count == 2
        assert launcher.await_args.args[-1] == "4999"


# ============================================================================
# Context Tests
# ============================================================================

class TestProxyContext:

    @pytest.mark.asyncio
    async def test_aclose_stops_processes(self, make_config, tmp_path):
        cfg_file = tmp_path / "litellm.yaml"
        cfg_file.write_text("model_list: []\n", encoding="utf-8")
        config = make_config({"LITELLM_ENABLED": "true", "LITELLM_CONFIG_PATH": str(cfg_file)})
        ctx = ProxyContext.create(
            config,
            transport=httpx.MockTransport(Backend()),
            launcher=AsyncMock(side_effect=lambda *a, **kw: FakeProcess()),
        )
        await ctx.processes.start_all(config)
        assert ctx.processes.get(ProviderKind.LITELLM).is_running

        await ctx.aclose()

        assert not ctx.processes.get(ProviderKind.LITELLM).is_running
        assert ctx.http_client.is_closed


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
