"""
Claw-Kanban - Wake Notifier Tests
=================================
"""

import json
from types import SimpleNamespace

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as GatewayServer

from claw_kanban.core.runner import wake as wake_module
from claw_kanban.core.runner.wake import GatewayConfig, WakeError, WakeNotifier


@pytest.fixture
def gateway_file(tmp_path):
    path = tmp_path / "openclaw.json"
    path.write_text(json.dumps({"gateway": {"port": 18789, "auth": {"token": "secret"}}}))
    return path


@pytest.fixture
def notifier(test_settings, gateway_file):
    test_settings.OPENCLAW_CONFIG = str(gateway_file)
    return WakeNotifier(test_settings)


@pytest.fixture
def sent(notifier, monkeypatch):
    """Record wake texts instead of talking to a gateway."""
    texts = []

    async def fake_send(text):
        texts.append(text)

    monkeypatch.setattr(notifier, "_send_wake", fake_send)
    return texts


# ==========================================================================
# Queue Tests
# ==========================================================================

class TestQueue:
    """Tests for debounced wake scheduling."""

    async def test_disabled_without_config(self, test_settings):
        notifier = WakeNotifier(test_settings)

        assert notifier.enabled is False
        assert notifier.queue("inbox:c_1", "Kanban: Inbox +1") is False
        assert notifier._tasks == set()

    async def test_debounce_per_key(self, notifier, sent):
        assert notifier.queue("done:c_1", "first", 5) is True
        assert notifier.queue("done:c_1", "second", 5) is False
        assert notifier.queue("done:c_2", "other", 5) is True
        assert notifier.queue("done:c_1", "third", 0) is True

        await notifier.drain()

        assert sent == ["first", "other", "third"]

    async def test_failures_are_swallowed(self, notifier, monkeypatch):
        async def failing(text):
            raise WakeError("gateway down")

        monkeypatch.setattr(notifier, "_send_wake", failing)

        assert notifier.queue("k", "text") is True
        await notifier.drain()

        assert notifier._tasks == set()

    async def test_debounce_table_is_pruned(self, notifier, sent, monkeypatch):
        monkeypatch.setattr(wake_module, "DEBOUNCE_TABLE_LIMIT", 3)
        clock = iter([0.0, 0.0, 0.0, 100.0])
        monkeypatch.setattr(wake_module, "time", SimpleNamespace(monotonic=lambda: next(clock)))

        for i in range(4):
            notifier.queue(f"k{i}", "x", 1)
        await notifier.drain()

        assert list(notifier._debounce) == ["k3"]


# ==========================================================================
# Gateway Config Tests
# ==========================================================================

class TestGatewayConfig:
    """Tests for reading openclaw.json."""

    def test_reads_port_and_token(self, notifier):
        config = notifier.load_gateway_config()

        assert config == GatewayConfig(url="ws://127.0.0.1:18789/ws", token="secret")

    def test_config_is_cached(self, notifier, gateway_file):
        first = notifier.load_gateway_config()
        gateway_file.write_text(json.dumps({"gateway": {"port": 1}}))

        assert notifier.load_gateway_config() == first

    @pytest.mark.parametrize("port", ["18789", 0, -5, True, None])
    def test_invalid_port(self, notifier, gateway_file, port):
        gateway_file.write_text(json.dumps({"gateway": {"port": port}}))

        assert notifier.load_gateway_config() is None

    def test_unreadable_file(self, notifier, gateway_file):
        gateway_file.write_text("{not json")

        assert notifier.load_gateway_config() is None

    def test_token_is_optional(self, notifier, gateway_file):
        gateway_file.write_text(json.dumps({"gateway": {"port": 9000}}))

        config = notifier.load_gateway_config()

        assert config.token is None
        assert "auth" not in notifier._connect_params(config)


# ==========================================================================
# Gateway Exchange Tests
# ==========================================================================

def gateway_app(received: list, wake_ok: bool = True) -> web.Application:
    async def handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            req = json.loads(msg.data)
            received.append(req)
            await ws.send_json({"type": "event", "event": "tick"})
            if req["method"] == "wake" and not wake_ok:
                await ws.send_json({"type": "res", "id": req["id"], "ok": False, "error": {"message": "busy"}})
            else:
                await ws.send_json({"type": "res", "id": req["id"], "ok": True})
        return ws

    app = web.Application()
    app.router.add_get("/ws", handler)
    return app


class TestExchange:
    """Tests for the connect/wake protocol."""

    async def test_connect_then_wake(self, notifier):
        received = []
        async with GatewayServer(gateway_app(received)) as server:
            config = GatewayConfig(url=str(server.make_url("/ws")), token="secret")
            await notifier._exchange(config, "Kanban: Review/Test -> Done - fix bug")

        assert [r["method"] for r in received] == ["connect", "wake"]
        connect = received[0]["params"]
        assert connect["minProtocol"] == connect["maxProtocol"] == 3
        assert connect["auth"] == {"token": "secret"}
        assert connect["role"] == "operator"
        assert received[1]["params"] == {"mode": "now", "text": "Kanban: Review/Test -> Done - fix bug"}

    async def test_rejected_wake_raises(self, notifier):
        received = []
        async with GatewayServer(gateway_app(received, wake_ok=False)) as server:
            config = GatewayConfig(url=str(server.make_url("/ws")))
            with pytest.raises(WakeError, match="busy"):
                await notifier._exchange(config, "text")
