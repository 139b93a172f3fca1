"""
Wake Notifier
=============

Best-effort "wake" pings to a local OpenClaw gateway so the operator's
assistant hears about board events (new inbox card, review verdicts).

Each wake is a detached task. Failures end in a log line and never
reach the caller; the orchestrator does not await them.
"""

import asyncio
import json
import sys
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiohttp
import structlog

from claw_kanban.core.config import Settings

logger = structlog.get_logger()

GATEWAY_PROTOCOL_VERSION = 3
GATEWAY_WS_PATH = "/ws"
CONFIG_CACHE_SECONDS = 30.0
DEBOUNCE_TABLE_LIMIT = 2000


class WakeError(RuntimeError):
    """Gateway refused or dropped a wake."""


@dataclass(frozen=True)
class GatewayConfig:
    url: str
    token: Optional[str] = None


class WakeNotifier:
    """Debounced, fire-and-forget gateway wakes."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._debounce: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()
        self._cached: Optional[tuple[GatewayConfig, float]] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.OPENCLAW_CONFIG)

    # ==========================================================================
    # Public API
    # ==========================================================================

    def queue(self, key: str, text: str, debounce_seconds: Optional[float] = None) -> bool:
        """
        Schedule a wake unless the same key fired within the debounce window.

        Returns True when a wake task was started.
        """
        if not self.enabled:
            return False
        window = self.settings.WAKE_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        if not self._should_send(key, window):
            return False

        task = asyncio.create_task(self._send_wake(text))
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(key, t))
        return True

    async def drain(self) -> None:
        """Wait for wakes still in flight (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _should_send(self, key: str, window: float) -> bool:
        now = time.monotonic()
        last = self._debounce.get(key)
        if last is not None and now - last < window:
            return False
        self._debounce[key] = now
        if len(self._debounce) > DEBOUNCE_TABLE_LIMIT:
            stale = [k for k, ts in self._debounce.items() if now - ts > window * 4]
            for k in stale:
                del self._debounce[k]
        return True

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Wake failed", key=key, error=str(error) or type(error).__name__)

    def load_gateway_config(self) -> Optional[GatewayConfig]:
        """Read ``gateway.port`` and ``gateway.auth.token`` from openclaw.json."""
        path = self.settings.OPENCLAW_CONFIG
        if not path:
            return None

        now = time.monotonic()
        if self._cached and now - self._cached[1] < CONFIG_CACHE_SECONDS:
            return self._cached[0]

        try:
            parsed = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read gateway config", path=path, error=str(e))
            return None

        gateway = parsed.get("gateway") if isinstance(parsed, dict) else None
        if not isinstance(gateway, dict):
            gateway = {}
        port = gateway.get("port")
        if not isinstance(port, int) or isinstance(port, bool) or port <= 0:
            logger.warning("Invalid gateway.port", path=path, port=port)
            return None

        token = (gateway.get("auth") or {}).get("token")
        config = GatewayConfig(
            url=f"ws://127.0.0.1:{port}{GATEWAY_WS_PATH}",
            token=token if isinstance(token, str) else None,
        )
        self._cached = (config, now)
        return config

    def _connect_params(self, config: GatewayConfig) -> dict:
        params = {
            "minProtocol": GATEWAY_PROTOCOL_VERSION,
            "maxProtocol": GATEWAY_PROTOCOL_VERSION,
            "client": {
                "id": "cli",
                "displayName": "Claw-Kanban",
                "version": "Claw-Kanban",
                "platform": sys.platform,
                "mode": "backend",
                "instanceId": str(uuid.uuid4()),
            },
            "role": "operator",
            "scopes": ["operator.admin"],
            "caps": [],
        }
        if config.token:
            params["auth"] = {"token": config.token}
        return params

    async def _send_wake(self, text: str) -> None:
        config = self.load_gateway_config()
        if config is None:
            raise WakeError("gateway config unavailable")
        await asyncio.wait_for(self._exchange(config, text), timeout=self.settings.WAKE_TIMEOUT_SECONDS)

    async def _exchange(self, config: GatewayConfig, text: str) -> None:
        """connect request, then wake request; each must be answered ok."""
        connect_id = str(uuid.uuid4())
        wake_id = str(uuid.uuid4())

        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(config.url) as ws:
                await ws.send_json({
                    "type": "req",
                    "id": connect_id,
                    "method": "connect",
                    "params": self._connect_params(config),
                })

                async for msg in ws:
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        if msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSE):
                            break
                        continue
                    try:
                        reply = json.loads(msg.data)
                    except ValueError:
                        continue
                    if not isinstance(reply, dict) or reply.get("type") != "res":
                        continue

                    if reply.get("id") == connect_id:
                        if not reply.get("ok"):
                            raise WakeError(_reply_error(reply, "gateway connect failed"))
                        await ws.send_json({
                            "type": "req",
                            "id": wake_id,
                            "method": "wake",
                            "params": {"mode": "now", "text": text},
                        })
                    elif reply.get("id") == wake_id:
                        if not reply.get("ok"):
                            raise WakeError(_reply_error(reply, "gateway wake failed"))
                        logger.info("Wake sent", url=config.url)
                        return

        raise WakeError("gateway socket closed")


def _reply_error(reply: dict, default: str) -> str:
    error = reply.get("error") or {}
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return default
