"""
Claw-Kanban - Agent Launcher Tests
==================================

Process agents are exercised with real child processes running the
current interpreter; HTTP agents go through httpx.MockTransport.
"""

import asyncio
import contextlib
import json
import os
import sys
from pathlib import Path

import httpx
import pytest

from claw_kanban.core.models import RunPhase
from claw_kanban.core.runner.credentials import SettingsTokenProvider, TokenProvider
from claw_kanban.core.runner.launcher import (
    EXIT_ABORTED,
    EXIT_SPAWN_FAILED,
    HTTP_PID_SENTINEL,
    AgentLauncher,
    SpawnFailedHandle,
    iter_sse_json,
    prompt_path_for,
)
from claw_kanban.core.runner.registry import ProcessRegistry


ECHO_STDIN = "import sys; data = sys.stdin.read(); print('got:' + data); sys.exit(int(data.count('!')))"
SLEEPER = "import time; time.sleep(60)"
FORKER = (
    "import subprocess, sys, time; "
    "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
    "open(sys.argv[1], 'w').write(str(child.pid) + '\\n'); "
    "time.sleep(60)"
)


class StaticTokens(TokenProvider):
    async def get_token(self, provider: str) -> str:
        return f"token-{provider}"


def process_alive(pid: int) -> bool:
    """True while ``pid`` runs; an unreaped zombie counts as gone."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat = Path(f"/proc/{pid}/stat")
    try:
        return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
    except FileNotFoundError:
        return not Path("/proc/self").exists()
    except (OSError, IndexError):
        return True


def sse(*events) -> bytes:
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


@pytest.fixture
def registry():
    return ProcessRegistry()


def make_launcher(settings, registry, transport=None, tokens=None):
    return AgentLauncher(
        settings,
        registry,
        tokens or StaticTokens(),
        commands={
            "echo": [sys.executable, "-c", ECHO_STDIN],
            "sleeper": [sys.executable, "-c", SLEEPER],
            "ghost": ["claw-kanban-no-such-binary"],
        },
        http_transport=transport,
    )


# ==========================================================================
# Process Agent Tests
# ==========================================================================

class TestProcessAgents:
    """Tests for spawning agent CLIs."""

    async def test_prompt_fed_over_stdin(self, test_settings, registry, tmp_path):
        launcher = make_launcher(test_settings, registry)
        log_path = test_settings.LOGS_DIR / "c_1.log"

        handle = await launcher.launch("c_1", "echo", "fix bug", str(tmp_path), log_path)

        assert registry.get("c_1") is handle
        assert handle.pid and handle.pid > 0
        assert await asyncio.wait_for(handle.wait(), 30) == 0
        assert "got:fix bug" in log_path.read_text()
        assert not prompt_path_for(test_settings.LOGS_DIR, "c_1", RunPhase.RUN).exists()

    async def test_exit_code_reported(self, test_settings, registry, tmp_path):
        launcher = make_launcher(test_settings, registry)
        log_path = test_settings.LOGS_DIR / "c_1.review.log"

        handle = await launcher.launch("c_1", "echo", "fail!!", str(tmp_path), log_path, RunPhase.REVIEW)

        assert handle.key == "c_1:review"
        assert await asyncio.wait_for(handle.wait(), 30) == 2

    async def test_log_is_appended(self, test_settings, registry, tmp_path):
        launcher = make_launcher(test_settings, registry)
        log_path = test_settings.LOGS_DIR / "c_1.log"
        log_path.write_text("earlier\n")

        handle = await launcher.launch("c_1", "echo", "again", str(tmp_path), log_path)
        await asyncio.wait_for(handle.wait(), 30)

        text = log_path.read_text()
        assert text.startswith("earlier\n")
        assert "got:again" in text

    async def test_missing_binary_exits_127(self, test_settings, registry, tmp_path):
        launcher = make_launcher(test_settings, registry)
        log_path = test_settings.LOGS_DIR / "c_1.log"

        handle = await launcher.launch("c_1", "ghost", "prompt", str(tmp_path), log_path)

        assert isinstance(handle, SpawnFailedHandle)
        assert handle.pid is None
        assert registry.get("c_1") is handle
        assert await handle.wait() == EXIT_SPAWN_FAILED
        assert "claw-kanban-no-such-binary" in handle.error
        assert "[Claw-Kanban] SPAWN ERROR:" in log_path.read_text()
        assert not prompt_path_for(test_settings.LOGS_DIR, "c_1", RunPhase.RUN).exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
    async def test_terminate_kills_process(self, test_settings, registry, tmp_path):
        launcher = make_launcher(test_settings, registry)
        log_path = test_settings.LOGS_DIR / "c_1.log"
        handle = await launcher.launch("c_1", "sleeper", "", str(tmp_path), log_path)

        await handle.terminate()

        assert await asyncio.wait_for(handle.wait(), 30) != 0

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
    async def test_terminate_reaches_forked_children(self, test_settings, registry, tmp_path, eventually):
        """The whole process group is signaled, not only the agent itself."""
        pid_file = tmp_path / "grandchild.pid"
        launcher = AgentLauncher(
            test_settings,
            registry,
            StaticTokens(),
            commands={"forker": [sys.executable, "-c", FORKER, str(pid_file)]},
        )
        log_path = test_settings.LOGS_DIR / "c_1.log"
        handle = await launcher.launch("c_1", "forker", "", str(tmp_path), log_path)

        await eventually(lambda: pid_file.exists() and pid_file.read_text().endswith("\n"), timeout=30)
        grandchild = int(pid_file.read_text())
        assert process_alive(grandchild)

        try:
            await handle.terminate()
            assert await asyncio.wait_for(handle.wait(), 30) != 0
            await eventually(lambda: not process_alive(grandchild), timeout=30)
        finally:
            with contextlib.suppress(ProcessLookupError):
                os.kill(grandchild, 9)

    def test_supports(self, test_settings, registry):
        launcher = AgentLauncher(test_settings, registry, StaticTokens())

        assert launcher.supports("claude")
        assert launcher.supports("codex")
        assert launcher.supports("gemini")
        assert launcher.supports("copilot")
        assert launcher.supports("gemini-api")
        assert not launcher.supports("agentA")


# ==========================================================================
# HTTP Agent Tests
# ==========================================================================

class TestHttpAgents:
    """Tests for SSE-streamed model backends."""

    async def test_copilot_stream_written_to_log(self, test_settings, registry, tmp_path):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=sse(
                    {"choices": [{"delta": {"role": "assistant"}}]},
                    {"choices": [{"delta": {"content": "Hello "}}]},
                    {"choices": [{"delta": {"content": "world"}}]},
                ),
            )

        launcher = make_launcher(test_settings, registry, httpx.MockTransport(handler))
        log_path = test_settings.LOGS_DIR / "c_1.log"

        handle = await launcher.launch("c_1", "copilot", "say hi", str(tmp_path), log_path)

        assert handle.pid == HTTP_PID_SENTINEL
        assert registry.get("c_1") is handle
        assert await asyncio.wait_for(handle.wait(), 10) == 0
        assert log_path.read_text() == "Hello world"
        assert seen["auth"] == "Bearer token-copilot"
        assert seen["body"]["stream"] is True
        assert seen["body"]["messages"] == [{"role": "user", "content": "say hi"}]

    async def test_gemini_api_stream(self, test_settings, registry, tmp_path):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(
                200,
                content=sse(
                    {"candidates": [{"content": {"parts": [{"text": "Part one. "}]}}]},
                    {"candidates": [{"content": {"parts": [{"text": "Part two."}]}}]},
                ),
            )

        launcher = make_launcher(test_settings, registry, httpx.MockTransport(handler))
        log_path = test_settings.LOGS_DIR / "c_1.log"

        handle = await launcher.launch("c_1", "gemini-api", "go", str(tmp_path), log_path)

        assert await asyncio.wait_for(handle.wait(), 10) == 0
        assert log_path.read_text() == "Part one. Part two."
        assert f"models/{test_settings.GEMINI_API_MODEL}:streamGenerateContent" in seen["url"]

    async def test_http_error_exits_1(self, test_settings, registry, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="bad token")

        launcher = make_launcher(test_settings, registry, httpx.MockTransport(handler))
        log_path = test_settings.LOGS_DIR / "c_1.log"

        handle = await launcher.launch("c_1", "copilot", "go", str(tmp_path), log_path)

        assert await asyncio.wait_for(handle.wait(), 10) == 1
        assert handle.error == "HTTP 401: bad token"
        assert "[Claw-Kanban] STREAM ERROR: HTTP 401: bad token" in log_path.read_text()

    async def test_missing_token_exits_1(self, test_settings, registry, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        launcher = make_launcher(
            test_settings,
            registry,
            httpx.MockTransport(handler),
            tokens=SettingsTokenProvider(test_settings),
        )
        log_path = test_settings.LOGS_DIR / "c_1.log"

        handle = await launcher.launch("c_1", "copilot", "go", str(tmp_path), log_path)

        assert await asyncio.wait_for(handle.wait(), 10) == 1
        assert handle.error == "no token configured for copilot"

    async def test_abort_exits_130(self, test_settings, registry, tmp_path):
        async def slow_body():
            yield b'data: {"choices": [{"delta": {"content": "partial"}}]}\n\n'
            await asyncio.sleep(60)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=slow_body())

        launcher = make_launcher(test_settings, registry, httpx.MockTransport(handler))
        log_path = test_settings.LOGS_DIR / "c_1.log"
        handle = await launcher.launch("c_1", "copilot", "go", str(tmp_path), log_path)

        for _ in range(500):
            if log_path.exists() and "partial" in log_path.read_text():
                break
            await asyncio.sleep(0.01)

        await handle.terminate()

        assert await asyncio.wait_for(handle.wait(), 10) == EXIT_ABORTED
        text = log_path.read_text()
        assert text.startswith("partial")
        assert text.endswith("[Claw-Kanban] aborted\n")


async def test_iter_sse_json_skips_noise():
    async def lines():
        for line in [
            ": keep-alive",
            "event: message",
            'data: {"a": 1}',
            "data: not json",
            "data: [1, 2]",
            "",
            "data:[DONE]",
            'data: {"b": 2}',
        ]:
            yield line

    events = [e async for e in iter_sse_json(lines())]

    assert events == [{"a": 1}, {"b": 2}]
