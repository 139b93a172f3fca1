"""
Agent Launcher
==============

Starts agent runs and registers their handles.

Two strategies, picked by agent kind:
1. Process agents (claude, codex, gemini): a CLI spawned in its own
   process group with a fixed argument vector. The prompt goes in over
   stdin, never through argv or a shell. stdout and stderr are appended
   to the run log.
2. HTTP agents (copilot, gemini-api): a streaming chat request whose SSE
   text deltas are appended to the same log file. Stopping sets an
   abort event instead of killing a process.

Either way the handle is in the registry before the first byte of
output arrives, so a stop issued right after launch finds it.
"""

import asyncio
import json
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from claw_kanban.core.config import Settings
from claw_kanban.core.models import RunPhase
from claw_kanban.core.runner.credentials import TokenProvider
from claw_kanban.core.runner.registry import ProcessRegistry, RunHandle, kill_process_tree

logger = structlog.get_logger()


# Argument vectors without the prompt, which is written to stdin.
AGENT_COMMANDS: dict[str, list[str]] = {
    "codex": ["codex", "--yolo", "exec", "--json"],
    "claude": [
        "claude",
        "--dangerously-skip-permissions",
        "--print",
        "--verbose",
        "--output-format=stream-json",
        "--include-partial-messages",
    ],
    "gemini": ["gemini", "--yolo", "--output-format=stream-json"],
}

HTTP_AGENTS = ("copilot", "gemini-api")

HTTP_PID_SENTINEL = -1

EXIT_SPAWN_FAILED = 127
EXIT_ABORTED = 130

LOG_PREFIX = "[Claw-Kanban]"


def prompt_path_for(logs_dir: Path, card_id: str, phase: RunPhase) -> Path:
    suffix = ".review.prompt.txt" if phase == RunPhase.REVIEW else ".prompt.txt"
    return logs_dir / f"{card_id}{suffix}"


def _append_log(log_path: Path, text: str) -> None:
    with open(log_path, "ab") as f:
        f.write(text.encode("utf-8"))


# ==========================================================================
# Process Handles
# ==========================================================================

class ProcessHandle(RunHandle):
    """A spawned agent CLI."""

    def __init__(
        self,
        card_id: str,
        agent: str,
        phase: RunPhase,
        process: asyncio.subprocess.Process,
        prompt_path: Path,
        grace_seconds: float,
    ):
        super().__init__(card_id, agent, phase)
        self.process = process
        self.prompt_path = prompt_path
        self.grace_seconds = grace_seconds
        self._escalation: Optional[asyncio.TimerHandle] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    async def feed_prompt(self, prompt: str) -> None:
        stdin = self.process.stdin
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
            await stdin.drain()
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            # Agent exited before reading its prompt; the exit code tells the story.
            logger.warning("Agent closed stdin early", key=self.key, pid=self.pid)

    async def wait(self) -> int:
        try:
            return await self.process.wait()
        finally:
            if self._escalation is not None:
                self._escalation.cancel()
            self.prompt_path.unlink(missing_ok=True)

    async def terminate(self) -> None:
        if self.process.returncode is not None:
            return
        kill_process_tree(self.pid)
        loop = asyncio.get_running_loop()
        self._escalation = loop.call_later(self.grace_seconds, self._force_kill)

    def _force_kill(self) -> None:
        if self.process.returncode is None:
            logger.warning("Agent ignored SIGTERM, killing", key=self.key, pid=self.pid)
            kill_process_tree(self.pid, force=True)


class SpawnFailedHandle(RunHandle):
    """Stands in for a process that never started; exits with 127 at once."""

    def __init__(self, card_id: str, agent: str, phase: RunPhase, error: str):
        super().__init__(card_id, agent, phase)
        self.error = error

    @property
    def pid(self) -> Optional[int]:
        return None

    async def wait(self) -> int:
        return EXIT_SPAWN_FAILED

    async def terminate(self) -> None:
        return None


# ==========================================================================
# HTTP Stream Handles
# ==========================================================================

class StreamHandle(RunHandle):
    """An in-flight streaming HTTP request to a model backend."""

    def __init__(self, card_id: str, agent: str, phase: RunPhase, log_path: Path):
        super().__init__(card_id, agent, phase)
        self.log_path = log_path
        self._abort = asyncio.Event()
        self._task: Optional[asyncio.Task[int]] = None

    @property
    def pid(self) -> Optional[int]:
        return HTTP_PID_SENTINEL

    def start(self, chunks: AsyncIterator[str]) -> None:
        self._task = asyncio.create_task(self._run(chunks))

    async def wait(self) -> int:
        if self._task is None:
            raise RuntimeError("stream handle was never started")
        return await self._task

    async def terminate(self) -> None:
        self._abort.set()

    async def _consume(self, chunks: AsyncIterator[str]) -> None:
        async for text in chunks:
            _append_log(self.log_path, text)

    async def _run(self, chunks: AsyncIterator[str]) -> int:
        consumer = asyncio.ensure_future(self._consume(chunks))
        aborted = asyncio.ensure_future(self._abort.wait())
        try:
            await asyncio.wait({consumer, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()

        if not consumer.done():
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
            _append_log(self.log_path, f"\n{LOG_PREFIX} aborted\n")
            return EXIT_ABORTED

        error = consumer.exception()
        if error is not None:
            self.error = str(error) or type(error).__name__
            logger.warning("Agent stream failed", key=self.key, agent=self.agent, error=self.error)
            _append_log(self.log_path, f"\n{LOG_PREFIX} STREAM ERROR: {self.error}\n")
            return 1
        return 0


# ==========================================================================
# SSE Decoding
# ==========================================================================

def _openai_delta(event: dict[str, Any]) -> str:
    choices = event.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


def _gemini_delta(event: dict[str, Any]) -> str:
    candidates = event.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


async def iter_sse_json(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode ``data:`` lines of a server-sent event stream."""
    async for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data or data == "[DONE]":
            continue
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event


# ==========================================================================
# Launcher
# ==========================================================================

class AgentLauncher:
    """Spawns or streams agent runs and registers their handles."""

    def __init__(
        self,
        settings: Settings,
        registry: ProcessRegistry,
        token_provider: TokenProvider,
        commands: Optional[dict[str, list[str]]] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.token_provider = token_provider
        self.commands = dict(AGENT_COMMANDS if commands is None else commands)
        self.http_transport = http_transport

    @property
    def logs_dir(self) -> Path:
        return Path(self.settings.LOGS_DIR)

    def supports(self, agent: str) -> bool:
        return agent in self.commands or agent in HTTP_AGENTS

    async def launch(
        self,
        card_id: str,
        agent: str,
        prompt: str,
        cwd: str,
        log_path: Path,
        phase: RunPhase = RunPhase.RUN,
    ) -> RunHandle:
        if agent in HTTP_AGENTS:
            return self._launch_stream(card_id, agent, prompt, log_path, phase)
        if agent in self.commands:
            return await self._launch_process(card_id, agent, prompt, cwd, log_path, phase)
        raise ValueError(f"unsupported agent: {agent}")

    # ==========================================================================
    # Process agents
    # ==========================================================================

    async def _launch_process(
        self,
        card_id: str,
        agent: str,
        prompt: str,
        cwd: str,
        log_path: Path,
        phase: RunPhase,
    ) -> RunHandle:
        prompt_path = prompt_path_for(self.logs_dir, card_id, phase)
        prompt_path.write_text(prompt, encoding="utf-8")

        argv = list(self.commands[agent])
        executable = shutil.which(argv[0])

        if sys.platform == "win32":
            flags = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
            platform_kwargs: dict[str, Any] = {"creationflags": flags}
        else:
            platform_kwargs = {"start_new_session": True}

        with open(log_path, "ab") as log_file:
            try:
                if executable is None:
                    raise FileNotFoundError(f"{argv[0]}: command not found")
                process = await asyncio.create_subprocess_exec(
                    executable,
                    *argv[1:],
                    cwd=cwd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    **platform_kwargs,
                )
            except OSError as e:
                message = str(e) or type(e).__name__
                log_file.write(f"\n{LOG_PREFIX} SPAWN ERROR: {message}\n".encode("utf-8"))
                prompt_path.unlink(missing_ok=True)
                logger.error("Agent spawn failed", card_id=card_id, agent=agent, error=message)
                failed = SpawnFailedHandle(card_id, agent, phase, message)
                self.registry.register(failed)
                return failed

        handle = ProcessHandle(
            card_id,
            agent,
            phase,
            process,
            prompt_path,
            grace_seconds=self.settings.STOP_GRACE_SECONDS,
        )
        self.registry.register(handle)
        logger.info(
            "Agent spawned",
            card_id=card_id,
            agent=agent,
            phase=phase.value,
            pid=handle.pid,
            cwd=cwd,
        )
        await handle.feed_prompt(prompt)
        return handle

    # ==========================================================================
    # HTTP agents
    # ==========================================================================

    def _launch_stream(
        self,
        card_id: str,
        agent: str,
        prompt: str,
        log_path: Path,
        phase: RunPhase,
    ) -> RunHandle:
        handle = StreamHandle(card_id, agent, phase, log_path)
        self.registry.register(handle)
        handle.start(self._stream_text(agent, prompt))
        logger.info("Agent stream started", card_id=card_id, agent=agent, phase=phase.value)
        return handle

    def _build_request(self, agent: str, prompt: str) -> tuple[str, dict[str, Any]]:
        if agent == "copilot":
            return self.settings.COPILOT_API_URL, {
                "model": self.settings.COPILOT_MODEL,
                "stream": True,
                "messages": [{"role": "user", "content": prompt}],
            }
        url = self.settings.GEMINI_API_URL.format(model=self.settings.GEMINI_API_MODEL)
        return url, {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}

    async def _stream_text(self, agent: str, prompt: str) -> AsyncIterator[str]:
        token = await self.token_provider.get_token(agent)
        url, body = self._build_request(agent, prompt)
        extract = _openai_delta if agent == "copilot" else _gemini_delta
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "text/event-stream",
        }

        async with httpx.AsyncClient(
            transport=self.http_transport,
            timeout=self.settings.HTTP_AGENT_TIMEOUT_SECONDS,
        ) as client:
            async with client.stream("POST", url, json=body, headers=headers) as response:
                if response.is_error:
                    detail = (await response.aread()).decode("utf-8", errors="replace")[:500]
                    raise RuntimeError(f"HTTP {response.status_code}: {detail}")
                async for event in iter_sse_json(response.aiter_lines()):
                    text = extract(event)
                    if text:
                        yield text
