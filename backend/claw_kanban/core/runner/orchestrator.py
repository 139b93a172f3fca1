"""
Card Run Orchestrator
=====================

Lifecycle of a card once work starts:

    Inbox/Planned/Stopped --start_run--> In Progress
    In Progress --exit 0--> Review/Test --(delay)--> start_review
    In Progress --exit != 0--> In Progress (left for triage)
    Review/Test --review exit 0, verdict passed--> Done
    Review/Test --review exit 0, issues--> Review/Test
    any --stop--> Stopped

One instance lives for the whole process. It owns the process registry,
the pending review timers and the wake notifier; request handlers reach
it through ``app.state``.

The store is the source of truth. ``reconcile()`` runs at startup and
marks runs left ``running`` by a previous process as stopped, and
``start_run``/``start_review`` heal the same condition before spawning,
so a restart can never lead to two agents on one card.
"""

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Coroutine, Optional

import structlog

from claw_kanban.core.config import Settings
from claw_kanban.core.models import Card, CardStatus, LogKind, RunPhase, RunStatus
from claw_kanban.core.runner.errors import (
    AlreadyRunningError,
    CardNotFoundError,
    InvalidCardStateError,
    NoActiveRunError,
    ProjectPathError,
    RunError,
    UnsupportedAgentError,
)
from claw_kanban.core.runner.launcher import AgentLauncher, prompt_path_for
from claw_kanban.core.runner.output_normalizer import pretty_stream_json
from claw_kanban.core.runner.prompts import (
    build_review_prompt,
    build_run_prompt,
    extract_project_path,
)
from claw_kanban.core.runner.registry import (
    ProcessRegistry,
    RunHandle,
    kill_process_tree,
    run_key,
)
from claw_kanban.core.runner.wake import WakeNotifier
from claw_kanban.core.store import CardStore

logger = structlog.get_logger()

DEFAULT_AGENT = "claude"
AFFIRMATIVE_PHRASE = "looks good"

TAIL_MIN_LINES = 20
TAIL_MAX_LINES = 4000

REVIEW_WAKE_DEBOUNCE = 5.0


# ==========================================================================
# Results
# ==========================================================================

@dataclass
class RunStarted:
    card_id: str
    run_id: int
    agent: str
    phase: RunPhase
    pid: Optional[int]
    log_path: str
    cwd: str


@dataclass
class StopResult:
    stopped: bool
    pid: Optional[int] = None


@dataclass
class TerminalTail:
    exists: bool
    path: str
    text: str
    phase: RunPhase
    running: bool


# ==========================================================================
# Orchestrator
# ==========================================================================

class CardOrchestrator:
    """Run/review state machine for cards."""

    def __init__(
        self,
        store: CardStore,
        registry: ProcessRegistry,
        launcher: AgentLauncher,
        notifier: WakeNotifier,
        settings: Settings,
    ):
        self.store = store
        self.registry = registry
        self.launcher = launcher
        self.notifier = notifier
        self.settings = settings

        self._tasks: set[asyncio.Task] = set()
        self._review_timers: dict[str, asyncio.Task] = {}
        # Keys between precondition check and registration.
        self._starting: set[str] = set()
        # Starting keys a stop arrived for; the launch is terminated on return.
        self._stop_on_start: set[str] = set()

    @property
    def logs_dir(self) -> Path:
        return Path(self.settings.LOGS_DIR)

    def log_path(self, card_id: str, phase: RunPhase = RunPhase.RUN) -> Path:
        suffix = ".review.log" if phase == RunPhase.REVIEW else ".log"
        return self.logs_dir / f"{card_id}{suffix}"

    def is_running(self, card_id: str, phase: RunPhase = RunPhase.RUN) -> bool:
        return run_key(card_id, phase) in self.registry

    def review_passed(self, text: str) -> bool:
        return self.settings.PASS_SENTINEL in text or AFFIRMATIVE_PHRASE in text.lower()

    # ==========================================================================
    # Startup / Shutdown
    # ==========================================================================

    async def reconcile(self) -> int:
        """
        Mark ``running`` runs without a live handle as stopped.

        Processes from a previous server instance are not signaled;
        their pids may have been reused since.
        """
        healed = 0
        for run in await self.store.running_runs():
            if run_key(run.card_id, run.phase) in self.registry:
                continue
            await self.store.update_run_status(run.id, RunStatus.STOPPED)
            await self.store.append_card_log(
                run.card_id,
                LogKind.SYSTEM,
                f"{run.phase.value.upper()} run {run.id} (pid {run.pid}) marked stopped: "
                f"no live process after restart",
            )
            healed += 1

        if healed:
            await self.store.append_system_log(LogKind.SYSTEM, f"Reconciled {healed} orphaned runs")
            logger.warning("Orphaned runs reconciled", count=healed)
        return healed

    async def shutdown(self) -> None:
        """Cancel timers and watchers. Agent processes keep running."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._review_timers.clear()
        await self.notifier.drain()

    # ==========================================================================
    # Commands
    # ==========================================================================

    async def start_run(self, card_id: str) -> RunStarted:
        card = await self._require_card(card_id)

        agent = card.assignee or DEFAULT_AGENT
        if not self.launcher.supports(agent):
            raise UnsupportedAgentError(f"unsupported agent: {agent}", card_id=card_id, agent=agent)

        key = run_key(card_id, RunPhase.RUN)
        if key in self.registry or key in self._starting:
            raise AlreadyRunningError("card is already running", card_id=card_id)

        cwd = card.project_path or extract_project_path(card.description)
        if not cwd:
            raise ProjectPathError(
                "no project path: set project_path or add a '## Project Path' section",
                card_id=card_id,
            )
        self._check_directory(card_id, cwd)

        self._starting.add(key)
        try:
            await self._heal_orphan(card_id, RunPhase.RUN)

            log_path = self._fresh_log(card_id, RunPhase.RUN)
            await self.store.append_card_log(card_id, LogKind.SYSTEM, f"RUN start requested (agent={agent})")
            await self.store.append_system_log(LogKind.SYSTEM, f"Run start {card_id} agent={agent}")

            prompt = build_run_prompt(card.title, card.description)
            handle = await self.launcher.launch(card_id, agent, prompt, cwd, log_path, RunPhase.RUN)
        finally:
            self._starting.discard(key)
            stop_early = key in self._stop_on_start
            self._stop_on_start.discard(key)
        if stop_early:
            await self._abort_start(handle)

        run_id = await self._record_start(handle, log_path, cwd)

        logger.info("Run started", card_id=card_id, agent=agent, pid=handle.pid, run_id=run_id)
        return RunStarted(card_id, run_id, agent, RunPhase.RUN, handle.pid, str(log_path), cwd)

    async def start_review(self, card_id: str, project_path: Optional[str] = None) -> RunStarted:
        card = await self._require_card(card_id)
        if card.status != CardStatus.REVIEW_TEST:
            raise InvalidCardStateError(
                f"card is {card.status.value}, review needs Review/Test",
                card_id=card_id,
            )

        agent = self.settings.REVIEWER_AGENT
        if not self.launcher.supports(agent):
            raise UnsupportedAgentError(f"unsupported reviewer: {agent}", card_id=card_id, agent=agent)

        key = run_key(card_id, RunPhase.REVIEW)
        if key in self.registry or key in self._starting:
            raise AlreadyRunningError("review is already running", card_id=card_id)

        cwd = project_path or card.project_path or extract_project_path(card.description)
        if not cwd:
            latest = await self.store.latest_run(card_id)
            cwd = latest.cwd if latest is not None else None
        if not cwd:
            raise ProjectPathError("no project path for review", card_id=card_id)
        self._check_directory(card_id, cwd)

        timer = self._review_timers.get(card_id)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

        self._starting.add(key)
        try:
            await self._heal_orphan(card_id, RunPhase.REVIEW)

            log_path = self._fresh_log(card_id, RunPhase.REVIEW)
            impl_log = self.log_path(card_id, RunPhase.RUN)
            prompt = build_review_prompt(
                card.title,
                card.description,
                impl_log_path=str(impl_log) if impl_log.exists() else None,
                sentinel=self.settings.PASS_SENTINEL,
            )
            await self.store.append_card_log(card_id, LogKind.SYSTEM, "REVIEW started")
            await self.store.append_system_log(LogKind.SYSTEM, f"Review start {card_id}")

            handle = await self.launcher.launch(card_id, agent, prompt, cwd, log_path, RunPhase.REVIEW)
        finally:
            self._starting.discard(key)
            stop_early = key in self._stop_on_start
            self._stop_on_start.discard(key)
        if stop_early:
            await self._abort_start(handle)

        run_id = await self._record_start(handle, log_path, cwd)

        logger.info("Review started", card_id=card_id, agent=agent, pid=handle.pid, run_id=run_id)
        return RunStarted(card_id, run_id, agent, RunPhase.REVIEW, handle.pid, str(log_path), cwd)

    async def stop(self, card_id: str) -> StopResult:
        """
        Stop whatever runs for the card and move it to Stopped.

        Live handles come first. Without one (after a restart), the pid
        of the most recent run is signaled instead.
        A start still launching is terminated as soon as its launch returns.
        """
        await self._require_card(card_id)

        handles = self._take_handles(card_id)
        pending = self._pending_starts(card_id)
        self._stop_on_start.update(pending)
        latest = await self.store.latest_run(card_id)

        if handles:
            pid = handles[0].pid
            for handle in handles:
                await handle.terminate()
        elif pending:
            pid = None
        else:
            pid = latest.pid if latest is not None and latest.pid and latest.pid > 0 else None
            if pid is None:
                await self.store.append_card_log(card_id, LogKind.SYSTEM, "STOP requested but no pid found")
                raise NoActiveRunError("nothing is running for this card", card_id=card_id)
            kill_process_tree(pid)

        self._cancel_review_timer(card_id)

        await self.store.append_card_log(card_id, LogKind.SYSTEM, f"STOP sent to pid {pid}")
        await self.store.append_system_log(LogKind.SYSTEM, f"Stop {card_id} pid={pid}")

        if latest is not None:
            await self.store.update_run_status(latest.id, RunStatus.STOPPED)
        for phase in (RunPhase.RUN, RunPhase.REVIEW):
            run = await self.store.latest_run(card_id, phase)
            if run is not None and run.status == RunStatus.RUNNING:
                await self.store.update_run_status(run.id, RunStatus.STOPPED)

        await self.store.update_card_status(card_id, CardStatus.STOPPED)
        logger.info("Run stopped", card_id=card_id, pid=pid)
        return StopResult(stopped=True, pid=pid)

    async def delete(self, card_id: str) -> None:
        """Terminate live runs, then remove the card, its history and log files."""
        await self._require_card(card_id)

        handles = self._take_handles(card_id)
        for handle in handles:
            await handle.terminate()
        if not handles:
            latest = await self.store.latest_run(card_id)
            if latest is not None and latest.status == RunStatus.RUNNING and latest.pid and latest.pid > 0:
                kill_process_tree(latest.pid)

        self._cancel_review_timer(card_id)

        await self.store.append_system_log(LogKind.SYSTEM, f"Card deleted {card_id}")
        await self.store.delete_card(card_id)
        self._remove_artifacts(card_id)

    async def purge(self, status: CardStatus) -> int:
        ids = await self.store.card_ids_with_status(status)
        for card_id in ids:
            await self.delete(card_id)
        await self.store.append_system_log(
            LogKind.SYSTEM, f"Purged {len(ids)} cards in status {status.value}"
        )
        return len(ids)

    async def terminal_tail(
        self,
        card_id: str,
        lines: int = 200,
        pretty: bool = True,
        phase: RunPhase = RunPhase.RUN,
    ) -> TerminalTail:
        await self._require_card(card_id)
        lines = min(max(lines, TAIL_MIN_LINES), TAIL_MAX_LINES)
        path = self.log_path(card_id, phase)
        running = self.is_running(card_id, phase)

        if not path.exists():
            return TerminalTail(False, str(path), "", phase, running)

        raw = path.read_text(encoding="utf-8", errors="replace")
        # trailing newline is not an empty last line
        raw = re.sub(r"\r?\n\Z", "", raw, count=1)
        tail = "\n".join(re.split(r"\r?\n", raw)[-lines:])
        text = pretty_stream_json(tail) if pretty else tail
        return TerminalTail(True, str(path), text, phase, running)

    # ==========================================================================
    # External completion callbacks
    # ==========================================================================

    async def complete_run(
        self,
        card_id: str,
        exit_code: int,
        project_path: Optional[str] = None,
    ) -> None:
        """Report an implementation exit observed outside this process."""
        await self._require_card(card_id)
        self._detach(run_key(card_id, RunPhase.RUN))

        latest = await self.store.latest_run(card_id, RunPhase.RUN)
        run_id = latest.id if latest is not None and latest.status == RunStatus.RUNNING else None
        cwd = project_path or (latest.cwd if latest is not None else None)
        await self._finish_run(card_id, run_id, exit_code, cwd)

    async def complete_review(self, card_id: str, exit_code: int) -> None:
        """Report a review exit observed outside this process."""
        await self._require_card(card_id)
        self._detach(run_key(card_id, RunPhase.REVIEW))

        latest = await self.store.latest_run(card_id, RunPhase.REVIEW)
        run_id = latest.id if latest is not None and latest.status == RunStatus.RUNNING else None
        await self._finish_review(card_id, run_id, exit_code)

    # ==========================================================================
    # Exit handling
    # ==========================================================================

    async def _record_start(self, handle: RunHandle, log_path: Path, cwd: str) -> int:
        """
        Record a launched handle and start watching it.

        A stop can land while the launch or these writes are suspended.
        In that case the new run is closed as stopped and the card stays
        Stopped instead of being moved back to In Progress.
        """
        run = await self.store.insert_run(
            handle.card_id, handle.agent, handle.phase, handle.pid, str(log_path), cwd
        )
        if handle.phase == RunPhase.RUN and not handle.stop_requested:
            await self.store.update_card_status(handle.card_id, CardStatus.IN_PROGRESS)

        if handle.stop_requested:
            self.registry.discard(handle.key, handle)
            await self.store.update_run_status(run.id, RunStatus.STOPPED)
            await self.store.update_card_status(handle.card_id, CardStatus.STOPPED)
            await self.store.append_card_log(
                handle.card_id, LogKind.SYSTEM, f"{handle.phase.value.upper()} stopped while starting"
            )
            logger.info("Start interrupted by stop", key=handle.key, run_id=run.id)
            return run.id

        self._watch(handle, run.id, cwd)
        return run.id

    def _watch(self, handle: RunHandle, run_id: int, cwd: str) -> None:
        self._spawn(self._watch_exit(handle, run_id, cwd), name=f"watch:{handle.key}")

    async def _watch_exit(self, handle: RunHandle, run_id: int, cwd: str) -> None:
        code = await handle.wait()
        self.registry.discard(handle.key, handle)

        if handle.stop_requested:
            logger.info("Exit after stop ignored", key=handle.key, exit_code=code)
            return

        if handle.error:
            kind = "spawn" if handle.pid is None else "stream"
            await self.store.append_card_log(
                handle.card_id, LogKind.ERROR, f"Agent {kind} failed: {handle.error}"
            )
            await self.store.append_system_log(
                LogKind.ERROR, f"{kind.capitalize()} failed {handle.card_id} ({handle.agent}): {handle.error}"
            )

        if handle.phase == RunPhase.REVIEW:
            await self._finish_review(handle.card_id, run_id, code)
        else:
            await self._finish_run(handle.card_id, run_id, code, cwd)

    async def _finish_run(
        self,
        card_id: str,
        run_id: Optional[int],
        code: int,
        cwd: Optional[str],
    ) -> None:
        outcome = "completed" if code == 0 else "failed"
        await self.store.append_card_log(
            card_id,
            LogKind.SYSTEM if code == 0 else LogKind.ERROR,
            f"RUN {outcome} (exit code: {code})",
        )
        await self.store.append_system_log(LogKind.SYSTEM, f"Run {outcome} {card_id} (exit: {code})")
        if run_id is not None:
            await self.store.update_run_status(run_id, RunStatus.STOPPED)

        logger.info("Run exited", card_id=card_id, exit_code=code)
        if code != 0:
            return

        card = await self.store.get_card(card_id)
        if card is None or card.status != CardStatus.IN_PROGRESS:
            return
        await self.store.update_card_status(card_id, CardStatus.REVIEW_TEST)
        self._schedule_review(card_id, cwd)

    async def _finish_review(self, card_id: str, run_id: Optional[int], code: int) -> None:
        outcome = "completed" if code == 0 else "failed"
        await self.store.append_card_log(
            card_id,
            LogKind.SYSTEM if code == 0 else LogKind.ERROR,
            f"REVIEW {outcome} (exit code: {code})",
        )
        await self.store.append_system_log(LogKind.SYSTEM, f"Review {outcome} {card_id} (exit: {code})")
        if run_id is not None:
            await self.store.update_run_status(run_id, RunStatus.STOPPED)

        logger.info("Review exited", card_id=card_id, exit_code=code)
        if code != 0:
            return

        card = await self.store.get_card(card_id)
        if card is None or card.status != CardStatus.REVIEW_TEST:
            return

        log_path = self.log_path(card_id, RunPhase.REVIEW)
        raw = log_path.read_text(encoding="utf-8", errors="replace") if log_path.exists() else ""
        if self.review_passed(pretty_stream_json(raw)):
            await self.store.update_card_status(card_id, CardStatus.DONE)
            await self.store.append_card_log(card_id, LogKind.SYSTEM, "Review passed, moved to Done")
            self.notifier.queue(
                f"done:{card_id}",
                f"Kanban: Review/Test -> Done - {card.title}",
                REVIEW_WAKE_DEBOUNCE,
            )
        else:
            await self.store.append_card_log(card_id, LogKind.SYSTEM, "Review found issues")
            self.notifier.queue(
                f"review-issues:{card_id}",
                f"Kanban: Review found issues - {card.title}",
                REVIEW_WAKE_DEBOUNCE,
            )

    # ==========================================================================
    # Review timer
    # ==========================================================================

    def _schedule_review(self, card_id: str, cwd: Optional[str]) -> None:
        self._cancel_review_timer(card_id)
        self._review_timers[card_id] = self._spawn(
            self._delayed_review(card_id, cwd), name=f"review-timer:{card_id}"
        )

    async def _delayed_review(self, card_id: str, cwd: Optional[str]) -> None:
        me = asyncio.current_task()
        try:
            await asyncio.sleep(self.settings.REVIEW_DELAY_SECONDS)
            card = await self.store.get_card(card_id)
            if card is None or card.status != CardStatus.REVIEW_TEST:
                return
            try:
                await self.start_review(card_id, cwd)
            except RunError as e:
                await self.store.append_card_log(card_id, LogKind.ERROR, f"Auto review not started: {e}")
                logger.warning("Auto review not started", card_id=card_id, reason=e.code)
        finally:
            if self._review_timers.get(card_id) is me:
                del self._review_timers[card_id]

    def _cancel_review_timer(self, card_id: str) -> None:
        timer = self._review_timers.pop(card_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", task=task.get_name(), error=str(error), exc_info=error)

    async def _require_card(self, card_id: str) -> Card:
        card = await self.store.get_card(card_id)
        if card is None:
            raise CardNotFoundError(f"card not found: {card_id}", card_id=card_id)
        return card

    @staticmethod
    def _check_directory(card_id: str, cwd: str) -> None:
        if not Path(cwd).is_dir():
            raise ProjectPathError(f"project path is not a directory: {cwd}", card_id=card_id)

    async def _heal_orphan(self, card_id: str, phase: RunPhase) -> None:
        """A ``running`` run with no live handle is stale; close it before spawning."""
        latest = await self.store.latest_run(card_id, phase)
        if latest is None or latest.status != RunStatus.RUNNING:
            return
        await self.store.update_run_status(latest.id, RunStatus.STOPPED)
        await self.store.append_card_log(
            card_id,
            LogKind.SYSTEM,
            f"Orphaned {phase.value} run {latest.id} (pid {latest.pid}) marked stopped",
        )
        logger.warning("Orphaned run healed", card_id=card_id, run_id=latest.id, phase=phase.value)

    def _fresh_log(self, card_id: str, phase: RunPhase) -> Path:
        path = self.log_path(card_id, phase)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
        return path

    def _take_handles(self, card_id: str) -> list[RunHandle]:
        """Pop both registry keys for a card, flagging each handle as stopped."""
        handles = []
        for key in self.registry.keys_for_card(card_id):
            handle = self.registry.pop(key)
            handle.stop_requested = True
            handles.append(handle)
        return handles

    def _pending_starts(self, card_id: str) -> set[str]:
        return {run_key(card_id, phase) for phase in RunPhase} & self._starting

    async def _abort_start(self, handle: RunHandle) -> None:
        self.registry.discard(handle.key, handle)
        if not handle.stop_requested:
            handle.stop_requested = True
            await handle.terminate()

    def _detach(self, key: str) -> None:
        # The external report wins; a later exit from this handle is ignored.
        handle = self.registry.pop(key)
        if handle is not None:
            handle.stop_requested = True

    def _remove_artifacts(self, card_id: str) -> None:
        paths = [
            self.log_path(card_id, RunPhase.RUN),
            self.log_path(card_id, RunPhase.REVIEW),
            prompt_path_for(self.logs_dir, card_id, RunPhase.RUN),
            prompt_path_for(self.logs_dir, card_id, RunPhase.REVIEW),
        ]
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove card artifact", path=str(path), error=str(e))
