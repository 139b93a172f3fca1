"""
Claw-Kanban - Test Fixtures
===========================

Shared pytest fixtures for all tests.
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from claw_kanban.api.main import app
from claw_kanban.core.config import Settings
from claw_kanban.core.database import create_engine, create_session_factory, get_db, init_db
from claw_kanban.core.models import Card, CardStatus, RunPhase
from claw_kanban.core.runner.orchestrator import CardOrchestrator
from claw_kanban.core.runner.registry import ProcessRegistry, RunHandle
from claw_kanban.core.runner.wake import WakeNotifier
from claw_kanban.core.store import CardStore


# ==========================================================================
# Fake Agents
# ==========================================================================

class FakeHandle(RunHandle):
    """
    A run that ends only when the test says so.

    ``finish()`` appends output to the run log, then resolves ``wait()``.
    ``terminate()`` only records the request, so tests can deliver a
    late exit after a stop.
    """

    def __init__(
        self,
        card_id: str,
        agent: str,
        phase: RunPhase,
        pid: Optional[int],
        log_path: Path,
        error: Optional[str] = None,
    ):
        super().__init__(card_id, agent, phase)
        self._pid = pid
        self.log_path = log_path
        self.error = error
        self.terminated = False
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    async def wait(self) -> int:
        return await self._exit

    async def terminate(self) -> None:
        self.terminated = True

    def finish(self, code: int = 0, output: str = "") -> None:
        if output:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(output)
        if not self._exit.done():
            self._exit.set_result(code)


class FakeLauncher:
    """Registers fake handles and records every prompt it was given."""

    def __init__(self, registry: ProcessRegistry, agents: tuple[str, ...] = ("claude", "agentA")):
        self.registry = registry
        self.agents = set(agents)
        self.launches: list[dict[str, Any]] = []
        self.handles: list[FakeHandle] = []
        self.spawn_error: Optional[str] = None
        self._next_pid = 40000

    def supports(self, agent: str) -> bool:
        return agent in self.agents

    async def launch(
        self,
        card_id: str,
        agent: str,
        prompt: str,
        cwd: str,
        log_path: Path,
        phase: RunPhase = RunPhase.RUN,
    ) -> FakeHandle:
        if self.spawn_error:
            handle = FakeHandle(card_id, agent, phase, None, Path(log_path), error=self.spawn_error)
            handle.finish(127)
        else:
            self._next_pid += 1
            handle = FakeHandle(card_id, agent, phase, self._next_pid, Path(log_path))
        self.registry.register(handle)
        self.launches.append(
            {"card_id": card_id, "agent": agent, "prompt": prompt, "cwd": cwd, "phase": phase}
        )
        self.handles.append(handle)
        return handle

    def last(self, phase: RunPhase) -> FakeHandle:
        return [h for h in self.handles if h.phase == phase][-1]


async def _eventually(
    condition: Callable[[], Union[Any, Awaitable[Any]]],
    timeout: float = 5.0,
) -> Any:
    """Poll ``condition`` until it is truthy; background tasks run meanwhile."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = condition()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ==========================================================================
# Settings & Database Fixtures
# ==========================================================================

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temporary directory, gateway disabled."""
    logs_dir = tmp_path / "logs"
    logs_dir.mkdir()
    return Settings(
        ENVIRONMENT="test",
        LOGS_DIR=logs_dir,
        REVIEW_DELAY_SECONDS=0.0,
        STOP_GRACE_SECONDS=0.5,
        OPENCLAW_CONFIG=None,
        COPILOT_TOKEN=None,
        GEMINI_API_TOKEN=None,
    )


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite database per test.

    A file (not ``:memory:``) so request sessions and the store's own
    sessions see the same data.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'kanban.sqlite'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> CardStore:
    return CardStore(session_factory)


# ==========================================================================
# Orchestrator Fixtures
# ==========================================================================

@pytest.fixture
def registry() -> ProcessRegistry:
    return ProcessRegistry()


@pytest.fixture
def launcher(registry: ProcessRegistry) -> FakeLauncher:
    return FakeLauncher(registry)


@pytest_asyncio.fixture
async def orchestrator(
    store: CardStore,
    registry: ProcessRegistry,
    launcher: FakeLauncher,
    test_settings: Settings,
) -> AsyncGenerator[CardOrchestrator, None]:
    orchestrator = CardOrchestrator(
        store=store,
        registry=registry,
        launcher=launcher,
        notifier=WakeNotifier(test_settings),
        settings=test_settings,
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def make_card(session_factory: async_sessionmaker[AsyncSession], project_dir: Path):
    """Factory inserting a card directly into the database."""

    async def _make(
        title: str = "fix bug",
        description: str = "The login button does nothing.",
        status: CardStatus = CardStatus.INBOX,
        assignee: Optional[str] = "agentA",
        project_path: Optional[str] = "default",
    ) -> Card:
        if project_path == "default":
            project_path = str(project_dir)
        card = Card(
            title=title,
            description=description,
            status=status,
            assignee=assignee,
            project_path=project_path,
        )
        async with session_factory() as session:
            session.add(card)
            await session.commit()
        return card

    return _make


# ==========================================================================
# HTTP Client Fixture
# ==========================================================================

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    orchestrator: CardOrchestrator,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database override.

    The lifespan does not run under ASGITransport, so the orchestrator is
    attached to the app state here.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    del app.state.orchestrator
