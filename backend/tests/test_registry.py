"""
Claw-Kanban - Process Registry Tests
====================================
"""

import os
import signal
import sys

import pytest

from claw_kanban.core.models import RunPhase
from claw_kanban.core.runner import registry as registry_module
from claw_kanban.core.runner.registry import ProcessRegistry, RunHandle, kill_process_tree, run_key


class StubHandle(RunHandle):
    def __init__(self, card_id: str, phase: RunPhase = RunPhase.RUN, pid: int = 100):
        super().__init__(card_id, "claude", phase)
        self._pid = pid

    @property
    def pid(self):
        return self._pid

    async def wait(self) -> int:
        return 0

    async def terminate(self) -> None:
        pass


# ==========================================================================
# Registry Tests
# ==========================================================================

class TestProcessRegistry:
    """Tests for the in-memory handle map."""

    def test_keys_per_phase(self):
        assert run_key("c_1") == "c_1"
        assert run_key("c_1", RunPhase.REVIEW) == "c_1:review"
        assert StubHandle("c_1", RunPhase.REVIEW).key == "c_1:review"

    def test_register_and_get(self):
        registry = ProcessRegistry()
        handle = StubHandle("c_1")

        registry.register(handle)

        assert registry.get("c_1") is handle
        assert "c_1" in registry
        assert len(registry) == 1

    def test_one_handle_per_key(self):
        registry = ProcessRegistry()
        registry.register(StubHandle("c_1"))

        with pytest.raises(ValueError):
            registry.register(StubHandle("c_1"))

    def test_run_and_review_side_by_side(self):
        registry = ProcessRegistry()
        registry.register(StubHandle("c_1"))
        registry.register(StubHandle("c_1", RunPhase.REVIEW))

        assert registry.keys_for_card("c_1") == ["c_1", "c_1:review"]
        assert sorted(registry) == ["c_1", "c_1:review"]

    def test_discard_checks_identity(self):
        """A late exit of an old handle never evicts its replacement."""
        registry = ProcessRegistry()
        old = StubHandle("c_1")
        new = StubHandle("c_1")
        registry.register(new)

        assert registry.discard("c_1", old) is False
        assert registry.get("c_1") is new
        assert registry.discard("c_1", new) is True
        assert "c_1" not in registry

    def test_pop_missing(self):
        assert ProcessRegistry().pop("c_missing") is None


# ==========================================================================
# Process Tree Termination Tests
# ==========================================================================

@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
class TestKillProcessTree:
    """Tests for signaling agent process groups."""

    @pytest.fixture
    def signals(self, monkeypatch):
        calls = []
        monkeypatch.setattr(os, "killpg", lambda pid, sig: calls.append(("killpg", pid, sig)))
        monkeypatch.setattr(os, "kill", lambda pid, sig: calls.append(("kill", pid, sig)))
        return calls

    def test_terminates_group_then_leader(self, signals):
        kill_process_tree(1234)

        assert signals == [
            ("killpg", 1234, signal.SIGTERM),
            ("kill", 1234, signal.SIGTERM),
        ]

    def test_force_uses_sigkill(self, signals):
        kill_process_tree(1234, force=True)

        assert {sig for _, _, sig in signals} == {signal.SIGKILL}

    def test_sentinel_and_missing_pids_ignored(self, signals):
        kill_process_tree(None)
        kill_process_tree(0)
        kill_process_tree(-1)

        assert signals == []

    def test_vanished_process_ignored(self, monkeypatch):
        def gone(pid, sig):
            raise ProcessLookupError(pid)

        monkeypatch.setattr(os, "killpg", gone)
        monkeypatch.setattr(os, "kill", gone)

        kill_process_tree(1234)

    def test_other_errors_propagate(self, monkeypatch):
        def broken(pid, sig):
            raise OSError("unexpected")

        monkeypatch.setattr(registry_module.os, "killpg", broken)

        with pytest.raises(OSError):
            kill_process_tree(1234)
