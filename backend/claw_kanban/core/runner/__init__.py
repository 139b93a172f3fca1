"""
Agent run supervision: launching agents, tracking their handles and
driving cards through run and review.
"""

from claw_kanban.core.runner.errors import RunError
from claw_kanban.core.runner.launcher import AgentLauncher
from claw_kanban.core.runner.orchestrator import CardOrchestrator
from claw_kanban.core.runner.registry import ProcessRegistry
from claw_kanban.core.runner.wake import WakeNotifier

__all__ = [
    "AgentLauncher",
    "CardOrchestrator",
    "ProcessRegistry",
    "RunError",
    "WakeNotifier",
]
