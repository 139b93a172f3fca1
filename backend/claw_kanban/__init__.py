"""Claw-Kanban: a task board that drives coding agents through run and review."""

__version__ = "0.1.0"
