"""Deferred task scheduling and execution."""

from .runner import run_due_scheduled_tasks, run_task
from .tasks import TaskScheduler

__all__ = ["TaskScheduler", "run_due_scheduled_tasks", "run_task"]
