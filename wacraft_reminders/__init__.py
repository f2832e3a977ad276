"""
Inactivity reminders for Wacraft contacts.

The package exposes `ReminderEngine` as the main orchestration class and
`Scheduler` for running it periodically.
"""

from .engine import ReminderEngine
from .scheduler import Scheduler

__all__ = ["ReminderEngine", "Scheduler"]
