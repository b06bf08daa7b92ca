"""Marionette configuration convergence toolkit."""

from .coordinator import RunCoordinator
from .inventory import InventoryLoader
from .runner import TaskRunner
from .scheduler import PullScheduler
from .tasks import TaskLoader

__all__ = ["RunCoordinator", "InventoryLoader", "TaskRunner", "PullScheduler", "TaskLoader"]
