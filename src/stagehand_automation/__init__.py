"""Stagehand host configuration orchestrator."""

from .inventory import InventoryLoader
from .playbook import PlaybookLoader
from .planner import PlanBuilder
from .runner import ExecutionEngine, PlaybookRunner

__all__ = ["InventoryLoader", "PlaybookLoader", "PlanBuilder", "ExecutionEngine", "PlaybookRunner"]
