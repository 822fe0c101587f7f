from __future__ import annotations

from typing import Iterable, Optional


class StagehandError(Exception):
    """Base class for orchestrator errors."""


class ParseError(StagehandError, ValueError):
    """Raised when an inventory, playbook or variable file is malformed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class InventoryParseError(ParseError):
    pass


class PlaybookParseError(ParseError):
    pass


class ResolutionError(StagehandError):
    """Inventory or plan could not be resolved for one or more hosts."""


class UnknownHostPatternError(ResolutionError):
    def __init__(self, term: str):
        super().__init__(f"pattern '{term}' matches no host or group")
        self.term = term


class CyclicGroupError(ResolutionError):
    def __init__(self, chain: Iterable[str]):
        self.chain = list(chain)
        super().__init__("cyclic group nesting: " + " -> ".join(self.chain))


class UndefinedVariableError(ResolutionError):
    pass


class GuardEvaluationError(ResolutionError):
    def __init__(self, expression: str, reason: str):
        super().__init__(f"cannot evaluate '{expression}': {reason}")
        self.expression = expression


class DependencyCycleError(ResolutionError):
    def __init__(self, members: Iterable[str]):
        self.members = sorted(members)
        super().__init__("register/when references form a cycle: " + ", ".join(self.members))


class ConnectivityError(StagehandError):
    """Transient failure reaching a host; retried before marking it unreachable."""


class OperationError(StagehandError):
    pass


class HandlerError(OperationError):
    pass


class FactGatherError(StagehandError):
    def __init__(self, host: str, reason: str):
        super().__init__(f"fact gathering failed for {host}: {reason}")
        self.host = host


class VaultError(StagehandError):
    pass
