from __future__ import annotations
from typing import Sequence


class PlaybookEngineError(Exception):
    """Base class for configuration-level failures of the engine."""


class PlaybookValidationError(PlaybookEngineError):
    def __init__(self, playbook_id: str, errors: Sequence[str]) -> None:
        self.playbook_id = playbook_id
        self.errors = list(errors)
        super().__init__(f"Invalid playbook {playbook_id!r}: " + "; ".join(self.errors))


class CircularDependencyError(PlaybookEngineError):
    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Circular dependency detected: " + " -> ".join(self.cycle))


class FormulaError(PlaybookEngineError, ValueError):
    """Formula could not be tokenized, parsed or evaluated."""
