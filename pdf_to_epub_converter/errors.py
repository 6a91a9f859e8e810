"""Exception types raised by the converter."""

from __future__ import annotations


class NotFoundError(LookupError):
    """A referenced document, job or artifact does not exist."""


class IllegalTransitionError(RuntimeError):
    """The requested job operation is not allowed in the job's current state."""


class StageFailure(RuntimeError):
    """A conversion stage could not produce a structure."""


class StageTimeoutError(StageFailure):
    """A conversion stage overran its wall-clock bound."""


class StructureValidationError(ValueError):
    """A document structure broke one of its invariants."""

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("; ".join(self.violations) or "invalid document structure")


class ChapterValidationError(ValueError):
    """A chapter configuration was rejected before it was stored."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid chapter configuration")


class AlignmentDegraded(RuntimeError):
    """Audio analysis failed; alignment must fall back to a simpler strategy."""
