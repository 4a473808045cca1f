"""Exception hierarchy for Harborline.

Only two errors ever reach a caller of the orchestrator: ``ValidationError``
(synchronously, from ``trigger``) and ``RunNotFoundError`` (from lookups and
subscriptions). Everything that goes wrong inside a running pipeline is turned
into a FAILED run instead of an exception.
"""

from __future__ import annotations


class HarborlineError(Exception):
    """Base class for all Harborline errors."""


class ValidationError(HarborlineError, ValueError):
    """A build request was rejected before a run was created."""


class RunNotFoundError(HarborlineError, KeyError):
    """No run with the given id is registered."""

    def __init__(self, run_id: str):
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"run not found: {self.run_id}"


class InvalidTransitionError(HarborlineError, RuntimeError):
    """A status change that the run state machine does not allow.

    This indicates a bug in the workflow, not an external failure.
    """
