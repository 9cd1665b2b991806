from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for request-level orchestration errors."""


class PreconditionError(ConductorError):
    """Raised when a request is invalid for the current state; nothing is changed."""


class NotFoundError(ConductorError):
    """Raised when a referenced row does not exist."""


class WorktreeError(ConductorError):
    """Raised when a git command fails."""


class StoreError(ConductorError):
    """Raised when shared-state operations fail."""


class ContentStoreError(ConductorError):
    """Raised for invalid blob keys."""


class WorkflowDefinitionError(ValueError):
    """Raised when a workflow definition file is invalid."""
