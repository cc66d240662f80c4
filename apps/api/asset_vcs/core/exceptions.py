"""
Typed error hierarchy for the asset version control core.

Every error carries a machine readable ``code``, a human readable ``message``
and a ``details`` dict. ``http_status`` is used by the API layer when mapping
errors to responses.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class VersionControlError(Exception):
    """Base exception for version control operations."""

    code = "vcs.error"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(VersionControlError):
    code = "vcs.not_found"
    http_status = 404


class AlreadyExistsError(VersionControlError):
    code = "vcs.already_exists"
    http_status = 409


class ValidationError(VersionControlError):
    code = "vcs.validation_failed"
    http_status = 422


class UnresolvedConflictsError(VersionControlError):
    """Raised when a merge is attempted while conflicts lack a resolution."""

    code = "vcs.unresolved_conflicts"
    http_status = 409

    def __init__(self, conflicts: List[Any], message: Optional[str] = None):
        self.conflicts = list(conflicts)
        super().__init__(
            message or f"{len(self.conflicts)} conflict(s) must be resolved before merging",
            details={
                "conflicts": [
                    {"id": str(c.id), "type": c.type.value, "path": c.path}
                    for c in self.conflicts
                ]
            },
        )


class NoCommonAncestorError(VersionControlError):
    code = "vcs.no_common_ancestor"
    http_status = 409


class ConcurrencyConflictError(VersionControlError):
    """A compare-and-swap lost against a concurrent writer."""

    code = "vcs.concurrency_conflict"
    http_status = 409


class NotAnApproverError(VersionControlError):
    code = "vcs.not_an_approver"
    http_status = 403


class InsufficientApprovalsError(VersionControlError):
    code = "vcs.insufficient_approvals"
    http_status = 409


class WorkflowExpiredError(VersionControlError):
    code = "vcs.workflow_expired"
    http_status = 409


class OperationCancelledError(VersionControlError):
    code = "vcs.cancelled"
    http_status = 499


class OperationTimeoutError(VersionControlError):
    code = "vcs.timeout"
    http_status = 504


class StoreError(VersionControlError):
    """Untyped failure inside a version store, wrapped with operation context."""

    code = "vcs.store_error"
    http_status = 503


class BlobStoreError(VersionControlError):
    code = "vcs.blob_store_error"
    http_status = 503
