"""Error types raised by the reconciliation core."""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""


class AlreadyInProgressError(ReconciliationError):
    """A run was requested while one is active for the same scope."""

    def __init__(self, scope: str, job_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__("Reconciliation already in progress")
        self.scope = scope
        self.job_id = job_id
        self.status = status


class NotFoundError(ReconciliationError):
    """A referenced job or discrepancy does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.identifier = identifier


class AlreadyResolvedError(ReconciliationError):
    """A discrepancy was resolved a second time."""

    def __init__(self, discrepancy_id: str):
        super().__init__("Discrepancy already resolved")
        self.discrepancy_id = discrepancy_id


class AdapterFailure(ReconciliationError):
    """An external collaborator failed for a single resource."""

    def __init__(self, adapter: str, resource_id: Optional[str], message: str):
        super().__init__(f"{adapter} failed for {resource_id or 'request'}: {message}")
        self.adapter = adapter
        self.resource_id = resource_id


class SetupFailure(ReconciliationError):
    """The job record could not be created or updated."""


class InvalidRequestError(ReconciliationError):
    """The run parameters are missing or malformed."""
