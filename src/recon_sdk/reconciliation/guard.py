"""Single-flight guard for reconciliation runs."""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator

from ..errors import AlreadyInProgressError
from .configs import ALL_SCOPE

logger = logging.getLogger(__name__)


class SingleFlightGuard:
    """Tracks which reconciliation scopes have a run in flight.

    Scopes are plain strings such as a config name, ``"all"`` or
    ``"premium_reconciliation:2025-01"``. ``"all"`` overlaps every unqualified
    scope (one without a ``:``), so a full run and a single-config run never
    execute together. Qualified scopes only conflict with themselves.

    State lives in this object, so a guard protects one process only;
    replicas each hold their own.

    acquire and release never await, so a check-and-set cannot interleave
    with another coroutine.
    """

    def __init__(self):
        self._active: Dict[str, int] = {}

    @staticmethod
    def _overlaps(scope: str, held: str) -> bool:
        if scope == held:
            return True
        if ":" in scope or ":" in held:
            return False
        return scope == ALL_SCOPE or held == ALL_SCOPE

    def is_active(self, scope: str) -> bool:
        """Return True if a run overlapping the scope is in flight."""
        return any(self._overlaps(scope, held) for held in self._active)

    def acquire(self, scope: str, force: bool = False) -> None:
        """Mark a run as in flight.

        Args:
            scope: Scope of the run.
            force: Start even when an overlapping run is in flight.

        Raises:
            AlreadyInProgressError: If an overlapping run is in flight and force is False.
        """
        if self.is_active(scope):
            if not force:
                raise AlreadyInProgressError(scope)
            logger.warning(f"Forcing reconciliation for {scope} while another run is in flight")
        self._active[scope] = self._active.get(scope, 0) + 1

    def release(self, scope: str) -> None:
        """Clear one in-flight mark for the scope."""
        count = self._active.get(scope, 0)
        if count <= 1:
            self._active.pop(scope, None)
        else:
            self._active[scope] = count - 1

    @contextmanager
    def hold(self, scope: str, force: bool = False) -> Iterator[None]:
        """Hold the scope for the duration of a with-block."""
        self.acquire(scope, force=force)
        try:
            yield
        finally:
            self.release(scope)
