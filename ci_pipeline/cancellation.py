"""Cooperative cancellation for a single run.

A ``CancelScope`` is an advisory flag that phases and collaborators check at
their boundaries and while waiting on long-running work. Cancelling a scope
cancels every scope derived from it; cancelling a child leaves the parent
untouched.
"""

from __future__ import annotations

import threading

from ci_pipeline.errors import RunCancelled


class CancelScope:
    """A cancellable scope, optionally chained to a parent scope."""

    def __init__(self, parent: CancelScope | None = None) -> None:
        self.parent = parent
        self._event = threading.Event()

    def child(self) -> CancelScope:
        """Derive a child scope that is cancelled along with this one."""
        return CancelScope(parent=self)

    def cancel(self) -> None:
        """Signal cancellation to this scope and its children."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.parent is not None and self.parent.cancelled

    def raise_if_cancelled(self) -> None:
        """Raise ``RunCancelled`` if the scope has been cancelled."""
        if self.cancelled:
            raise RunCancelled()

    def __enter__(self) -> CancelScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()
