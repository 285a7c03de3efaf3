"""Exception types raised by the sync engine."""

from __future__ import annotations


class RemoteError(Exception):
    """Remote API request failed."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFound(RemoteError):
    """Requested remote record does not exist (expected for optional relations)."""

    def __init__(self, entity_type: str, remote_id: str):
        super().__init__(f"{entity_type} {remote_id} not found", status_code=404)
        self.entity_type = entity_type
        self.remote_id = remote_id


class MappingError(ValueError):
    """A single remote record cannot be mapped to a local entity."""


class SyncCancelled(Exception):
    """Run-level cancellation was requested."""


class CancelToken:
    """Cooperative cancellation flag shared by a sync run.

    Checked before new remote calls are issued; in-flight calls finish.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise SyncCancelled("sync run cancelled")
