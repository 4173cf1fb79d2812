from __future__ import annotations

from typing import Any, Optional


class GlowCoreError(Exception):
    pass


class StorageReadError(GlowCoreError):
    """A guest slot could not be read or decoded."""

    def __init__(self, slot: str, reason: str) -> None:
        super().__init__(f"{slot}: {reason}")
        self.slot = slot
        self.reason = reason


class RemoteServiceError(GlowCoreError):
    def __init__(self, service: str, message: str, *, status: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.service = service
        self.status = status
        self.detail = detail


class RemoteReadError(RemoteServiceError):
    pass


class RemoteWriteError(RemoteServiceError):
    pass
