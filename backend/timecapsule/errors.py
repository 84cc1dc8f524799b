from __future__ import annotations


class CapsuleError(Exception):
    """Base class for failures raised by the capsule core."""


class InvalidInputError(CapsuleError):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConflictError(CapsuleError):
    pass


class UnavailableError(CapsuleError):
    pass


class NotificationError(CapsuleError):
    pass
