from __future__ import annotations


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class ConflictError(StoreError):
    status_code = 400


class NotFoundError(StoreError):
    status_code = 400


class PermissionDenied(StoreError):
    status_code = 403


class PersistenceError(StoreError):
    status_code = 500


class ChatPlatformError(StoreError):
    """A Telegram call failed in a way we do not recover from."""


class MessageMissing(ChatPlatformError):
    """Edit target no longer exists."""


class EditForbidden(ChatPlatformError):
    """The bot may not edit the target message."""
