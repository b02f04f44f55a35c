from __future__ import annotations


class SyncError(Exception):
    code = "SyncError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class InvalidFeedURL(SyncError):
    code = "InvalidFeedURL"


class FetchFailed(SyncError):
    code = "FetchFailed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceFailure(SyncError):
    code = "PersistenceFailure"


class ConnectionNotFound(SyncError):
    code = "ConnectionNotFound"
