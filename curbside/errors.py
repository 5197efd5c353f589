from __future__ import annotations


class CurbsideError(Exception):
    """Base error. ``kind`` is the stable machine-checkable name sent to clients."""

    kind = "CurbsideError"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class InvalidCoordinate(CurbsideError):
    kind = "InvalidCoordinate"
    status_code = 400


class MissingField(CurbsideError):
    kind = "MissingField"
    status_code = 400

    def __init__(self, fields: list[str], what: str = "fields"):
        super().__init__(f"Missing required {what}: {', '.join(fields)}")
        self.fields = list(fields)


class InvalidEnum(CurbsideError):
    kind = "InvalidEnum"
    status_code = 400


class RateLimited(CurbsideError):
    kind = "RateLimited"
    status_code = 429


class Unauthenticated(CurbsideError):
    kind = "Unauthenticated"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class SessionNotFound(CurbsideError):
    kind = "SessionNotFound"
    status_code = 404

    def __init__(self, message: str = "No active parking session found"):
        super().__init__(message)


class StoreUnavailable(CurbsideError):
    kind = "StoreUnavailable"
    status_code = 503
