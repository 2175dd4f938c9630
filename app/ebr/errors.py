"""
Domain errors for the batch record core.

Every error carries the HTTP status the API layer translates it to, and a
human-readable message naming the blocking section, rule or signature defect.
"""
from __future__ import annotations


class EBRError(RuntimeError):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message}


class ValidationError(EBRError):
    status_code = 400


class IllegalTransition(ValidationError):
    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Illegal section status transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class LockConflict(EBRError):
    status_code = 400


class PendingApprovalConflict(LockConflict):
    pass


class DependencyUnmet(EBRError):
    status_code = 400


class SignatureInvalid(EBRError):
    status_code = 401

    NOT_FOUND = "NOT_FOUND"
    USER_MISMATCH = "USER_MISMATCH"
    HASH_MISMATCH = "HASH_MISMATCH"
    EXPIRED = "EXPIRED"
    ALREADY_USED = "ALREADY_USED"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid signature: {reason}")
        self.reason = reason

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["reason"] = self.reason
        return d


class NotFound(EBRError):
    status_code = 404


class ConcurrencyConflict(EBRError):
    status_code = 500
