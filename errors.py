"""Domain errors. Each carries the HTTP status the API maps it to."""
from typing import Optional


class TraceChainError(Exception):
    status_code = 500


class IdentifierTooLong(TraceChainError):
    status_code = 400


class ContentStoreUnavailable(TraceChainError):
    status_code = 502


class ChainUnavailable(TraceChainError):
    status_code = 503


class ChainRejected(TraceChainError):
    status_code = 502

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class WriteTimeout(TraceChainError):
    status_code = 504

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"transaction {tx_hash} not final after {timeout:g}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class ActorResolutionFailure(TraceChainError):
    status_code = 404


class StateConflict(TraceChainError):
    status_code = 409


class RejectionNotesTooShort(TraceChainError):
    status_code = 400


class BatchNotFound(TraceChainError):
    status_code = 404


class UserNotFound(TraceChainError):
    status_code = 404


class PermissionDenied(TraceChainError):
    status_code = 403


class InvalidRequest(TraceChainError):
    status_code = 400


class RecordNotFound(TraceChainError):
    status_code = 404
