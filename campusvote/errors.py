"""
Typed error taxonomy shared by every service.

Each error carries an enumerable ``kind`` so calling layers can branch on it,
plus the HTTP status and the user-facing message used by the API layer.

    Constraint violations   AlreadyVoted, InvalidList          (expected, INFO)
    Authorization failures  NotAuthenticated, Unauthorized     (audited, WARNING)
    Precondition failures   ElectionNotOpen, NotFound, ...     (recoverable)
    Infrastructure failures anything else                      (ERROR, HTTP 500)
"""
from __future__ import annotations

import logging
from enum import Enum

import asyncpg
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    ELECTION_NOT_OPEN = "election_not_open"
    ALREADY_VOTED = "already_voted"
    INVALID_LIST = "invalid_list"
    INVALID_TRANSITION = "invalid_transition"
    ELECTION_LOCKED = "election_locked"
    RESULTS_UNAVAILABLE = "results_unavailable"
    INVALID_REQUEST = "invalid_request"


class VotingError(Exception):
    kind: ErrorKind
    status_code: int = 400
    message: str = "Request could not be completed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.detail = message or self.message


class NotAuthenticated(VotingError):
    kind = ErrorKind.NOT_AUTHENTICATED
    status_code = 401
    message = "Authentication required"


class Unauthorized(VotingError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 403
    message = "You are not allowed to perform this action"


class NotFound(VotingError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    message = "Not found"


class ElectionNotFound(NotFound):
    message = "Election not found"


class ElectionNotOpen(VotingError):
    kind = ErrorKind.ELECTION_NOT_OPEN
    status_code = 409
    message = "Voting is not currently open"


class AlreadyVoted(VotingError):
    kind = ErrorKind.ALREADY_VOTED
    status_code = 409
    message = "You have already voted in this election"


class InvalidList(VotingError):
    kind = ErrorKind.INVALID_LIST
    status_code = 422
    message = "Invalid selection, please reload"


class InvalidTransition(VotingError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = 409
    message = "Invalid election status transition"


class ElectionLocked(VotingError):
    kind = ErrorKind.ELECTION_LOCKED
    status_code = 409
    message = "The election can no longer be modified"


class ResultsUnavailable(VotingError):
    kind = ErrorKind.RESULTS_UNAVAILABLE
    status_code = 409
    message = "Results are not available before voting opens"


class InvalidRequest(VotingError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 422
    message = "Invalid request"


# Constraint name -> error raised when it is violated.
CONSTRAINT_ERRORS: dict[str, type[VotingError]] = {
    "ballots_one_per_voter": AlreadyVoted,
    "ballots_list_matches_election": InvalidList,
    "ballots_election_open": ElectionNotOpen,
    "elections_dates_ordered": InvalidRequest,
}


def translate_db_error(exc: Exception) -> VotingError | None:
    """Map a storage constraint violation to its typed error, or None."""
    if not isinstance(exc, asyncpg.PostgresError):
        return None
    error_cls = CONSTRAINT_ERRORS.get(getattr(exc, "constraint_name", None) or "")
    if error_cls is None:
        return None
    return error_cls()


def error_payload(error: VotingError) -> dict:
    return {"error": error.kind.value, "detail": error.detail}


def register_error_handlers(app: FastAPI) -> None:
    """Render VotingError subclasses as ``{"error": kind, "detail": message}``."""

    @app.exception_handler(VotingError)
    async def voting_error_handler(request: Request, exc: VotingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=error_payload(exc))
