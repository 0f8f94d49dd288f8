"""
Error taxonomy for the till engine

Mirrors how HTTPException carries a status code and a human readable
detail, without tying the engine to a web framework:

- ValidationError: local rule violation, no network call involved
- PermissionDenied: the role lacks the capability for the action
- TransportError: the backend could not be reached or answered non-2xx
- ConflictAtCommit: the backend rejected a sale because stock changed
- StaleResponse: a superseded request finished; callers discard it
"""

from typing import Optional


class TillError(Exception):
    """Base class for every user-facing engine error"""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return self.detail


class ValidationError(TillError):
    """Blocking input error, reported verbatim and never retried"""


class PermissionDenied(TillError):
    """Role-based gate (past-day edits, line cancellation)"""


class TransportError(TillError):
    """Fetch failed or returned a non-success status"""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.status_code = status_code


class ConflictAtCommit(TransportError):
    """Server refused the commit (409), usually a concurrent stock change"""

    def __init__(self, detail: str, status_code: Optional[int] = 409):
        super().__init__(detail, status_code=status_code)


class StaleResponse(Exception):
    """
    A response (or failure) for a request that is no longer the latest one
    issued for its resource. Not an error: callers drop it silently.
    """

    def __init__(self, resource: str, generation: int):
        super().__init__(f"{resource} generation {generation} superseded")
        self.resource = resource
        self.generation = generation
