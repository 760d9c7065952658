"""Error taxonomy for permit operations.

The core raises these; the HTTP layer maps each one to a status code.
"""

from __future__ import annotations


class PermitError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidTransition(PermitError):
    """Requested action is not defined for the permit's current status."""

    status_code = 409


class UnauthorizedTransition(PermitError):
    """Acting user holds none of the capabilities the action requires."""

    status_code = 403


class CommentRequired(PermitError):
    status_code = 400


class TransitionFailed(PermitError):
    """The apply-transition collaborator failed; nothing was committed."""

    status_code = 502


class PermitNotFound(PermitError):
    status_code = 404


class PermitLocked(PermitError):
    status_code = 409


class AnalysisUnavailable(PermitError):
    status_code = 400


class AnalysisFailed(PermitError):
    status_code = 502

    def __init__(self, detail: str, status_code: int = 502):
        super().__init__(detail)
        self.status_code = status_code


class InvalidPermitData(PermitError):
    status_code = 400


class AlreadyExists(PermitError):
    status_code = 409
