"""Session-level error taxonomy. Each error carries a machine-readable reason."""


class BoardError(Exception):
    """Base for every error the board surfaces to a caller."""

    reason = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(message)


class InsufficientCredits(BoardError):
    """Admission rejected by the credit gate. Not a bug."""

    reason = "insufficient_credits"
    status_code = 402


class DealNotFound(BoardError):
    reason = "deal_not_found"
    status_code = 404


class DealAccessDenied(BoardError):
    reason = "deal_access_denied"
    status_code = 403


class SessionConflict(BoardError):
    """A board session is already running for the same deal."""

    reason = "session_conflict"
    status_code = 409


class NoLiveMembersError(BoardError):
    reason = "no_live_members"


class PersistenceError(BoardError):
    reason = "persistence_unavailable"


class InvalidSessionState(BoardError):
    """Programming invariant violated. Should never reach a caller."""

    reason = "invalid_session_state"


class SessionCancelled(BoardError):
    reason = "cancelled"
    status_code = 499


class InvalidDossier(BoardError):
    """The deal's findings exist but cannot be read."""

    reason = "invalid_dossier"
    status_code = 422
