"""Error taxonomy for the session, ledger and analysis core.

Every error is scoped to a single session or identity. Routers translate
them into HTTP responses through the handlers registered in ``main.py``.
"""
from typing import Optional


class PrepError(Exception):
    """Base class for domain errors raised by the service layer."""

    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class LimitExceededError(PrepError):
    """The identity has no remaining attempts for the requested test type."""

    status_code = 402
    default_message = "No attempts remaining for this test"

    def __init__(self, identity: str, test_type: str, message: Optional[str] = None):
        super().__init__(message or f"No attempts remaining for {test_type}")
        self.identity = identity
        self.test_type = test_type


class InvalidStateError(PrepError):
    """A mutation was attempted on a terminal, foreign or missing session."""

    status_code = 409
    default_message = "Session is not in a valid state for this operation"

    def __init__(self, message: Optional[str] = None, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found
        if not_found:
            self.status_code = 404


class PersistenceError(PrepError):
    """A datastore operation failed. Writes surface as 'try again'."""

    status_code = 503
    default_message = "Storage temporarily unavailable, please try again"


class AnalysisDispatchError(PrepError):
    """Feedback generation failed. The session stays completed."""

    status_code = 502
    default_message = "Analysis failed, please retry from the results page"
