"""Error taxonomy for lifecycle transitions.

Every error is scoped to one transition attempt. Negative oracle outcomes
(``RejectedIrrelevant``, ``RejectedFraudulent``) are raised only after the
penalty they carry has been committed.
"""


class EngineError(Exception):
    """Base class for everything the engine reports to a caller."""

    outcome = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    outcome = "invalid"


class NotFound(EngineError):
    outcome = "not_found"


class OracleUnavailable(EngineError):
    """An oracle call failed, timed out or returned an unusable payload."""

    outcome = "oracle_unavailable"


class RejectedIrrelevant(EngineError):
    outcome = "rejected_irrelevant"

    def __init__(self, reason: str = ""):
        super().__init__(reason or "Submitted photos do not show a civic issue")
        self.reason = self.message


class RejectedFraudulent(EngineError):
    outcome = "rejected_fraudulent"

    def __init__(self, reason: str = ""):
        super().__init__(reason or "Submitted photos appear to be AI-generated or manipulated")
        self.reason = self.message


class ConcurrencyConflict(EngineError):
    """Write conflict that survived every retry; safe to retry the whole call."""

    outcome = "conflict"


class StoreUnavailable(EngineError):
    """The record store could not be reached or refused the unit; nothing was committed."""

    outcome = "store_unavailable"
