"""
Darkflow Exception Hierarchy

All exceptions inherit from DarkflowError for easy catching.

Taxonomy:
    Not-found            RecordNotFoundError
    Precondition-failed  PreconditionFailedError and subclasses
    Transport/submission SubmissionError
    Configuration        ConfigurationError (fatal at startup only)
"""


class DarkflowError(Exception):
    """Base exception for all Darkflow errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(DarkflowError):
    """Raised when input or payload validation fails"""
    pass


class ConfigurationError(DarkflowError):
    """Raised when configuration or credentials cannot be loaded"""
    pass


class RecordNotFoundError(DarkflowError):
    """Raised when a derived address holds no record"""
    pass


class PreconditionFailedError(DarkflowError):
    """Raised when a record exists but is in the wrong state"""
    pass


class SettlementNotActiveError(PreconditionFailedError):
    """Raised when execution is attempted against an inactive settlement"""
    pass


class AlreadyFundedError(PreconditionFailedError):
    """Raised when an escrow is funded a second time"""
    pass


class InsufficientFundsError(PreconditionFailedError):
    """Raised when an escrow balance is below the expected deposit"""
    pass


class RecordExistsError(PreconditionFailedError):
    """Raised when a record is created at an address already in use"""
    pass


class SubmissionError(DarkflowError):
    """Raised when a state-changing call fails in transport or is rejected"""
    pass


class UnauthorizedSignerError(SubmissionError):
    """Raised when an instruction signature does not verify"""
    pass


class QuoteError(DarkflowError):
    """Raised when the external aggregator cannot produce a quote or route"""
    pass
