from typing import List, Optional


class MarketplaceError(Exception):
    """Base class for every failure the marketplace client reports."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    kind = "validation"

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) or "Invalid parameters")
        self.errors = list(errors)


class DerivationError(MarketplaceError):
    kind = "derivation"


class StateReadError(MarketplaceError):
    kind = "state_read"

    def __init__(self, message: str, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found


class EncodingOverflow(MarketplaceError):
    kind = "encoding_overflow"


class SubmissionError(MarketplaceError):
    kind = "submission"

    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NETWORK_ERROR = "network_error"

    def __init__(self, message: str, reason: str = REJECTED, signature: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.signature = signature
