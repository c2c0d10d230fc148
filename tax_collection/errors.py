"""
Error Taxonomy

Domain exceptions raised by the engine. Each carries a machine-readable
error code so API and CLI layers can map failures without string matching.
"""

from typing import Optional


class CollectionError(Exception):
    """Base exception for the tax collection engine"""

    error_code = "COLLECTION_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)


class ValidationError(CollectionError, ValueError):
    """Input rejected by a domain rule"""

    error_code = "VALIDATION_ERROR"


class VisitSequenceError(ValidationError):
    """Escalation visit type does not match the expected sequence position"""

    error_code = "VISIT_SEQUENCE_ERROR"

    def __init__(self, expected_type: str, received_type: str, sequence_number: int):
        self.expected_type = expected_type
        self.received_type = received_type
        self.sequence_number = sequence_number
        super().__init__(
            f"Escalation visit #{sequence_number} must be '{expected_type}', "
            f"got '{received_type}'"
        )


class PaymentExceedsBalanceError(ValidationError):
    """Collected amount is larger than the outstanding demand balance"""

    error_code = "PAYMENT_EXCEEDS_BALANCE"

    def __init__(self, amount, balance):
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Payment amount (₹{amount}) exceeds demand balance (₹{balance})"
        )


class NotFoundError(CollectionError):
    """Referenced entity does not exist"""

    error_code = "NOT_FOUND"


class AuthorizationError(CollectionError):
    """Actor is not allowed to perform the operation"""

    error_code = "FORBIDDEN"


class ConflictError(CollectionError):
    """Operation conflicts with current state or a uniqueness constraint"""

    error_code = "CONFLICT"
