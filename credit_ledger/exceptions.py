"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class LedgerError(Exception):
    """Base exception for all credit ledger errors."""

    pass


class AuthenticationError(LedgerError):
    """Raised when authentication fails (bad platform secret or API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class ValidationError(LedgerError):
    """Raised when a request carries a missing or invalid field."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation error: {message}")


class UnknownActionError(ValidationError):
    """Raised when an action kind has no entry in the cost table."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Invalid action type: {action}")


class UnknownPlanError(ValidationError):
    """Raised when a plan id is not in the plan catalog."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Invalid plan: {plan_id}")


class UnknownCreditPackError(ValidationError):
    """Raised when a credit pack id is not in the pack catalog."""

    def __init__(self, pack_id: str) -> None:
        self.pack_id = pack_id
        super().__init__(f"Invalid pack: {pack_id}")


class TenantNotFoundError(LedgerError):
    """Raised when no ledger account exists for a tenant."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Tenant account not found: {tenant_id}")


class InsufficientCreditsError(LedgerError):
    """Raised when an adjustment would take a pool below zero."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class StorageConflictError(LedgerError):
    """Raised when the account version changed between read and write."""

    def __init__(self, tenant_id: str, expected_version: int) -> None:
        self.tenant_id = tenant_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification detected for tenant {tenant_id} "
            f"(expected version {expected_version})"
        )


class DuplicateReferenceError(LedgerError):
    """Raised when an external reference has already been applied to the ledger."""

    def __init__(self, external_reference: str) -> None:
        self.external_reference = external_reference
        super().__init__(f"External reference already applied: {external_reference}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DatabaseError(LedgerError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentProviderError(LedgerError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class SignatureVerificationError(LedgerError):
    """Raised when a webhook signature or payload fails verification."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
