"""
Tests for exception classes.

Covers all exception types and their string representations.
"""

import pytest

from credit_ledger.exceptions import (
    AuthenticationError,
    DatabaseError,
    DataIntegrityError,
    DuplicateReferenceError,
    InsufficientCreditsError,
    LedgerError,
    PaymentProviderError,
    SignatureVerificationError,
    StorageConflictError,
    TenantNotFoundError,
    UnknownActionError,
    UnknownCreditPackError,
    UnknownPlanError,
    ValidationError,
    WriteVerificationError,
)


class TestLedgerError:
    """Tests for base LedgerError."""

    def test_ledger_error_is_exception(self):
        """LedgerError is a subclass of Exception."""
        assert issubclass(LedgerError, Exception)

    @pytest.mark.parametrize(
        "error_class",
        [
            AuthenticationError,
            ValidationError,
            TenantNotFoundError,
            InsufficientCreditsError,
            StorageConflictError,
            DuplicateReferenceError,
            WriteVerificationError,
            DataIntegrityError,
            DatabaseError,
            PaymentProviderError,
            SignatureVerificationError,
        ],
    )
    def test_all_errors_derive_from_ledger_error(self, error_class):
        """Every ledger exception can be caught as LedgerError."""
        assert issubclass(error_class, LedgerError)


class TestValidationErrors:
    """Tests for catalog lookup failures."""

    @pytest.mark.parametrize(
        ("error", "attribute", "text"),
        [
            (UnknownActionError("teleport"), "action", "Invalid action type: teleport"),
            (UnknownPlanError("gold"), "plan_id", "Invalid plan: gold"),
            (UnknownCreditPackError("credits_9"), "pack_id", "Invalid pack: credits_9"),
        ],
    )
    def test_catalog_errors(self, error, attribute, text):
        """Catalog errors are validation errors carrying the offending id."""
        assert isinstance(error, ValidationError)
        assert getattr(error, attribute)
        assert error.message == text
        assert str(error) == f"Validation error: {text}"


class TestStorageErrors:
    """Tests for storage error attributes."""

    def test_storage_conflict(self):
        exc = StorageConflictError("tenant-1", expected_version=7)
        assert exc.tenant_id == "tenant-1"
        assert exc.expected_version == 7
        assert "expected version 7" in str(exc)

    def test_duplicate_reference(self):
        exc = DuplicateReferenceError("in_123")
        assert exc.external_reference == "in_123"
        assert "in_123" in str(exc)

    def test_tenant_not_found(self):
        exc = TenantNotFoundError("tenant-x")
        assert exc.tenant_id == "tenant-x"
        assert str(exc) == "Tenant account not found: tenant-x"

    def test_insufficient_credits(self):
        exc = InsufficientCreditsError(balance=5, required=20)
        assert exc.balance == 5
        assert exc.required == 20
        assert "Balance: 5, Required: 20" in str(exc)

    @pytest.mark.parametrize(
        ("error_class", "prefix"),
        [
            (DatabaseError, "Database error"),
            (DataIntegrityError, "Data integrity error"),
            (WriteVerificationError, "Write verification failed"),
            (PaymentProviderError, "Payment provider error"),
            (SignatureVerificationError, "Webhook verification error"),
            (AuthenticationError, "Authentication failed"),
        ],
    )
    def test_message_errors(self, error_class, prefix):
        exc = error_class("boom")
        assert exc.message == "boom"
        assert str(exc) == f"{prefix}: boom"
