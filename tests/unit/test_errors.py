"""Tests for categorized errors."""

from __future__ import annotations

import pytest

from amphibian.errors import (
    AmphibianError,
    AuthFailedError,
    ErrorKind,
    InputInvalidError,
    IntegrityError,
    OperationTimeoutError,
    PoolExhaustedError,
    RequestCancelledError,
    TransportLostError,
    UnknownMessageError,
)


class TestErrorKinds:
    """Test suite for error categorization."""

    @pytest.mark.parametrize(
        ("error_cls", "kind"),
        [
            (InputInvalidError, ErrorKind.INPUT_INVALID),
            (AuthFailedError, ErrorKind.AUTH_FAILED),
            (OperationTimeoutError, ErrorKind.TIMEOUT),
            (PoolExhaustedError, ErrorKind.POOL_EXHAUSTED),
            (TransportLostError, ErrorKind.TRANSPORT_LOST),
            (IntegrityError, ErrorKind.INTEGRITY),
            (RequestCancelledError, ErrorKind.CANCELLED),
        ],
    )
    def test_kind_per_class(self, error_cls: type[AmphibianError], kind: ErrorKind) -> None:
        """Each exception class carries its category."""
        error = error_cls("boom")

        assert error.kind is kind
        assert isinstance(error, AmphibianError)

    def test_to_dict(self) -> None:
        """Test error serialization."""
        error = PoolExhaustedError("no workers", {"task_id": "t1"})

        assert error.to_dict() == {
            "error": "pool_exhausted",
            "message": "no workers",
            "details": {"task_id": "t1"},
        }

    def test_unknown_message_is_input_invalid(self) -> None:
        """Unknown wire tags are an input error that remembers the tag."""
        error = UnknownMessageError("BOGUS")

        assert error.kind is ErrorKind.INPUT_INVALID
        assert error.tag == "BOGUS"
        assert "BOGUS" in str(error)
