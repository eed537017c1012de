from typing import Any, Dict, List, Optional


class FlowError(Exception):
    """Base class for typed flow failures surfaced to the caller."""

    status_code = 400
    code = "flow_error"

    def __init__(self, message: str, **payload: Any):
        super().__init__(message)
        self.message = message
        self.payload: Dict[str, Any] = payload

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        body.update(self.payload)
        return body


class ValidationFailed(FlowError):
    status_code = 422
    code = "validation_failed"


class PreconditionFailed(FlowError):
    status_code = 400
    code = "precondition_failed"


class InsufficientFunds(PreconditionFailed):
    code = "insufficient_funds"


class RecoverableConflict(FlowError):
    status_code = 409
    code = "recoverable_conflict"


class LedgerVerificationFailed(FlowError):
    status_code = 400
    code = "ledger_verification_failed"


class LedgerRejected(FlowError):
    status_code = 502
    code = "ledger_rejected"


class LedgerUnconfirmed(FlowError):
    """Ledger call submitted but not observed yet; the local lock stays held."""

    status_code = 202
    code = "ledger_unconfirmed"


class SoldOutWithOptions(FlowError):
    status_code = 409
    code = "sold_out"

    def __init__(self, series: str, refund_bonus: int, options: Optional[List[str]] = None, **payload: Any):
        super().__init__(
            f"Series {series} is sold out",
            series=series,
            refund_bonus=refund_bonus,
            options=options or ["claim_refund", "join_waitlist"],
            **payload,
        )
        self.series = series
        self.refund_bonus = refund_bonus


class CriticalDivergence(FlowError):
    """A non-cancelable ledger step succeeded and a later step did not."""

    status_code = 500
    code = "contact_support"

    def __init__(
        self,
        flow: str,
        message: str,
        receipts: Optional[Dict[str, str]] = None,
        resources: Optional[Dict[str, Any]] = None,
        expected_state: Optional[Dict[str, Any]] = None,
        record_id: Optional[int] = None,
    ):
        super().__init__(
            message,
            flow=flow,
            receipts=receipts or {},
            resources=resources or {},
            expected_state=expected_state or {},
            reconciliation_id=record_id,
        )
        self.flow = flow
        self.receipts = receipts or {}
        self.resources = resources or {}
        self.expected_state = expected_state or {}
        self.record_id = record_id


class LedgerError(Exception):
    """Raised by ledger clients."""


class LedgerCallRejected(LedgerError):
    """The ledger definitively refused or reverted the call."""


class LedgerTimeout(LedgerError):
    """Submitted but no final status observed within the confirmation window."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature
