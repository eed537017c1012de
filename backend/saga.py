"""
One runner for every cross-system flow: Verify -> Lock -> Execute-on-ledger -> Finalize.

Flows hand the runner closures. The runner owns the failure semantics:

* lock conflict or post-lock recheck failure: lock released, error re-raised
* first ledger step rejected with nothing irreversible done yet: lock
  released, LedgerRejected
* ledger step not observed (timeout): lock held, an ``unconfirmed``
  reconciliation record is written, LedgerUnconfirmed
* any failure after an irreversible step (a later step, the local finalize,
  or any step of a prepaid flow): CRITICAL_DESYNC log, persisted
  reconciliation record, CriticalDivergence; nothing is rolled back
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from flow_errors import (
    CriticalDivergence,
    LedgerCallRejected,
    LedgerRejected,
    LedgerTimeout,
    LedgerUnconfirmed,
)
from ledger_client import Receipt
from store import Store

logger = logging.getLogger("garage")


@dataclass
class LedgerStep:
    name: str
    call: Callable[[], Any]  # returns Receipt or (id, Receipt)


@dataclass
class Saga:
    flow: str
    resources: Dict[str, Any]
    expected_state: Dict[str, Any]
    steps: List[LedgerStep]
    finalize: Callable[[Dict[str, Any], Dict[str, str]], Any]
    lock: Optional[Callable[[], None]] = None
    recheck: Optional[Callable[[], None]] = None
    release: Optional[Callable[[], None]] = None
    # receipts for value the caller already moved before the saga started
    prepaid: Dict[str, str] = field(default_factory=dict)
    on_divergence: Optional[Callable[[Dict[str, str], str], None]] = None


@dataclass
class SagaOutcome:
    results: Dict[str, Any]
    receipts: Dict[str, str]
    value: Any


def receipt_of(result: Any) -> Optional[Receipt]:
    if isinstance(result, Receipt):
        return result
    if isinstance(result, tuple):
        for part in result:
            if isinstance(part, Receipt):
                return part
    return None


class SagaRunner:
    def __init__(self, store: Store):
        self.store = store

    def run(self, saga: Saga) -> SagaOutcome:
        if saga.lock:
            saga.lock()
        if saga.recheck:
            try:
                saga.recheck()
            except Exception:
                self._release(saga, "recheck_failed")
                raise

        receipts: Dict[str, str] = dict(saga.prepaid)
        results: Dict[str, Any] = {}
        for step in saga.steps:
            irreversible_done = bool(receipts)
            try:
                result = step.call()
            except LedgerTimeout as exc:
                raise self._unconfirmed(saga, step.name, receipts, exc.signature, str(exc)) from exc
            except LedgerCallRejected as exc:
                if irreversible_done:
                    raise self._diverge(saga, f"{step.name} failed after irreversible ledger step", receipts, exc) from exc
                self._release(saga, f"{step.name}_rejected")
                logger.warning("saga_ledger_rejected flow=%s step=%s error=%s", saga.flow, step.name, exc)
                raise LedgerRejected(f"Ledger rejected {step.name}: {exc}", flow=saga.flow, step=step.name) from exc
            except Exception as exc:  # noqa: BLE001
                # outcome unknown: keep the lock and hand it to reconciliation
                logger.error("saga_step_error flow=%s step=%s error=%s", saga.flow, step.name, exc, exc_info=True)
                raise self._unconfirmed(saga, step.name, receipts, None, str(exc)) from exc
            results[step.name] = result
            receipt = receipt_of(result)
            if receipt is not None:
                receipts[step.name] = receipt.signature
            logger.info(
                "saga_step_ok flow=%s step=%s sig=%s",
                saga.flow,
                step.name,
                receipt.signature if receipt else None,
            )

        try:
            value = saga.finalize(results, receipts)
        except Exception as exc:  # noqa: BLE001
            raise self._diverge(saga, "local finalize failed after ledger success", receipts, exc) from exc
        logger.info("saga_complete flow=%s receipts=%s resources=%s", saga.flow, receipts, saga.resources)
        return SagaOutcome(results=results, receipts=receipts, value=value)

    def _release(self, saga: Saga, reason: str):
        if not saga.release:
            return
        try:
            saga.release()
            logger.info("saga_lock_released flow=%s reason=%s resources=%s", saga.flow, reason, saga.resources)
        except Exception:  # noqa: BLE001
            # lock stays held; the reconcile job will surface it
            logger.exception("saga_release_failed flow=%s reason=%s resources=%s", saga.flow, reason, saga.resources)

    def _unconfirmed(
        self, saga: Saga, step: str, receipts: Dict[str, str], signature: Optional[str], error: str
    ) -> LedgerUnconfirmed:
        resources = dict(saga.resources)
        resources["pending_step"] = step
        resources["pending_signature"] = signature
        resources["step_order"] = [s.name for s in saga.steps]
        resources["prepaid"] = sorted(saga.prepaid)
        logger.warning(
            "LEDGER_UNCONFIRMED flow=%s step=%s sig=%s receipts=%s resources=%s error=%s",
            saga.flow,
            step,
            signature,
            receipts,
            saga.resources,
            error,
        )
        record_id = None
        try:
            record_id = self.store.record_divergence(
                flow=saga.flow,
                severity="unconfirmed",
                message=f"{step} submitted but not confirmed; lock held until reconciled",
                receipts=receipts,
                resources=resources,
                expected_state=saga.expected_state,
                error=error,
            )
        except Exception:  # noqa: BLE001
            logger.exception("reconciliation_record_failed flow=%s step=%s", saga.flow, step)
        return LedgerUnconfirmed(
            "Ledger confirmation pending; the request will be reconciled",
            flow=saga.flow,
            step=step,
            signature=signature,
            receipts=receipts,
            reconciliation_id=record_id,
        )

    def _diverge(self, saga: Saga, message: str, receipts: Dict[str, str], exc: BaseException) -> CriticalDivergence:
        logger.critical(
            "CRITICAL_DESYNC flow=%s %s; receipts=%s resources=%s expected=%s error=%s",
            saga.flow,
            message,
            receipts,
            saga.resources,
            saga.expected_state,
            exc,
            exc_info=True,
        )
        record_id = None
        try:
            record_id = self.store.record_divergence(
                flow=saga.flow,
                severity="critical",
                message=message,
                receipts=receipts,
                resources=saga.resources,
                expected_state=saga.expected_state,
                error=str(exc),
            )
        except Exception:  # noqa: BLE001
            logger.exception("reconciliation_record_failed flow=%s receipts=%s", saga.flow, receipts)
        if saga.on_divergence:
            try:
                saga.on_divergence(receipts, str(exc))
            except Exception:  # noqa: BLE001
                logger.exception("divergence_marker_failed flow=%s resources=%s", saga.flow, saga.resources)
        return CriticalDivergence(
            flow=saga.flow,
            message=f"{message}. Please contact support with reference {record_id}.",
            receipts=receipts,
            resources=saga.resources,
            expected_state=saga.expected_state,
            record_id=record_id,
        )
