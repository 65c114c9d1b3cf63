"""
Disbursement Dispatcher

Moves a caller-supplied list of payouts from pending to a final status
through the right transfer provider:

- channel "mpesa" (waiters, and groups of mpesa restaurants): mobile-money
  provider, one bulk call when it supports it, else one call per payout
  with a fixed pause between calls
- channel "bank" (distribution groups): bank provider, one call per payout
  with a fixed pause, destination from the payout's recipient_account or
  the group's active BankAccount

Steps for one dispatch call:
1. Payouts that are unknown or not pending are reported and skipped.
2. Pre-flight: a payout with no usable destination, or an M-Pesa payout
   with cents (Daraja takes whole shillings), is marked failed
   ("ERROR: ...") without calling any provider.
3. Claim: each remaining payout is moved pending -> processing with a
   conditional update and the claim is committed before any provider call,
   so a concurrent dispatch can't send the same payout twice.
4. Send and record: success -> completed (or stays processing with the
   provider reference when the provider finishes asynchronously), refusal
   -> failed with "ERROR: <message>".
5. If a provider call raises, every claimed payout without a result goes
   back to pending and the whole call reports failure.

The dispatcher owns its transaction boundaries: it commits after the claim
and after every recorded outcome.
"""

import json
import logging
import re
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.orm import Session

from database.models import Payout, PayoutChannel, PayoutStatus, PayoutType
from database.payout_store import PayoutStore
from services.config import Settings
from services.distribution import get_bank_account
from services.errors import TransferError
from services.mpesa import is_whole_shillings
from services.notifications import LoggingNotifier, Notifier, notify_payout_outcome
from services.transfers.base import (
    BankAccountDetails, BulkTransferProvider, TransferProvider, TransferRequest,
    TransferResult, TransferState
)

logger = logging.getLogger(__name__)

ERROR_PREFIX = "ERROR: "
GENERIC_FAILURE = "Payout processing failed"
INVALID_ACCOUNT = "Invalid recipient account format"
REFERENCE_PATTERN = re.compile(r"^PAYOUT-(\d+)$")


class PayoutResult(BaseModel):
    payout_id: int
    success: bool
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class DispatchResult(BaseModel):
    success: bool
    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    results: List[PayoutResult] = []
    message: str = ""


def payout_reference(payout_id: int) -> str:
    return f"PAYOUT-{payout_id}"


def error_reference(message: str) -> str:
    return (ERROR_PREFIX + message)[:255]


def summary_message(processed: int, failed: int, skipped: int) -> str:
    message = f"Processed {processed} payouts, {failed} failed"
    if skipped:
        message += f", {skipped} skipped"
    return message


class DisbursementDispatcher:
    """Sends pending payouts and records the outcomes."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        mobile_provider: TransferProvider,
        bank_provider: TransferProvider,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.settings = settings
        self.mobile_provider = mobile_provider
        self.bank_provider = bank_provider
        self.notifier = notifier or LoggingNotifier()
        self.sleep = sleep
        self.store = PayoutStore(db)

    # ============================================
    # Dispatch
    # ============================================

    def dispatch(self, payout_ids: List[int]) -> DispatchResult:
        ids = list(dict.fromkeys(payout_ids))
        results: Dict[int, PayoutResult] = {}
        payouts = self.store.get_many(ids)

        # 1. Eligibility
        eligible = []
        for payout_id in ids:
            payout = payouts.get(payout_id)
            if payout is None:
                results[payout_id] = PayoutResult(payout_id=payout_id, success=False, error="Payout not found")
            elif payout.status != PayoutStatus.PENDING.value:
                results[payout_id] = PayoutResult(
                    payout_id=payout_id,
                    success=False,
                    status=payout.status,
                    error=f"Payout is {payout.status}, only pending payouts can be processed",
                )
            else:
                eligible.append(payout)
        skipped = set(results)

        # 2. Pre-flight
        requests_by_id: Dict[int, TransferRequest] = {}
        claim_patches: Dict[int, dict] = {}
        failed_ids = set()
        for payout in eligible:
            request, patch, error = self._prepare(payout)
            if error:
                marked = self.store.conditional_update(
                    [payout.id], PayoutStatus.PENDING.value,
                    {"status": PayoutStatus.FAILED.value, "transaction_reference": error_reference(error)},
                )
                if marked:
                    logger.warning(f"Payout {payout.id} failed pre-flight: {error}")
                    results[payout.id] = PayoutResult(
                        payout_id=payout.id, success=False, status=PayoutStatus.FAILED.value, error=error
                    )
                    failed_ids.add(payout.id)
                else:
                    results[payout.id] = self._lost_claim(payout.id)
                    skipped.add(payout.id)
                continue
            requests_by_id[payout.id] = request
            claim_patches[payout.id] = patch

        # 3. Claim
        claimed: List[Payout] = []
        for payout in eligible:
            if payout.id not in requests_by_id:
                continue
            patch = {"status": PayoutStatus.PROCESSING.value}
            patch.update(claim_patches[payout.id])
            if self.store.conditional_update([payout.id], PayoutStatus.PENDING.value, patch):
                claimed.append(payout)
            else:
                results[payout.id] = self._lost_claim(payout.id)
                skipped.add(payout.id)
        self.db.commit()

        if claimed:
            logger.info(f"Dispatch: claimed {len(claimed)} payouts ({len(failed_ids)} failed pre-flight)")
        for payout in eligible:
            if payout.id in failed_ids:
                notify_payout_outcome(self.notifier, payout, PayoutStatus.FAILED.value)

        # 4. Send
        mobile = [p for p in claimed if p.channel == PayoutChannel.MPESA.value]
        bank = [p for p in claimed if p.channel != PayoutChannel.MPESA.value]

        abort_message = None
        try:
            self._send_mobile(mobile, requests_by_id, results)
            self._send_bank(bank, requests_by_id, results)
        except TransferError as e:
            abort_message = e.message
            logger.error(f"Dispatch aborted: {e.message}")
        except Exception:
            abort_message = GENERIC_FAILURE
            logger.exception("Dispatch aborted by unexpected provider error")

        # 5. Nothing claimed may stay processing without a result
        unresolved = [p.id for p in claimed if p.id not in results]
        if unresolved:
            self.db.rollback()
            reverted = self.store.conditional_update(
                unresolved, PayoutStatus.PROCESSING.value, {"status": PayoutStatus.PENDING.value}
            )
            self.db.commit()
            reason = abort_message or "Batch interrupted before this payout was sent"
            abort_message = reason
            for payout_id in unresolved:
                results[payout_id] = PayoutResult(
                    payout_id=payout_id,
                    success=False,
                    status=PayoutStatus.PENDING.value if payout_id in reverted else None,
                    error=f"{reason}. Payout reverted to pending",
                )
            logger.error(f"Dispatch: reverted {len(reverted)} payouts to pending")

        ordered = [results[payout_id] for payout_id in ids]
        failed_count = sum(
            1 for r in ordered if r.payout_id not in skipped and r.status == PayoutStatus.FAILED.value
        )
        processed_count = sum(1 for r in ordered if r.success)

        if abort_message:
            message = f"Payout processing failed: {abort_message}"
        else:
            message = summary_message(processed_count, failed_count, len(skipped))

        logger.info(f"Dispatch finished: {message}")
        return DispatchResult(
            success=abort_message is None,
            processed_count=processed_count,
            failed_count=failed_count,
            skipped_count=len(skipped),
            results=ordered,
            message=message,
        )

    def retry_failed_payouts(self, payout_ids: List[int]) -> DispatchResult:
        """Reset failed payouts to pending and dispatch them again."""
        ids = list(dict.fromkeys(payout_ids))
        payouts = self.store.get_many(ids)

        rejected: Dict[int, PayoutResult] = {}
        retryable = []
        for payout_id in ids:
            payout = payouts.get(payout_id)
            if payout is None:
                rejected[payout_id] = PayoutResult(payout_id=payout_id, success=False, error="Payout not found")
            elif payout.status != PayoutStatus.FAILED.value:
                rejected[payout_id] = PayoutResult(
                    payout_id=payout_id,
                    success=False,
                    status=payout.status,
                    error=f"Payout is {payout.status}, only failed payouts can be retried",
                )
            else:
                retryable.append(payout_id)

        reset = self.store.conditional_update(
            retryable, PayoutStatus.FAILED.value,
            {"status": PayoutStatus.PENDING.value, "processed_at": None},
        )
        self.db.commit()
        for payout_id in retryable:
            if payout_id not in reset:
                rejected[payout_id] = PayoutResult(
                    payout_id=payout_id, success=False, error="Payout changed status before retry"
                )

        logger.info(f"Retry: {len(reset)} failed payouts reset to pending")
        outcome = self.dispatch(reset) if reset else DispatchResult(success=True, message="No failed payouts to retry")

        by_id = {r.payout_id: r for r in outcome.results}
        by_id.update(rejected)
        outcome.results = [by_id[payout_id] for payout_id in ids]
        outcome.skipped_count += len(rejected)
        if rejected and outcome.success:
            if reset:
                outcome.message = summary_message(
                    outcome.processed_count, outcome.failed_count, outcome.skipped_count
                )
            else:
                outcome.message += f", {len(rejected)} skipped"
        return outcome

    # ============================================
    # Provider callbacks and reconciliation
    # ============================================

    def apply_provider_update(
        self,
        reference: str,
        outcome: TransferState,
        detail: str = "",
        final_reference: Optional[str] = None,
        payout_ref: Optional[str] = None,
    ) -> Optional[Payout]:
        """
        Record an asynchronous provider outcome (webhook or status query).

        Only processing payouts move; completed and failed payouts ignore
        late or repeated callbacks. `payout_ref` (PAYOUT-<id>) is used when
        the provider reference is not stored yet.
        """
        payout = self._find_by_reference(reference) or self._find_by_reference(payout_ref)
        if payout is None:
            logger.warning(f"Provider update for unknown reference {reference}")
            return None

        if payout.status != PayoutStatus.PROCESSING.value:
            logger.info(f"Payout {payout.id} is {payout.status}, ignoring {outcome.value} update")
            return payout

        if outcome == TransferState.COMPLETED:
            updated = self.store.conditional_update(
                [payout.id], PayoutStatus.PROCESSING.value,
                {
                    "status": PayoutStatus.COMPLETED.value,
                    "transaction_reference": final_reference or payout.transaction_reference or reference,
                    "processed_at": datetime.utcnow(),
                },
            )
        elif outcome == TransferState.FAILED:
            updated = self.store.conditional_update(
                [payout.id], PayoutStatus.PROCESSING.value,
                {
                    "status": PayoutStatus.FAILED.value,
                    "transaction_reference": error_reference(detail or "Transfer failed"),
                },
            )
        else:
            return payout

        self.db.commit()
        if updated:
            logger.info(f"Payout {payout.id} -> {outcome.value} (provider update)")
        self.db.refresh(payout)
        if updated:
            notify_payout_outcome(self.notifier, payout, outcome.value)
        return payout

    def reconcile_processing(self, restaurant_id: Optional[int] = None) -> Dict:
        """
        Ask providers about payouts stuck in processing.

        Callback-only providers are skipped; transport errors are logged
        and the payout is left for the next run.
        """
        summary = {"checked": 0, "completed": 0, "failed": 0, "still_pending": 0, "skipped": 0, "errors": 0}
        payouts = self.store.list(
            restaurant_id=restaurant_id, status=PayoutStatus.PROCESSING.value, has_reference=True
        )

        for payout in payouts:
            reference = payout.transaction_reference
            if reference.startswith(ERROR_PREFIX):
                summary["skipped"] += 1
                continue

            provider = self._provider_for(payout)
            try:
                status = provider.query_status(reference)
            except NotImplementedError:
                summary["skipped"] += 1
                continue
            except TransferError as e:
                logger.error(f"Reconcile: status query for payout {payout.id} failed: {e.message}")
                summary["errors"] += 1
                continue

            summary["checked"] += 1
            if status.status == TransferState.PENDING:
                summary["still_pending"] += 1
                continue

            self.apply_provider_update(reference, status.status, status.detail)
            summary[status.status.value] += 1

        logger.info(f"Reconcile: {summary}")
        return summary

    # ============================================
    # Internals
    # ============================================

    def _provider_for(self, payout: Payout) -> TransferProvider:
        if payout.channel == PayoutChannel.MPESA.value:
            return self.mobile_provider
        return self.bank_provider

    def _find_by_reference(self, reference: str) -> Optional[Payout]:
        if not reference:
            return None
        payout = self.store.find_by_reference(reference)
        if payout is None:
            match = REFERENCE_PATTERN.match(reference)
            if match:
                payout = self.store.find(int(match.group(1)))
        return payout

    def _lost_claim(self, payout_id: int) -> PayoutResult:
        return PayoutResult(payout_id=payout_id, success=False, error="Payout is no longer pending")

    def _narration(self, payout: Payout) -> str:
        if payout.payout_type == PayoutType.GROUP.value:
            return f"{payout.group_name} tips {payout.payout_month}"
        return f"Tip payout {payout.payout_month}"

    def _prepare(self, payout: Payout) -> Tuple[Optional[TransferRequest], dict, Optional[str]]:
        """(request, claim patch, pre-flight error) for one pending payout."""
        base = {
            "reference": payout_reference(payout.id),
            "amount": payout.amount,
            "narration": self._narration(payout),
            "currency": self.settings.currency,
        }

        if payout.channel == PayoutChannel.MPESA.value:
            phone = payout.recipient_phone or (payout.waiter.phone_number if payout.waiter else None)
            if not phone:
                return None, {}, "No M-Pesa phone number for this payout"
            if not is_whole_shillings(payout.amount):
                return None, {}, f"M-Pesa payouts must be whole shillings (got {payout.amount})"
            return TransferRequest(phone_number=phone, **base), {"recipient_phone": phone}, None

        patch = {}
        if payout.recipient_account:
            account = parse_recipient_account(payout.recipient_account)
            if account is None:
                return None, {}, f"{INVALID_ACCOUNT}: account number and bank code are required"
        else:
            registered = get_bank_account(self.db, payout.restaurant_id, payout.group_name)
            if registered is None:
                return None, {}, f"No active bank account registered for group '{payout.group_name}'"
            account = BankAccountDetails(**registered.as_recipient())
            patch["recipient_account"] = json.dumps(registered.as_recipient())

        return TransferRequest(bank_account=account, **base), patch, None

    def _record(self, payout: Payout, result: TransferResult, results: Dict[int, PayoutResult]) -> None:
        if result.success and not result.pending:
            moved = self.store.conditional_update(
                [payout.id], PayoutStatus.PROCESSING.value,
                {
                    "status": PayoutStatus.COMPLETED.value,
                    "transaction_reference": result.provider_transaction_id,
                    "processed_at": datetime.utcnow(),
                },
            )
            status = PayoutStatus.COMPLETED.value
        elif result.success:
            moved = self.store.conditional_update(
                [payout.id], PayoutStatus.PROCESSING.value,
                {"transaction_reference": result.provider_transaction_id},
            )
            status = PayoutStatus.PROCESSING.value
        else:
            moved = self.store.conditional_update(
                [payout.id], PayoutStatus.PROCESSING.value,
                {
                    "status": PayoutStatus.FAILED.value,
                    "transaction_reference": error_reference(result.error or "Transfer failed"),
                },
            )
            status = PayoutStatus.FAILED.value
            logger.warning(f"Payout {payout.id} failed: {result.error}")
        self.db.commit()
        if moved and status != PayoutStatus.PROCESSING.value:
            notify_payout_outcome(self.notifier, payout, status)

        results[payout.id] = PayoutResult(
            payout_id=payout.id,
            success=result.success,
            status=status,
            transaction_id=result.provider_transaction_id,
            error=None if result.success else (result.error or "Transfer failed"),
        )

    def _send_mobile(self, payouts: List[Payout], requests_by_id: Dict[int, TransferRequest], results) -> None:
        if not payouts:
            return

        if isinstance(self.mobile_provider, BulkTransferProvider):
            batch = [requests_by_id[p.id] for p in payouts]
            by_reference = {r.reference: r for r in self.mobile_provider.initiate_bulk(batch)}
            for payout in payouts:
                result = by_reference.get(payout_reference(payout.id))
                if result is not None:
                    self._record(payout, result, results)
            return

        self._send_each(self.mobile_provider, payouts, requests_by_id, results, self.settings.mobile_money_delay_seconds)

    def _send_bank(self, payouts: List[Payout], requests_by_id: Dict[int, TransferRequest], results) -> None:
        self._send_each(self.bank_provider, payouts, requests_by_id, results, self.settings.bank_transfer_delay_seconds)

    def _send_each(self, provider, payouts, requests_by_id, results, delay: float) -> None:
        for index, payout in enumerate(payouts):
            if index and delay:
                self.sleep(delay)
            result = provider.initiate(requests_by_id[payout.id])
            self._record(payout, result, results)


def parse_recipient_account(raw) -> Optional[BankAccountDetails]:
    """Parse a stored recipient_account; None if unusable."""
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    account_number = str(data.get("account_number") or "").strip()
    bank_code = str(data.get("bank_code") or "").strip()
    if not account_number or not bank_code:
        return None

    return BankAccountDetails(
        account_number=account_number,
        account_name=str(data.get("account_name") or ""),
        bank_code=bank_code,
        bank_name=str(data.get("bank_name") or ""),
        branch_code=data.get("branch_code"),
    )
