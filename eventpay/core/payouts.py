"""
Payout processing.

Drives pending payouts through a disbursement rail:

    pending -> processing -> {completed, failed}
    failed -> processing (retry, same payout id, new attempt)

Every status change is a compare-and-set on (status, disbursement
reference), so two workers processing the same payout cannot both submit
it. A submission whose outcome is unknown leaves the payout ``processing``;
recovery asks the rail what happened to that reference before doing
anything else, and only a reference the provider never saw is re-driven.
"""
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

import structlog

from eventpay.core.errors import (
    DisbursementError,
    GatewayError,
    InvalidStateError,
    NoPaymentProfile,
    NotFoundError,
)
from eventpay.core.models import (
    CreatorPaymentProfile,
    DisbursementResult,
    DisbursementStatus,
    Payout,
    PayoutAttempt,
    PayoutStatus,
    utcnow,
)
from eventpay.core.outbox import PAYOUT_COMPLETED, PAYOUT_FAILED, NotificationSink
from eventpay.database.repository import SettlementRepository
from eventpay.integrations.disbursement import DisbursementRail, RailRouter
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NO_PAYMENT_PROFILE = "no_payment_profile"
PROFILE_UNVERIFIED = "payment_profile_unverified"
METHOD_UNSUPPORTED = "payout_method_unsupported"
MISSING_DESTINATION = "missing_destination"

# Failures that need the creator to act before a retry can succeed
NON_RETRYABLE_REASONS = frozenset({NO_PAYMENT_PROFILE})


class PayoutProcessor:
    """Disburses payouts and reconciles submissions with unknown outcome."""

    def __init__(
        self,
        repository: SettlementRepository,
        rails: RailRouter,
        notifications: Optional[NotificationSink] = None,
        processing_timeout_seconds: int = 900,
        auto_retry_max_attempts: int = 3,
    ):
        """
        Initialize payout processor.

        Args:
            repository: Settlement store
            rails: Disbursement rails by payout method
            notifications: Sink for payout result notifications
            processing_timeout_seconds: Age after which a processing payout is re-queried
            auto_retry_max_attempts: Attempts after which scheduled retries stop
        """
        self.repository = repository
        self.rails = rails
        self.notifications = notifications
        self.processing_timeout = timedelta(seconds=processing_timeout_seconds)
        self.auto_retry_max_attempts = auto_retry_max_attempts

    async def _get(self, payout_id: str) -> Payout:
        payout = await self.repository.get_payout(payout_id)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        return payout

    async def _preflight(
        self, payout: Payout
    ) -> Union[str, Tuple[CreatorPaymentProfile, DisbursementRail]]:
        """Profile and rail for a payout, or the reason it cannot be disbursed."""
        profile = await self.repository.get_profile(payout.creator_id)
        if profile is None:
            return NO_PAYMENT_PROFILE
        if not profile.is_verified:
            return PROFILE_UNVERIFIED
        rail = self.rails.for_profile(profile)
        if rail is None:
            return METHOD_UNSUPPORTED
        if not rail.destination(profile):
            return MISSING_DESTINATION
        return profile, rail

    async def process(self, payout_id: str) -> Payout:
        """
        Disburse a pending payout.

        Idempotent: a payout that is no longer pending is returned as is.

        Returns:
            Payout: The payout after this step
        """
        payout = await self._get(payout_id)
        if payout.status != PayoutStatus.PENDING:
            logger.info("payout_already_handled", payout_id=payout_id, status=payout.status.value)
            return payout

        checked = await self._preflight(payout)
        if isinstance(checked, str):
            return await self._finish(payout, PayoutStatus.FAILED, checked, expected=PayoutStatus.PENDING)
        profile, rail = checked

        started = await self._start_attempt(payout, rail, expected=PayoutStatus.PENDING)
        if started is None:
            return await self._get(payout_id)
        return await self._disburse(started, profile, rail)

    async def retry(self, payout_id: str) -> Payout:
        """
        Start a new disbursement attempt for a failed payout.

        Raises:
            InvalidStateError: If the payout is not failed or cannot be disbursed
            NoPaymentProfile: If the creator still has no payment profile
        """
        payout = await self._get(payout_id)
        if payout.status != PayoutStatus.FAILED:
            raise InvalidStateError(f"Cannot retry payout with status: {payout.status.value}")

        checked = await self._preflight(payout)
        if checked == NO_PAYMENT_PROFILE:
            raise NoPaymentProfile(f"Creator {payout.creator_id} has no payment profile")
        if isinstance(checked, str):
            raise InvalidStateError(f"Payout {payout_id} cannot be retried: {checked}")
        profile, rail = checked

        started = await self._start_attempt(payout, rail, expected=PayoutStatus.FAILED)
        if started is None:
            raise InvalidStateError(f"Payout {payout_id} changed while starting the retry")
        logger.info("payout_retry_started", payout_id=payout_id, attempt=len(started.attempts))
        return await self._disburse(started, profile, rail)

    async def stale_payouts(self, now: Optional[datetime] = None) -> List[Payout]:
        cutoff = (now or utcnow()) - self.processing_timeout
        return await self.repository.list_payouts(
            status=PayoutStatus.PROCESSING, processing_started_before=cutoff
        )

    async def recover(self, payout: Payout) -> Payout:
        """
        Resolve a processing payout by asking its rail about the current reference.

        A reference the provider never saw is re-submitted under the same
        reference; anything else is settled from the provider's answer.
        """
        attempt = payout.current_attempt
        rail = self.rails.by_name(attempt.rail) if attempt else None
        if rail is None or payout.disbursement_reference is None:
            return await self._finish(payout, PayoutStatus.FAILED, METHOD_UNSUPPORTED)

        result = await rail.lookup(payout, payout.disbursement_reference)
        if result.status != DisbursementStatus.NOT_FOUND:
            return await self._apply_result(payout, result)

        profile = await self.repository.get_profile(payout.creator_id)
        if profile is None:
            return await self._finish(payout, PayoutStatus.FAILED, NO_PAYMENT_PROFILE)
        logger.warning(
            "payout_resubmitted",
            payout_id=payout.id,
            reference=payout.disbursement_reference,
        )
        return await self._disburse(payout, profile, rail)

    async def recover_stale(self, now: Optional[datetime] = None) -> List[Payout]:
        """Recover every processing payout older than the timeout; returns those examined."""
        recovered = []
        for payout in await self.stale_payouts(now):
            try:
                recovered.append(await self.recover(payout))
            except GatewayError as e:
                logger.error("payout_recovery_failed", payout_id=payout.id, error=str(e))
        return recovered

    async def retry_candidates(self) -> List[Payout]:
        """Failed payouts eligible for a scheduled retry."""
        failed = await self.repository.list_payouts(status=PayoutStatus.FAILED)
        return [
            payout
            for payout in failed
            if payout.attempts
            and payout.failure_reason not in NON_RETRYABLE_REASONS
            and len(payout.attempts) < self.auto_retry_max_attempts
        ]

    async def _start_attempt(
        self, payout: Payout, rail: DisbursementRail, expected: PayoutStatus
    ) -> Optional[Payout]:
        now = utcnow()
        reference = str(uuid.uuid4())
        attempt = PayoutAttempt(
            number=len(payout.attempts) + 1,
            reference=reference,
            rail=rail.name,
            started_at=now,
        )
        updated = replace(
            payout,
            status=PayoutStatus.PROCESSING,
            disbursement_reference=reference,
            processing_started_at=now,
            updated_at=now,
            failure_reason=None,
            attempts=payout.attempts + (attempt,),
        )
        if not await self.repository.compare_and_set_payout(
            updated, expected, payout.disbursement_reference
        ):
            logger.info("payout_claimed_elsewhere", payout_id=payout.id)
            return None
        logger.info(
            "payout_processing",
            payout_id=payout.id,
            rail=rail.name,
            reference=reference,
            attempt=attempt.number,
        )
        return updated

    async def _disburse(
        self, payout: Payout, profile: CreatorPaymentProfile, rail: DisbursementRail
    ) -> Payout:
        try:
            result = await rail.submit(payout, profile, payout.disbursement_reference)
        except DisbursementError as e:
            return await self._finish(payout, PayoutStatus.FAILED, e.reason)
        except GatewayError as e:
            if e.is_transient:
                # Outcome unknown; recovery will ask the rail
                logger.warning(
                    "payout_disbursement_unresolved",
                    payout_id=payout.id,
                    reference=payout.disbursement_reference,
                    error=str(e),
                )
                return payout
            return await self._finish(payout, PayoutStatus.FAILED, f"{e.category.value}:{e.code}")
        return await self._apply_result(payout, result)

    async def _apply_result(self, payout: Payout, result: DisbursementResult) -> Payout:
        if result.status == DisbursementStatus.SUCCEEDED:
            return await self._finish(payout, PayoutStatus.COMPLETED)
        if result.status == DisbursementStatus.FAILED:
            return await self._finish(payout, PayoutStatus.FAILED, result.reason or "disbursement_failed")
        logger.info(
            "payout_disbursement_pending",
            payout_id=payout.id,
            reference=payout.disbursement_reference,
        )
        return payout

    async def _finish(
        self,
        payout: Payout,
        status: PayoutStatus,
        reason: Optional[str] = None,
        expected: PayoutStatus = PayoutStatus.PROCESSING,
    ) -> Payout:
        now = utcnow()
        attempts = payout.attempts
        if expected == PayoutStatus.PROCESSING and attempts:
            closed = replace(attempts[-1], outcome=status.value, reason=reason, finished_at=now)
            attempts = attempts[:-1] + (closed,)
        updated = replace(
            payout,
            status=status,
            updated_at=now,
            completed_at=now if status == PayoutStatus.COMPLETED else None,
            failure_reason=reason if status == PayoutStatus.FAILED else None,
            attempts=attempts,
        )
        if not await self.repository.compare_and_set_payout(
            updated, expected, payout.disbursement_reference
        ):
            logger.info("payout_finalized_elsewhere", payout_id=payout.id)
            return await self._get(payout.id)

        metrics.record_payout_finalized(status.value, reason or "")
        log = logger.bind(payout_id=payout.id, creator_id=payout.creator_id, amount=payout.amount)
        if status == PayoutStatus.COMPLETED:
            log.info("payout_completed", reference=payout.disbursement_reference)
        else:
            log.warning("payout_failed", reason=reason)
        await self._notify(updated)
        return updated

    async def _notify(self, payout: Payout) -> None:
        if self.notifications is None:
            return
        await self.notifications.notify(
            PAYOUT_COMPLETED if payout.status == PayoutStatus.COMPLETED else PAYOUT_FAILED,
            "payout",
            payout.id,
            {
                "payout_id": payout.id,
                "creator_id": payout.creator_id,
                "amount": payout.amount,
                "currency": payout.currency,
                "status": payout.status.value,
                "failure_reason": payout.failure_reason,
                "transaction_count": len(payout.included_transaction_ids),
                "attempts": len(payout.attempts),
            },
        )
