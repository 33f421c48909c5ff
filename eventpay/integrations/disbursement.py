"""
Disbursement rails.

A rail moves a payout's money to the creator. Submissions are keyed by the
payout's disbursement reference so that re-submitting the same reference
never pays twice, and ``lookup`` lets a caller find out what happened to a
submission whose response was lost.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from eventpay.core.models import (
    CreatorPaymentProfile,
    DisbursementResult,
    Payout,
    PayoutMethod,
)


class DisbursementRail(ABC):
    """Transfers payouts through one provider."""

    name: str
    method: PayoutMethod

    @abstractmethod
    def destination(self, profile: CreatorPaymentProfile) -> Optional[str]:
        """The profile field this rail pays to, or None if the profile lacks it."""

    @abstractmethod
    async def submit(
        self, payout: Payout, profile: CreatorPaymentProfile, reference: str
    ) -> DisbursementResult:
        """
        Submit a transfer.

        Raises:
            GatewayError: On transient provider failure (outcome unknown)
            DisbursementError: If the provider definitively rejects the transfer
        """

    @abstractmethod
    async def lookup(self, payout: Payout, reference: str) -> DisbursementResult:
        """Report the state of a previous submission; NOT_FOUND if none reached the provider."""

    async def close(self) -> None:
        return None


class RailRouter:
    """Picks the rail for a creator's preferred payout method."""

    def __init__(self, rails: Iterable[DisbursementRail] = ()):
        self._by_method: Dict[PayoutMethod, DisbursementRail] = {}
        self._by_name: Dict[str, DisbursementRail] = {}
        for rail in rails:
            self._by_method[rail.method] = rail
            self._by_name[rail.name] = rail

    def for_profile(self, profile: CreatorPaymentProfile) -> Optional[DisbursementRail]:
        return self._by_method.get(profile.preferred_method)

    def by_name(self, name: str) -> Optional[DisbursementRail]:
        return self._by_name.get(name)

    async def close(self) -> None:
        for rail in self._by_name.values():
            await rail.close()
