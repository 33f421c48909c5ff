"""
Fee calculation for ticket sales.

Splits a gross amount into processor fee, platform commission and creator net.
All arithmetic is Decimal with round-half-up to integer minor units, so a
split is reproducible from the inputs recorded on the transaction.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, FrozenSet, Mapping, Optional

from eventpay.config import Settings
from eventpay.core.errors import InvalidAmount, ValidationError
from eventpay.core.models import CreatorTier, GatewayId, PaymentSplit


@dataclass(frozen=True)
class GatewayFeeSchedule:
    """Processor pricing for one gateway."""

    percentage: Decimal
    fixed_fee: int
    minimum_amount: int
    currencies: FrozenSet[str]


DEFAULT_FEE_SCHEDULES: Dict[GatewayId, GatewayFeeSchedule] = {
    GatewayId.STRIPE: GatewayFeeSchedule(
        percentage=Decimal("0.029"),
        fixed_fee=30,
        minimum_amount=50,
        currencies=frozenset({"USD", "EUR", "GBP", "CAD", "GHS", "NGN", "KES", "ZAR"}),
    ),
    GatewayId.PAYPAL: GatewayFeeSchedule(
        percentage=Decimal("0.0349"),
        fixed_fee=49,
        minimum_amount=100,
        currencies=frozenset({"USD", "EUR", "GBP", "CAD", "AUD"}),
    ),
    GatewayId.MOBILE_MONEY: GatewayFeeSchedule(
        percentage=Decimal("0.018"),
        fixed_fee=0,
        minimum_amount=100,
        # MTN sandbox only accepts EUR
        currencies=frozenset({"GHS", "EUR"}),
    ),
}


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class FeeCalculator:
    """
    Pure, deterministic fee calculator.

    Example:
        >>> calc = FeeCalculator.from_settings(get_settings())
        >>> calc.split(5000, GatewayId.STRIPE, CreatorTier.FREE, False)
        PaymentSplit(gross_amount=5000, processor_fee=175, platform_commission=600, ...)
    """

    def __init__(
        self,
        commission_rates: Mapping[CreatorTier, Decimal],
        platform_fee_rate: Decimal,
        fee_schedules: Optional[Mapping[GatewayId, GatewayFeeSchedule]] = None,
    ):
        """
        Initialize fee calculator.

        Args:
            commission_rates: Commission rate per creator tier
            platform_fee_rate: Flat platform fee rate applied on top of commission
            fee_schedules: Processor pricing per gateway
        """
        missing = set(CreatorTier) - set(commission_rates)
        if missing:
            raise ValueError(f"Missing commission rates for tiers: {sorted(t.value for t in missing)}")
        self.commission_rates = dict(commission_rates)
        self.platform_fee_rate = platform_fee_rate
        self.fee_schedules = dict(fee_schedules or DEFAULT_FEE_SCHEDULES)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeeCalculator":
        return cls(
            commission_rates={
                CreatorTier.FREE: settings.commission_rate_free,
                CreatorTier.STARTER: settings.commission_rate_starter,
                CreatorTier.PRO: settings.commission_rate_pro,
                CreatorTier.CUSTOM: settings.commission_rate_custom,
            },
            platform_fee_rate=settings.platform_fee_rate,
        )

    def schedule_for(self, gateway: GatewayId) -> GatewayFeeSchedule:
        try:
            return self.fee_schedules[GatewayId(gateway)]
        except (KeyError, ValueError):
            raise ValidationError(f"Unsupported gateway: {gateway}")

    def validate_currency(self, gateway: GatewayId, currency: str) -> str:
        """
        Normalize and validate a currency code for a gateway.

        Returns:
            str: Upper-cased ISO 4217 code

        Raises:
            ValidationError: If the code is malformed or not offered by the gateway
        """
        code = (currency or "").strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValidationError(f"Invalid currency code: {currency!r}")
        if code not in self.schedule_for(gateway).currencies:
            raise ValidationError(f"Currency {code} is not supported by gateway {GatewayId(gateway).value}")
        return code

    def processor_fee(self, gross_amount: int, gateway: GatewayId) -> int:
        schedule = self.schedule_for(gateway)
        return _round_half_up(Decimal(gross_amount) * schedule.percentage + schedule.fixed_fee)

    def platform_commission(self, gross_amount: int, creator_tier: CreatorTier) -> int:
        rate = self.commission_rates[CreatorTier(creator_tier)]
        gross = Decimal(gross_amount)
        return _round_half_up(gross * rate + gross * self.platform_fee_rate)

    def split(
        self,
        gross_amount: int,
        gateway: GatewayId,
        creator_tier: CreatorTier,
        pass_fee_to_customer: bool,
    ) -> PaymentSplit:
        """
        Compute the payment split for a sale.

        When the processor fee is passed to the customer it is added on top of
        the gross amount; otherwise it is deducted from the creator's share.

        Args:
            gross_amount: Ticket price in minor units
            gateway: Gateway processing the charge
            creator_tier: Creator's subscription tier
            pass_fee_to_customer: Whether the customer pays the processor fee

        Returns:
            PaymentSplit: The computed split

        Raises:
            InvalidAmount: If the amount is below the gateway minimum or the
                creator's share would be negative
        """
        if isinstance(gross_amount, bool) or not isinstance(gross_amount, int):
            raise InvalidAmount(f"Amount must be an integer in minor units, got {gross_amount!r}")

        schedule = self.schedule_for(gateway)
        if gross_amount < schedule.minimum_amount:
            raise InvalidAmount(
                f"Amount {gross_amount} is below the {GatewayId(gateway).value} minimum "
                f"of {schedule.minimum_amount}"
            )

        processor_fee = self.processor_fee(gross_amount, gateway)
        platform_commission = self.platform_commission(gross_amount, creator_tier)

        if pass_fee_to_customer:
            customer_total = gross_amount + processor_fee
            creator_net = gross_amount - platform_commission
        else:
            customer_total = gross_amount
            creator_net = gross_amount - platform_commission - processor_fee

        if creator_net < 0:
            raise InvalidAmount(
                f"Amount {gross_amount} does not cover fees of {processor_fee + platform_commission}"
            )

        return PaymentSplit(
            gross_amount=gross_amount,
            processor_fee=processor_fee,
            platform_commission=platform_commission,
            creator_net=creator_net,
            customer_total=customer_total,
        )
