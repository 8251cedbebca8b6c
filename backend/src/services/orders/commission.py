"""Commission split computed when an order completes.

The platform share is rounded to cents and the driver receives the exact
remainder, so ``driver_payout + platform_commission == price`` holds with no
rounding drift. The rate passed in must be the one in effect at completion;
it is rounded to two places, the precision it is snapshotted with, before
the split is derived from it.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import get_settings
from src.core.logging import get_logger
from src.database.models.platform_setting import COMMISSION_RATE_KEY, PlatformSetting

logger = get_logger(__name__)

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class CommissionSplit:
    """Platform/driver split of an order price."""

    price: Decimal
    commission_rate: Decimal
    platform_commission: Decimal
    driver_payout: Decimal


def round2(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _to_decimal(value: Number, name: str) -> Decimal:
    if isinstance(value, float):
        # str() keeps the shortest repr so 19.99 stays 19.99
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"{name} must be finite")
    return result


def compute_split(price: Number, commission_rate: Number) -> CommissionSplit:
    """
    Derive platform commission and driver payout.

    Args:
        price: Order price
        commission_rate: Platform commission as a percentage (20 means 20%)

    Returns:
        CommissionSplit with both shares rounded to cents

    Raises:
        ValueError: If price is negative or the rate is outside 0..100
    """
    price_dec = round2(_to_decimal(price, "price"))
    rate_dec = round2(_to_decimal(commission_rate, "commission_rate"))

    if price_dec < 0:
        raise ValueError("price must not be negative")
    if rate_dec < 0 or rate_dec > HUNDRED:
        raise ValueError("commission_rate must be between 0 and 100")

    platform_commission = round2(price_dec * rate_dec / HUNDRED)
    driver_payout = price_dec - platform_commission

    return CommissionSplit(
        price=price_dec,
        commission_rate=rate_dec,
        platform_commission=platform_commission,
        driver_payout=driver_payout,
    )


class CommissionRateProvider(Protocol):
    """Source of the commission rate in effect right now."""

    async def get_current_rate(self) -> Decimal:
        ...


class StaticCommissionRateProvider:
    """Fixed rate, defaulting to ``Settings.default_commission_rate``."""

    def __init__(self, rate: Number | None = None):
        if rate is None:
            rate = get_settings().default_commission_rate
        self.rate = _to_decimal(rate, "commission_rate")

    async def get_current_rate(self) -> Decimal:
        return self.rate


class DatabaseCommissionRateProvider:
    """
    Rate maintained from the admin back office in ``platform_settings``.

    Falls back to the configured default when no override is stored.
    """

    def __init__(self, session: AsyncSession, default_rate: Number | None = None):
        self.session = session
        self.default_rate = _to_decimal(
            default_rate
            if default_rate is not None
            else get_settings().default_commission_rate,
            "commission_rate",
        )

    async def _get_setting(self) -> PlatformSetting | None:
        result = await self.session.execute(
            select(PlatformSetting)
            .where(PlatformSetting.key == COMMISSION_RATE_KEY)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_current_rate(self) -> Decimal:
        setting = await self._get_setting()
        if setting is None:
            return self.default_rate

        try:
            return _to_decimal(setting.value, "commission_rate")
        except ValueError:
            logger.error(
                "Stored commission rate is not a number, using default",
                stored_value=setting.value,
                default_rate=str(self.default_rate),
            )
            return self.default_rate

    async def set_rate(self, rate: Number) -> Decimal:
        """
        Store a new commission rate. Orders already completed keep the rate
        snapshotted on them.

        Raises:
            ValueError: If the rate is outside 0..100
        """
        rate_dec = round2(_to_decimal(rate, "commission_rate"))
        if rate_dec < 0 or rate_dec > HUNDRED:
            raise ValueError("commission_rate must be between 0 and 100")

        setting = await self._get_setting()
        if setting is None:
            self.session.add(PlatformSetting(key=COMMISSION_RATE_KEY, value=str(rate_dec)))
        else:
            setting.value = str(rate_dec)
        await self.session.flush()

        logger.info("Commission rate updated", commission_rate=str(rate_dec))
        return rate_dec
