"""
Pricing Service - Resolves the fee charged for a service code.

Lookup order: active row for the service code, active row for the category,
then the built-in default table.
"""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fulfillment.db.models import ServicePricing
from fulfillment.exceptions import PricingNotConfiguredError, WriteVerificationError
from fulfillment.models.api import ServiceCategory
from fulfillment.models.domain import PriceData

logger = get_logger(__name__)


@dataclass(frozen=True)
class DefaultPrice:
    """Built-in price used until an operator configures one."""

    price_minor: int  # kobo
    display_name: str


DEFAULT_PRICES: dict[str, DefaultPrice] = {
    # Identity
    "nin_validation": DefaultPrice(100_000, "NIN Validation"),
    "ipe_clearance": DefaultPrice(100_000, "IPE Clearance"),
    "nin_personalization": DefaultPrice(100_000, "NIN Personalization"),
    # BVN
    "bvn_retrieval": DefaultPrice(10_000, "BVN Retrieval"),
    "bvn_digital_card": DefaultPrice(50_000, "BVN Digital Card"),
    "bvn_modification": DefaultPrice(100_000, "BVN Modification"),
    # Education result checks
    "jamb_result": DefaultPrice(100_000, "JAMB Score Lookup"),
    "waec_result": DefaultPrice(100_000, "WAEC Result Lookup"),
    "neco_result": DefaultPrice(100_000, "NECO Result Lookup"),
    "nabteb_result": DefaultPrice(100_000, "NABTEB Result Lookup"),
    "nbais_result": DefaultPrice(100_000, "NBAIS Result Lookup"),
    # CAC
    "cac_business_name": DefaultPrice(200_000, "CAC Business Name Registration"),
    "cac_limited_company": DefaultPrice(500_000, "CAC Limited Company Registration"),
    "cac_incorporated_trustees": DefaultPrice(500_000, "CAC Incorporated Trustees"),
    # Airtime to cash is settled from the airtime itself
    "airtime_to_cash": DefaultPrice(0, "Airtime to Cash"),
    # Scratch-card PINs
    "waec_pin": DefaultPrice(450_000, "WAEC Scratch Card"),
    "neco_pin": DefaultPrice(120_000, "NECO Scratch Card"),
    "nabteb_pin": DefaultPrice(120_000, "NABTEB Scratch Card"),
    "nbais_pin": DefaultPrice(100_000, "NBAIS Scratch Card"),
}


class PricingService:
    """Service for configured and default prices."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def get_price(
        self, service_code: str, category: ServiceCategory | None = None
    ) -> PriceData:
        """
        Resolve the active price for a service.

        Raises:
            PricingNotConfiguredError: no row and no built-in default
        """
        row = await self._find_active(service_code)
        if row is None and category is not None:
            row = await self._find_active(category.value)
        if row is not None:
            return self._pricing_to_domain(row)

        default = DEFAULT_PRICES.get(service_code)
        if default is None:
            logger.warning("pricing_not_configured", service_code=service_code)
            raise PricingNotConfiguredError(service_code)

        return PriceData(
            service_code=service_code,
            price_minor=default.price_minor,
            display_name=default.display_name,
            is_active=True,
        )

    async def set_pricing(
        self,
        service_code: str,
        price_minor: int,
        display_name: str | None = None,
        is_active: bool = True,
    ) -> PriceData:
        """Create or replace the price for a service code. Commits."""
        if price_minor < 0:
            raise ValueError(f"Price cannot be negative: {price_minor}")

        result = await self.session.execute(
            select(ServicePricing).where(ServicePricing.service_code == service_code)
        )
        row = result.scalar_one_or_none()

        if row is None:
            row = ServicePricing(
                service_code=service_code,
                price_minor=price_minor,
                display_name=display_name,
                is_active=is_active,
            )
            self.session.add(row)
        else:
            row.price_minor = price_minor
            row.display_name = display_name if display_name is not None else row.display_name
            row.is_active = is_active

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise WriteVerificationError(f"Pricing for {service_code} changed concurrently: {e}")

        await self.session.commit()
        logger.info(
            "pricing_updated",
            service_code=service_code,
            price_minor=price_minor,
            is_active=is_active,
        )
        return self._pricing_to_domain(row)

    async def list_pricing(self) -> list[PriceData]:
        """Configured prices merged over the built-in defaults."""
        result = await self.session.execute(
            select(ServicePricing).order_by(ServicePricing.service_code)
        )
        configured = {row.service_code: self._pricing_to_domain(row) for row in result.scalars()}
        for code, default in DEFAULT_PRICES.items():
            configured.setdefault(
                code,
                PriceData(
                    service_code=code,
                    price_minor=default.price_minor,
                    display_name=default.display_name,
                    is_active=True,
                ),
            )
        return sorted(configured.values(), key=lambda p: p.service_code)

    async def _find_active(self, service_code: str) -> ServicePricing | None:
        stmt = select(ServicePricing).where(
            ServicePricing.service_code == service_code,
            ServicePricing.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _pricing_to_domain(self, row: ServicePricing) -> PriceData:
        return PriceData(
            service_code=row.service_code,
            price_minor=row.price_minor,
            display_name=row.display_name,
            is_active=row.is_active,
        )
