"""
Tests for PricingService.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.exceptions import PricingNotConfiguredError
from fulfillment.models.api import ServiceCategory
from fulfillment.services.pricing import DEFAULT_PRICES, PricingService


class TestGetPrice:
    """Tests for price resolution order."""

    async def test_falls_back_to_default(self, session: AsyncSession):
        price = await PricingService(session).get_price("bvn_retrieval")
        assert price.price_minor == DEFAULT_PRICES["bvn_retrieval"].price_minor
        assert price.is_active

    async def test_configured_row_wins(self, session: AsyncSession):
        pricing = PricingService(session)
        await pricing.set_pricing("bvn_retrieval", 25_000, "BVN Lookup")

        price = await pricing.get_price("bvn_retrieval")

        assert price.price_minor == 25_000
        assert price.display_name == "BVN Lookup"

    async def test_inactive_row_is_ignored(self, session: AsyncSession):
        pricing = PricingService(session)
        await pricing.set_pricing("waec_pin", 1, is_active=False)

        price = await pricing.get_price("waec_pin")
        assert price.price_minor == 450_000

    async def test_category_row_used_when_code_unpriced(self, session: AsyncSession):
        pricing = PricingService(session)
        await pricing.set_pricing("cac", 300_000)

        price = await pricing.get_price("cac_business_name", ServiceCategory.CAC)
        assert price.price_minor == 300_000

    async def test_unknown_code_raises(self, session: AsyncSession):
        with pytest.raises(PricingNotConfiguredError) as exc_info:
            await PricingService(session).get_price("mystery_service")
        assert exc_info.value.service_code == "mystery_service"

    async def test_airtime_to_cash_is_free(self, session: AsyncSession):
        price = await PricingService(session).get_price("airtime_to_cash")
        assert price.price_minor == 0


class TestSetPricing:
    """Tests for upserts."""

    async def test_update_keeps_display_name(self, session: AsyncSession):
        pricing = PricingService(session)
        await pricing.set_pricing("nin_validation", 100_000, "NIN Check")
        updated = await pricing.set_pricing("nin_validation", 120_000)

        assert updated.price_minor == 120_000
        assert updated.display_name == "NIN Check"

    async def test_negative_price_rejected(self, session: AsyncSession):
        with pytest.raises(ValueError):
            await PricingService(session).set_pricing("bvn_retrieval", -1)

    async def test_list_merges_configured_over_defaults(self, session: AsyncSession):
        pricing = PricingService(session)
        await pricing.set_pricing("neco_pin", 130_000)
        await pricing.set_pricing("custom_service", 5_000, "Custom")

        prices = {p.service_code: p for p in await pricing.list_pricing()}

        assert prices["neco_pin"].price_minor == 130_000
        assert prices["custom_service"].price_minor == 5_000
        assert prices["waec_pin"].price_minor == 450_000
        assert set(DEFAULT_PRICES) <= set(prices)
        codes = list(prices)
        assert codes == sorted(codes)
