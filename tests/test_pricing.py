"""
Tests for pricing calculators and the package catalog.
"""

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.db.models import TokenPackage, User
from token_ledger.exceptions import AuthorizationError, InvalidInputError, PackageNotFoundError
from token_ledger.models.api import ChargeType, CreatePackageRequest, UpdatePackageRequest
from token_ledger.services.pricing import (
    DEFAULT_IMAGE_COST,
    DEFAULT_PACKAGES,
    PricingService,
    calculate_image_billable_tokens,
    calculate_llm_billable_tokens,
)


class TestLlmCalculator:
    """Multiplier pricing for text operations."""

    def test_default_markup(self) -> None:
        cost = calculate_llm_billable_tokens(1000, 500)

        assert cost.billable_tokens == 2250
        assert cost.charge_type == ChargeType.MULTIPLIER
        assert cost.multiplier == 1.5
        assert cost.actual_tokens == 1500

    def test_rounds_up(self) -> None:
        assert calculate_llm_billable_tokens(1, 0).billable_tokens == 2

    def test_custom_multiplier(self) -> None:
        assert calculate_llm_billable_tokens(100, 100, multiplier=2.0).billable_tokens == 400

    def test_negative_counts_rejected(self) -> None:
        with pytest.raises(InvalidInputError):
            calculate_llm_billable_tokens(-1, 10)


class TestImageCalculator:
    """Fixed pricing for images."""

    def test_known_model_and_size(self) -> None:
        cost = calculate_image_billable_tokens("dall-e-3", "1792x1024")

        assert cost.billable_tokens == 8000
        assert cost.charge_type == ChargeType.FIXED
        assert cost.fixed_cost == 8000
        assert cost.actual_tokens == 8000

    def test_multiple_images(self) -> None:
        assert calculate_image_billable_tokens("dall-e-2", "512x512", count=3).billable_tokens == 6000

    @pytest.mark.parametrize("model, size", [("dall-e-2", "256x256"), ("google", "640x480")])
    def test_unknown_size_uses_default(self, model: str, size: str) -> None:
        cost = calculate_image_billable_tokens(model, size)
        assert cost.billable_tokens == DEFAULT_IMAGE_COST
        assert cost.fixed_cost == DEFAULT_IMAGE_COST

    def test_unknown_model_uses_default(self) -> None:
        cost = calculate_image_billable_tokens("mystery-model", "1024x1024")
        assert cost.billable_tokens == DEFAULT_IMAGE_COST

    def test_negative_count_rejected(self) -> None:
        with pytest.raises(InvalidInputError):
            calculate_image_billable_tokens("dall-e-3", "1024x1024", count=-1)


class TestPackageCatalog:
    """Catalog reads and admin maintenance."""

    async def test_seed_is_idempotent(self, db: AsyncSession, admin_user: User) -> None:
        service = PricingService(db)

        first = await service.seed_default_packages(admin_user.id)
        second = await service.seed_default_packages(admin_user.id)

        assert [package.package_name for package in first] == [
            default.package_name for default in DEFAULT_PACKAGES
        ]
        assert len(second) == len(DEFAULT_PACKAGES)

    async def test_seed_requires_admin(self, db: AsyncSession, user: User) -> None:
        with pytest.raises(AuthorizationError):
            await PricingService(db).seed_default_packages(user.id)

    async def test_list_orders_and_hides_inactive(self, db: AsyncSession) -> None:
        db.add_all(
            [
                TokenPackage(
                    package_name="Big",
                    token_amount=1000,
                    price_cents=900,
                    stripe_price_id="price_big",
                    sort_order=2,
                ),
                TokenPackage(
                    package_name="Small",
                    token_amount=100,
                    price_cents=100,
                    stripe_price_id="price_small",
                    sort_order=1,
                ),
                TokenPackage(
                    package_name="Retired",
                    token_amount=500,
                    price_cents=400,
                    stripe_price_id="price_old",
                    sort_order=0,
                    active=False,
                ),
            ]
        )
        await db.commit()

        packages = await PricingService(db).list_active_packages()

        assert [package.package_name for package in packages] == ["Small", "Big"]

    async def test_create_update_and_deactivate(self, db: AsyncSession, admin_user: User) -> None:
        service = PricingService(db)
        created = await service.create_package(
            admin_user.id,
            CreatePackageRequest(
                package_name="Team",
                token_amount=300_000,
                price_cents=2_800,
                stripe_price_id="price_team",
            ),
        )

        updated = await service.update_package(
            admin_user.id, created.package_id, UpdatePackageRequest(price_cents=2_500)
        )
        assert updated.price_cents == 2_500
        assert updated.package_name == "Team"

        await service.update_package(
            admin_user.id, created.package_id, UpdatePackageRequest(active=False)
        )
        with pytest.raises(PackageNotFoundError):
            await service.get_package(created.package_id)
        inactive = await service.get_package(created.package_id, active_only=False)
        assert inactive.active is False

    async def test_update_unknown_package(self, db: AsyncSession, admin_user: User) -> None:
        with pytest.raises(PackageNotFoundError):
            await PricingService(db).update_package(
                admin_user.id, uuid4(), UpdatePackageRequest(price_cents=100)
            )

    async def test_find_by_token_amount_is_exact(self, db: AsyncSession, admin_user: User) -> None:
        service = PricingService(db)
        await service.seed_default_packages(admin_user.id)

        match = await service.find_by_token_amount(750_000)
        assert match is not None
        assert match.package_name == "Pro"
        assert await service.find_by_token_amount(750_001) is None
