"""
Pricing Service - Token package catalog and billable-token calculators.

NO DICTIONARIES - Catalog rows are returned as PackageData.
"""

import math
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.db.models import TokenPackage
from token_ledger.exceptions import InvalidInputError, PackageNotFoundError
from token_ledger.models.api import ChargeType, CreatePackageRequest, UpdatePackageRequest, UserRole
from token_ledger.models.domain import CostDescriptor, PackageData
from token_ledger.observability.logging import get_logger
from token_ledger.services.identity import require_roles

logger = get_logger(__name__)

DEFAULT_TOKEN_MULTIPLIER = 1.5

# Fixed image costs in tokens, by model then size
IMAGE_COSTS: dict[str, dict[str, int]] = {
    "dall-e-3": {"1024x1024": 6000, "1024x1792": 8000, "1792x1024": 8000},
    "dall-e-2": {"512x512": 2000, "1024x1024": 3000},
    "google": {"1024x1024": 4500},
}
DEFAULT_IMAGE_COST = 6000


def calculate_llm_billable_tokens(
    input_tokens: int, output_tokens: int, multiplier: float = DEFAULT_TOKEN_MULTIPLIER
) -> CostDescriptor:
    """Billable = ceil((input + output) * multiplier)."""
    if input_tokens < 0 or output_tokens < 0:
        raise InvalidInputError("token counts cannot be negative")
    actual = input_tokens + output_tokens
    return CostDescriptor(
        billable_tokens=math.ceil(actual * multiplier),
        charge_type=ChargeType.MULTIPLIER,
        multiplier=multiplier,
    )


def calculate_image_billable_tokens(model: str, size: str, count: int = 1) -> CostDescriptor:
    """
    Fixed per-image cost.

    Any model and size pair missing from IMAGE_COSTS costs DEFAULT_IMAGE_COST.
    """
    if count < 0:
        raise InvalidInputError(f"count cannot be negative, got {count}")
    fixed_cost = IMAGE_COSTS.get(model, {}).get(size, DEFAULT_IMAGE_COST)
    return CostDescriptor(
        billable_tokens=fixed_cost * count,
        charge_type=ChargeType.FIXED,
        fixed_cost=fixed_cost,
    )


@dataclass(frozen=True)
class DefaultPackage:
    package_name: str
    token_amount: int
    price_cents: int
    description: str
    is_popular: bool
    sort_order: int


DEFAULT_PACKAGES = (
    DefaultPackage("Starter", 150_000, 1_500, "Perfect for trying out the platform", False, 1),
    DefaultPackage("Pro", 750_000, 6_500, "Best value for growing businesses", True, 2),
    DefaultPackage("Business", 2_250_000, 17_500, "For teams and scaling operations", False, 3),
    DefaultPackage(
        "Enterprise", 7_500_000, 50_000, "Maximum capacity for large organizations", False, 4
    ),
)


class PricingService:
    """Read-mostly catalog of purchasable token packages."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active_packages(self) -> list[PackageData]:
        """Active packages in display order."""
        stmt = (
            select(TokenPackage)
            .where(TokenPackage.active.is_(True))
            .order_by(TokenPackage.sort_order.asc(), TokenPackage.token_amount.asc())
        )
        result = await self.session.execute(stmt)
        return [self._to_domain(package) for package in result.scalars().all()]

    async def get_package(self, package_id: UUID, active_only: bool = True) -> PackageData:
        """
        Get package by id.

        Raises:
            PackageNotFoundError: Unknown id, or inactive when active_only
        """
        package = await self.session.get(TokenPackage, package_id)
        if package is None or (active_only and not package.active):
            raise PackageNotFoundError(package_id)
        return self._to_domain(package)

    async def find_by_token_amount(self, token_amount: int) -> PackageData | None:
        """Active package whose token amount matches exactly, if any."""
        stmt = (
            select(TokenPackage)
            .where(TokenPackage.active.is_(True), TokenPackage.token_amount == token_amount)
            .order_by(TokenPackage.sort_order.asc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        package = result.scalar_one_or_none()
        return self._to_domain(package) if package else None

    async def create_package(self, actor_id: UUID, request: CreatePackageRequest) -> PackageData:
        """
        Add a catalog package.

        Raises:
            AuthenticationError: Caller record not found
            AuthorizationError: Caller is not admin/superadmin
        """
        await require_roles(self.session, actor_id, UserRole.ADMIN, UserRole.SUPERADMIN)

        package = TokenPackage(**request.model_dump())
        self.session.add(package)
        await self.session.commit()

        logger.info(
            "token_package_created",
            actor_id=str(actor_id),
            package_id=str(package.id),
            package_name=package.package_name,
            token_amount=package.token_amount,
        )
        return self._to_domain(package)

    async def update_package(
        self, actor_id: UUID, package_id: UUID, request: UpdatePackageRequest
    ) -> PackageData:
        """
        Partially update a catalog package (including deactivation).

        Raises:
            AuthenticationError: Caller record not found
            AuthorizationError: Caller is not admin/superadmin
            PackageNotFoundError: Unknown id
        """
        await require_roles(self.session, actor_id, UserRole.ADMIN, UserRole.SUPERADMIN)

        package = await self.session.get(TokenPackage, package_id)
        if package is None:
            raise PackageNotFoundError(package_id)

        changed = request.model_dump(exclude_none=True)
        for field_name, value in changed.items():
            setattr(package, field_name, value)
        await self.session.commit()

        logger.info(
            "token_package_updated",
            actor_id=str(actor_id),
            package_id=str(package_id),
            fields=sorted(changed.keys()),
        )
        return self._to_domain(package)

    async def seed_default_packages(self, actor_id: UUID) -> list[PackageData]:
        """
        Insert the default catalog if no packages exist. Idempotent.

        Price references are placeholders until real provider prices are set.
        """
        await require_roles(self.session, actor_id, UserRole.ADMIN, UserRole.SUPERADMIN)

        result = await self.session.execute(select(TokenPackage.id).limit(1))
        if result.scalar_one_or_none() is not None:
            logger.info("token_packages_seed_skipped", actor_id=str(actor_id))
            return await self.list_active_packages()

        for default in DEFAULT_PACKAGES:
            self.session.add(
                TokenPackage(
                    package_name=default.package_name,
                    token_amount=default.token_amount,
                    price_cents=default.price_cents,
                    stripe_price_id=f"stripe_price_placeholder_{default.package_name.lower()}",
                    description=default.description,
                    is_popular=default.is_popular,
                    sort_order=default.sort_order,
                    active=True,
                )
            )
        await self.session.commit()

        logger.info("token_packages_seeded", actor_id=str(actor_id), count=len(DEFAULT_PACKAGES))
        return await self.list_active_packages()

    def _to_domain(self, package: TokenPackage) -> PackageData:
        return PackageData(
            package_id=package.id,
            package_name=package.package_name,
            token_amount=package.token_amount,
            price_cents=package.price_cents,
            stripe_price_id=package.stripe_price_id,
            description=package.description,
            is_popular=package.is_popular,
            sort_order=package.sort_order,
            active=package.active,
        )
