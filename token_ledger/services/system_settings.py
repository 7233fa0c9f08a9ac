"""
System Settings Service - Global pricing and onboarding parameters.

Single-row table. Until an admin initializes it, readers see the
configured defaults.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.config import settings
from token_ledger.db.models import SystemSettings
from token_ledger.exceptions import ResourceNotFoundError
from token_ledger.models.api import UpdateSystemSettingsRequest, UserRole
from token_ledger.models.domain import SystemSettingsData
from token_ledger.observability.logging import get_logger
from token_ledger.services.identity import require_roles

logger = get_logger(__name__)

SETTINGS_ROW_ID = 1


def default_system_settings() -> SystemSettingsData:
    """Defaults used when no settings row exists."""
    return SystemSettingsData(
        default_token_multiplier=settings.default_token_multiplier,
        image_generation_cost_dalle3=6000,
        image_generation_cost_dalle2=3000,
        image_generation_cost_google=4500,
        tokens_per_usd=10000,
        min_purchase_amount_cents=500,
        new_user_bonus_tokens=settings.welcome_bonus_tokens,
        low_balance_threshold=settings.low_balance_threshold,
        critical_balance_threshold=settings.critical_balance_threshold,
        updated_at=None,
    )


class SystemSettingsService:
    """Reads and administers the system settings row."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_settings(self) -> SystemSettingsData:
        """Return stored settings, or defaults when none are stored."""
        row = await self.session.get(SystemSettings, SETTINGS_ROW_ID)
        if row is None:
            return default_system_settings()
        return self._to_domain(row)

    async def initialize_defaults(self, actor_id: UUID) -> SystemSettingsData:
        """Create the settings row from defaults. Idempotent."""
        await require_roles(self.session, actor_id, UserRole.ADMIN, UserRole.SUPERADMIN)

        row = await self.session.get(SystemSettings, SETTINGS_ROW_ID)
        if row is not None:
            return self._to_domain(row)

        defaults = default_system_settings()
        row = SystemSettings(
            id=SETTINGS_ROW_ID,
            default_token_multiplier=defaults.default_token_multiplier,
            image_generation_cost_dalle3=defaults.image_generation_cost_dalle3,
            image_generation_cost_dalle2=defaults.image_generation_cost_dalle2,
            image_generation_cost_google=defaults.image_generation_cost_google,
            tokens_per_usd=defaults.tokens_per_usd,
            min_purchase_amount_cents=defaults.min_purchase_amount_cents,
            new_user_bonus_tokens=defaults.new_user_bonus_tokens,
            low_balance_threshold=defaults.low_balance_threshold,
            critical_balance_threshold=defaults.critical_balance_threshold,
            updated_by=actor_id,
        )
        self.session.add(row)
        await self.session.commit()

        logger.info("system_settings_initialized", actor_id=str(actor_id))
        return self._to_domain(row)

    async def update_settings(
        self, actor_id: UUID, updates: UpdateSystemSettingsRequest
    ) -> SystemSettingsData:
        """
        Apply a partial update.

        Raises:
            AuthenticationError: Caller record not found
            AuthorizationError: Caller is not admin/superadmin
            ResourceNotFoundError: Settings were never initialized
        """
        await require_roles(self.session, actor_id, UserRole.ADMIN, UserRole.SUPERADMIN)

        row = await self.session.get(SystemSettings, SETTINGS_ROW_ID)
        if row is None:
            raise ResourceNotFoundError("System settings", str(SETTINGS_ROW_ID))

        changed = updates.model_dump(exclude_none=True)
        for field_name, value in changed.items():
            setattr(row, field_name, value)
        row.updated_by = actor_id
        await self.session.commit()

        logger.info(
            "system_settings_updated",
            actor_id=str(actor_id),
            fields=sorted(changed.keys()),
        )
        return self._to_domain(row)

    def _to_domain(self, row: SystemSettings) -> SystemSettingsData:
        return SystemSettingsData(
            default_token_multiplier=row.default_token_multiplier,
            image_generation_cost_dalle3=row.image_generation_cost_dalle3,
            image_generation_cost_dalle2=row.image_generation_cost_dalle2,
            image_generation_cost_google=row.image_generation_cost_google,
            tokens_per_usd=row.tokens_per_usd,
            min_purchase_amount_cents=row.min_purchase_amount_cents,
            new_user_bonus_tokens=row.new_user_bonus_tokens,
            low_balance_threshold=row.low_balance_threshold,
            critical_balance_threshold=row.critical_balance_threshold,
            updated_at=row.updated_at,
        )
