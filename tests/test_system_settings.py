"""
Tests for SystemSettingsService.
"""

from dataclasses import replace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.db.models import User
from token_ledger.exceptions import AuthorizationError, ResourceNotFoundError
from token_ledger.models.api import UpdateSystemSettingsRequest
from token_ledger.services.ledger import LedgerService
from token_ledger.services.system_settings import SystemSettingsService


class TestSystemSettings:
    """Defaults, initialization and updates."""

    async def test_defaults_before_initialization(self, db: AsyncSession) -> None:
        data = await SystemSettingsService(db).get_settings()

        assert data.new_user_bonus_tokens == 10000
        assert data.default_token_multiplier == 1.5
        assert data.updated_at is None

    async def test_initialize_is_idempotent(self, db: AsyncSession, admin_user: User) -> None:
        admin_user_id = admin_user.id
        service = SystemSettingsService(db)

        first = await service.initialize_defaults(admin_user_id)
        second = await service.initialize_defaults(admin_user_id)

        assert first.updated_at is not None
        assert second.updated_at is not None
        # SQLite hands back naive timestamps on re-read
        assert replace(second, updated_at=None) == replace(first, updated_at=None)

    async def test_update_before_initialization_fails(
        self, db: AsyncSession, admin_user: User
    ) -> None:
        admin_user_id = admin_user.id
        with pytest.raises(ResourceNotFoundError):
            await SystemSettingsService(db).update_settings(
                admin_user_id, UpdateSystemSettingsRequest(tokens_per_usd=5000)
            )

    async def test_partial_update(self, db: AsyncSession, admin_user: User) -> None:
        admin_user_id = admin_user.id
        service = SystemSettingsService(db)
        await service.initialize_defaults(admin_user_id)

        data = await service.update_settings(
            admin_user_id, UpdateSystemSettingsRequest(low_balance_threshold=2500)
        )

        assert data.low_balance_threshold == 2500
        assert data.critical_balance_threshold == 100

    async def test_plain_user_cannot_initialize(self, db: AsyncSession, user: User) -> None:
        user_id = user.id
        with pytest.raises(AuthorizationError):
            await SystemSettingsService(db).initialize_defaults(user_id)

    async def test_stored_bonus_applies_to_new_accounts(
        self, db: AsyncSession, ledger: LedgerService, admin_user: User, user: User
    ) -> None:
        admin_user_id = admin_user.id
        user_id = user.id
        service = SystemSettingsService(db)
        await service.initialize_defaults(admin_user_id)
        await service.update_settings(
            admin_user_id, UpdateSystemSettingsRequest(new_user_bonus_tokens=500)
        )

        account = await ledger.initialize_account(user_id, None)

        assert account.balance == 500
