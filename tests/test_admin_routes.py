"""
Tests for admin API routes.

Roles are enforced by the services, so these tests patch the services and
check the HTTP mapping.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from token_ledger.exceptions import (
    AuthenticationError,
    AuthorizationError,
    InvalidInputError,
    PackageNotFoundError,
    UserNotFoundError,
)
from token_ledger.models.api import AccountStatus, AIProvider, OperationType
from token_ledger.models.domain import (
    LedgerAudit,
    ModelUsageStats,
    OperationStats,
    PackageData,
    TokenStats,
)
from token_ledger.services.admin import AdminAccountRow
from token_ledger.services.system_settings import default_system_settings


def grant_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "user_id": str(uuid4()),
        "amount": 1000,
        "reason": "Support credit",
    }
    payload.update(overrides)
    return payload


def package_data(**overrides: object) -> PackageData:
    values: dict[str, object] = {
        "package_id": uuid4(),
        "package_name": "Starter",
        "token_amount": 150_000,
        "price_cents": 1_500,
        "stripe_price_id": "price_starter",
        "description": None,
        "is_popular": False,
        "sort_order": 1,
        "active": True,
    }
    values.update(overrides)
    return PackageData(**values)  # type: ignore[arg-type]


class TestTokenAdjustments:
    """Grant and deduct endpoints."""

    def test_grant(self, client: TestClient, mock_user: MagicMock) -> None:
        payload = grant_payload()
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.grant_tokens = AsyncMock(
                return_value=(1500, AccountStatus.ACTIVE)
            )

            response = client.post("/admin/tokens/grant", json=payload)

        assert response.status_code == 200
        assert response.json() == {
            "user_id": payload["user_id"],
            "new_balance": 1500,
            "status": "active",
        }
        args = mock_admin.return_value.grant_tokens.await_args.args
        assert args[0] == mock_user.id
        assert str(args[1]) == payload["user_id"]
        assert args[2:] == (1000, "Support credit")

    def test_deduct_can_suspend(self, client: TestClient) -> None:
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.deduct_tokens = AsyncMock(
                return_value=(-300, AccountStatus.SUSPENDED)
            )

            response = client.post("/admin/tokens/deduct", json=grant_payload(amount=800))

        assert response.status_code == 200
        assert response.json()["status"] == "suspended"

    @pytest.mark.parametrize(
        ("error", "expected_status"),
        [
            (AuthorizationError("superadmin"), 403),
            (AuthenticationError("Unknown caller"), 401),
            (UserNotFoundError(uuid4()), 404),
            (InvalidInputError("Grant amount must be positive"), 400),
        ],
    )
    def test_grant_errors(
        self, client: TestClient, error: Exception, expected_status: int
    ) -> None:
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.grant_tokens = AsyncMock(side_effect=error)

            response = client.post("/admin/tokens/grant", json=grant_payload())

        assert response.status_code == expected_status

    def test_forbidden_detail_names_role(self, client: TestClient) -> None:
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.grant_tokens = AsyncMock(
                side_effect=AuthorizationError("superadmin")
            )

            response = client.post("/admin/tokens/grant", json=grant_payload())

        assert response.json()["detail"] == "Requires superadmin"

    def test_reason_required(self, client: TestClient) -> None:
        response = client.post("/admin/tokens/grant", json=grant_payload(reason=""))
        assert response.status_code == 422

    def test_requires_authentication(self, anonymous_client: TestClient) -> None:
        response = anonymous_client.post("/admin/tokens/grant", json=grant_payload())
        assert response.status_code == 401


class TestAnalytics:
    """Stats, listings and audits."""

    def test_token_stats(self, client: TestClient) -> None:
        stats = TokenStats(
            total_accounts=2,
            active_accounts=1,
            suspended_accounts=1,
            total_balance=9800,
            average_balance=4900,
            lifetime_tokens_purchased=150_000,
            lifetime_tokens_used=6750,
            lifetime_actual_tokens_used=6000,
            revenue_cents=1500,
            profit_margin_percent=11.11,
        )
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.get_token_stats = AsyncMock(return_value=stats)

            response = client.get("/admin/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["total_accounts"] == 2
        assert data["revenue_cents"] == 1500
        assert data["profit_margin_percent"] == 11.11

    def test_stats_forbidden_for_plain_user(self, client: TestClient) -> None:
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.get_token_stats = AsyncMock(
                side_effect=AuthorizationError("admin")
            )

            response = client.get("/admin/stats")

        assert response.status_code == 403

    def test_model_and_operation_stats(self, client: TestClient) -> None:
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.get_model_usage_stats = AsyncMock(
                return_value=[
                    ModelUsageStats(
                        provider=AIProvider.GOOGLE,
                        model="imagen",
                        operation_count=1,
                        billable_tokens=4500,
                        actual_tokens=4500,
                    )
                ]
            )
            mock_admin.return_value.get_operation_stats = AsyncMock(
                return_value=[
                    OperationStats(
                        operation_type=OperationType.CHAT_RESPONSE,
                        operation_count=2,
                        success_count=1,
                        billable_tokens=2250,
                    )
                ]
            )

            models = client.get("/admin/stats/models")
            operations = client.get("/admin/stats/operations")

        assert models.status_code == 200
        assert models.json()[0]["provider"] == "google"
        assert operations.status_code == 200
        assert operations.json()[0]["success_count"] == 1

    def test_list_accounts_status_filter(self, client: TestClient, mock_user: MagicMock) -> None:
        row = AdminAccountRow(
            account_id=uuid4(),
            user_id=uuid4(),
            email="owner@example.com",
            balance=-200,
            status=AccountStatus.SUSPENDED,
            lifetime_tokens_purchased=0,
            lifetime_tokens_used=10200,
            created_at=datetime.now(UTC),
        )
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.list_accounts = AsyncMock(return_value=[row])

            response = client.get("/admin/accounts", params={"status": "suspended", "limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["accounts"][0]["email"] == "owner@example.com"
        mock_admin.return_value.list_accounts.assert_awaited_once_with(
            mock_user.id, limit=5, status=AccountStatus.SUSPENDED
        )

    def test_list_accounts_rejects_unknown_status(self, client: TestClient) -> None:
        response = client.get("/admin/accounts", params={"status": "frozen"})
        assert response.status_code == 422

    def test_audit(self, client: TestClient) -> None:
        user_id = uuid4()
        audit = LedgerAudit(
            user_id=user_id,
            balance=100,
            transaction_sum=90,
            transaction_count=3,
            first_broken_sequence=None,
        )
        with patch("token_ledger.api.admin_routes.AdminService") as mock_admin:
            mock_admin.return_value.audit_account = AsyncMock(return_value=audit)

            response = client.get(f"/admin/accounts/{user_id}/audit")

        assert response.status_code == 200
        data = response.json()
        assert data["consistent"] is False
        assert data["transaction_sum"] == 90


class TestPackageAdmin:
    """Catalog management."""

    def test_create_package(self, client: TestClient, mock_user: MagicMock) -> None:
        with patch("token_ledger.api.admin_routes.PricingService") as mock_pricing:
            mock_pricing.return_value.create_package = AsyncMock(return_value=package_data())

            response = client.post(
                "/admin/packages",
                json={
                    "package_name": "Starter",
                    "token_amount": 150_000,
                    "price_cents": 1_500,
                    "stripe_price_id": "price_starter",
                },
            )

        assert response.status_code == 201
        assert response.json()["package_name"] == "Starter"
        args = mock_pricing.return_value.create_package.await_args.args
        assert args[0] == mock_user.id
        assert args[1].token_amount == 150_000

    def test_create_package_validates_amount(self, client: TestClient) -> None:
        response = client.post(
            "/admin/packages",
            json={
                "package_name": "Empty",
                "token_amount": 0,
                "price_cents": 100,
                "stripe_price_id": "price_x",
            },
        )
        assert response.status_code == 422

    def test_update_package(self, client: TestClient) -> None:
        package_id = uuid4()
        with patch("token_ledger.api.admin_routes.PricingService") as mock_pricing:
            mock_pricing.return_value.update_package = AsyncMock(
                return_value=package_data(package_id=package_id, active=False)
            )

            response = client.patch(f"/admin/packages/{package_id}", json={"active": False})

        assert response.status_code == 200
        assert response.json()["active"] is False

    def test_update_unknown_package(self, client: TestClient) -> None:
        package_id = uuid4()
        with patch("token_ledger.api.admin_routes.PricingService") as mock_pricing:
            mock_pricing.return_value.update_package = AsyncMock(
                side_effect=PackageNotFoundError(package_id)
            )

            response = client.patch(f"/admin/packages/{package_id}", json={"active": False})

        assert response.status_code == 404

    def test_seed_packages(self, client: TestClient) -> None:
        with patch("token_ledger.api.admin_routes.PricingService") as mock_pricing:
            mock_pricing.return_value.seed_default_packages = AsyncMock(
                return_value=[package_data(), package_data(package_name="Pro", sort_order=2)]
            )

            response = client.post("/admin/packages/seed")

        assert response.status_code == 200
        assert [p["package_name"] for p in response.json()["packages"]] == ["Starter", "Pro"]


class TestSettingsAdmin:
    """System settings endpoints."""

    def test_get_settings_initializes_defaults(
        self, client: TestClient, mock_user: MagicMock
    ) -> None:
        with patch("token_ledger.api.admin_routes.SystemSettingsService") as mock_settings:
            mock_settings.return_value.initialize_defaults = AsyncMock(
                return_value=default_system_settings()
            )

            response = client.get("/admin/settings")

        assert response.status_code == 200
        data = response.json()
        assert data["default_token_multiplier"] == 1.5
        assert data["new_user_bonus_tokens"] == 10000
        assert data["critical_balance_threshold"] == 100
        mock_settings.return_value.initialize_defaults.assert_awaited_once_with(mock_user.id)

    def test_update_settings(self, client: TestClient) -> None:
        updated = default_system_settings()
        with patch("token_ledger.api.admin_routes.SystemSettingsService") as mock_settings:
            mock_settings.return_value.initialize_defaults = AsyncMock(return_value=updated)
            mock_settings.return_value.update_settings = AsyncMock(return_value=updated)

            response = client.put("/admin/settings", json={"new_user_bonus_tokens": 500})

        assert response.status_code == 200
        request = mock_settings.return_value.update_settings.await_args.args[1]
        assert request.new_user_bonus_tokens == 500
        assert request.default_token_multiplier is None

    def test_update_settings_forbidden(self, client: TestClient) -> None:
        with patch("token_ledger.api.admin_routes.SystemSettingsService") as mock_settings:
            mock_settings.return_value.initialize_defaults = AsyncMock(
                side_effect=AuthorizationError("superadmin")
            )

            response = client.put("/admin/settings", json={"low_balance_threshold": 10})

        assert response.status_code == 403

    def test_update_settings_rejects_negative(self, client: TestClient) -> None:
        response = client.put("/admin/settings", json={"low_balance_threshold": -1})
        assert response.status_code == 422
