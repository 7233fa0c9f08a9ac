"""
Tests for billing API routes.

Services are patched at the route module; the database session is mocked.
"""

from collections.abc import Iterator
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tests.conftest import create_account_data
from token_ledger.api.dependencies import (
    get_identity_service,
    get_optional_payment_provider,
    get_payment_provider,
    get_webhook_provider,
)
from token_ledger.exceptions import (
    AccountNotFoundError,
    AuthorizationError,
    InvariantViolationError,
    PackageNotFoundError,
    PaymentProviderError,
    WebhookVerificationError,
)
from token_ledger.models.api import (
    AccountStatus,
    AIProvider,
    ChargeType,
    OperationType,
    TransactionType,
)
from token_ledger.models.domain import (
    BalanceCheck,
    PackageData,
    TransactionData,
    UsageData,
    UsageReceipt,
)
from token_ledger.services.payment_gateway import WebhookResult
from token_ledger.services.payment_provider import CheckoutSession


@pytest.fixture
def provider_overrides(app: FastAPI) -> Iterator[MagicMock]:
    """Replace every payment provider dependency with one mock."""
    provider = MagicMock()
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_webhook_provider] = lambda: provider
    app.dependency_overrides[get_optional_payment_provider] = lambda: None
    yield provider


def usage_payload(user_id: str, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "secret": "test-billing-secret",
        "user_id": user_id,
        "workspace_id": "ws-test",
        "operation_type": "content_generation",
        "provider": "openai",
        "model": "gpt-4o",
        "input_tokens": 1000,
        "output_tokens": 500,
        "success": True,
        "billable_tokens": 2250,
        "charge_type": "multiplier",
        "multiplier": 1.5,
    }
    payload.update(overrides)
    return payload


class TestAccountRoutes:
    """Account endpoints."""

    def test_initialize_account(self, client: TestClient, mock_user: MagicMock) -> None:
        account = create_account_data(mock_user.id, balance=10000)
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.initialize_account = AsyncMock(return_value=account)

            response = client.post("/v1/billing/account/initialize", json={"workspace_id": "ws"})

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == 10000
        assert data["status"] == "active"
        assert data["account_id"] == str(account.account_id)
        mock_ledger.return_value.initialize_account.assert_awaited_once_with(mock_user.id, "ws")

    def test_get_account(self, client: TestClient, mock_user: MagicMock) -> None:
        account = create_account_data(mock_user.id, balance=7750)
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.get_account = AsyncMock(return_value=account)

            response = client.get("/v1/billing/account")

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == 7750
        assert data["has_payment_method"] is False
        assert data["last_purchase_at"] is None

    def test_get_account_not_found(self, client: TestClient, mock_user: MagicMock) -> None:
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.get_account = AsyncMock(
                side_effect=AccountNotFoundError(mock_user.id)
            )

            response = client.get("/v1/billing/account")

        assert response.status_code == 404
        assert response.json()["detail"] == "Token account not found"

    def test_check_balance(self, client: TestClient, mock_user: MagicMock) -> None:
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.check_balance = AsyncMock(
                return_value=BalanceCheck(
                    sufficient=False, balance=-200, required=100, status=AccountStatus.SUSPENDED
                )
            )

            response = client.get("/v1/billing/balance/check", params={"required": 100})

        assert response.status_code == 200
        assert response.json() == {
            "sufficient": False,
            "balance": -200,
            "required": 100,
            "status": "suspended",
        }

    def test_check_balance_rejects_negative(self, client: TestClient) -> None:
        response = client.get("/v1/billing/balance/check", params={"required": -1})
        assert response.status_code == 422

    def test_list_transactions(self, client: TestClient, mock_user: MagicMock) -> None:
        txn = TransactionData(
            transaction_id=uuid4(),
            account_id=uuid4(),
            sequence=2,
            transaction_type=TransactionType.USAGE,
            amount=-2250,
            balance_before=10000,
            balance_after=7750,
            amount_cents=None,
            usage_id=uuid4(),
            external_payment_ref=None,
            admin_user_id=None,
            description="Token usage for AI operation",
            created_at=datetime.now(UTC),
        )
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.list_transactions = AsyncMock(return_value=[txn])

            response = client.get("/v1/billing/transactions", params={"limit": 10})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["transactions"][0]["transaction_type"] == "usage"
        assert data["transactions"][0]["balance_after"] == 7750
        mock_ledger.return_value.list_transactions.assert_awaited_once_with(mock_user.id, limit=10)

    def test_update_auto_recharge(self, client: TestClient, mock_user: MagicMock) -> None:
        account = create_account_data(mock_user.id)
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.update_auto_recharge = AsyncMock(return_value=account)

            response = client.put(
                "/v1/billing/auto-recharge",
                json={"enabled": True, "threshold": 1000, "amount": 150000},
            )

        assert response.status_code == 200
        mock_ledger.return_value.update_auto_recharge.assert_awaited_once_with(
            mock_user.id, enabled=True, threshold=1000, amount=150000
        )

    def test_update_auto_recharge_validates_amount(self, client: TestClient) -> None:
        response = client.put("/v1/billing/auto-recharge", json={"enabled": True, "amount": 0})
        assert response.status_code == 422


class TestUsageRoutes:
    """Usage recording and history."""

    def test_record_usage_billed(self, client: TestClient, provider_overrides: MagicMock) -> None:
        user_id = uuid4()
        receipt = UsageReceipt(usage_id=uuid4(), billed=True, new_balance=7750)
        with patch("token_ledger.api.routes.UsageMeterService") as mock_meter:
            mock_meter.return_value.record_usage = AsyncMock(return_value=receipt)

            response = client.post("/v1/billing/usage", json=usage_payload(str(user_id)))

        assert response.status_code == 201
        assert response.json() == {
            "usage_id": str(receipt.usage_id),
            "billed": True,
            "new_balance": 7750,
        }
        args = mock_meter.return_value.record_usage.await_args.args
        assert args[0] == "test-billing-secret"
        assert args[1].user_id == user_id
        assert args[3].billable_tokens == 2250

    def test_record_usage_wrong_secret(
        self, client: TestClient, provider_overrides: MagicMock
    ) -> None:
        with patch("token_ledger.api.routes.UsageMeterService") as mock_meter:
            mock_meter.return_value.record_usage = AsyncMock(
                side_effect=AuthorizationError("billing secret")
            )

            response = client.post(
                "/v1/billing/usage", json=usage_payload(str(uuid4()), secret="nope")
            )

        assert response.status_code == 403

    def test_record_usage_rejects_negative_billable(
        self, client: TestClient, provider_overrides: MagicMock
    ) -> None:
        response = client.post(
            "/v1/billing/usage", json=usage_payload(str(uuid4()), billable_tokens=-5)
        )
        assert response.status_code == 422

    def test_list_usage_with_filter(self, client: TestClient, mock_user: MagicMock) -> None:
        usage = UsageData(
            usage_id=uuid4(),
            user_id=mock_user.id,
            workspace_id="ws-test",
            project_id=None,
            content_piece_id=None,
            operation_type=OperationType.IMAGE_GENERATION,
            provider=AIProvider.OPENAI,
            model="dall-e-3",
            input_tokens=None,
            output_tokens=None,
            total_tokens=None,
            image_count=1,
            image_size="1024x1024",
            billable_tokens=6000,
            actual_tokens=6000,
            charge_type=ChargeType.FIXED,
            multiplier=None,
            success=True,
            error_message=None,
            created_at=datetime.now(UTC),
        )
        with patch("token_ledger.api.routes.UsageMeterService") as mock_meter:
            mock_meter.return_value.list_usage = AsyncMock(return_value=[usage])

            response = client.get(
                "/v1/billing/usage", params={"operation_type": "image_generation"}
            )

        assert response.status_code == 200
        assert response.json()["usage"][0]["charge_type"] == "fixed"
        mock_meter.return_value.list_usage.assert_awaited_once_with(
            mock_user.id, limit=50, operation_type=OperationType.IMAGE_GENERATION
        )


class TestPurchaseRoutes:
    """Packages, checkout and webhooks."""

    def test_list_packages(self, client: TestClient) -> None:
        package = PackageData(
            package_id=uuid4(),
            package_name="Starter",
            token_amount=150_000,
            price_cents=1_500,
            stripe_price_id="price_starter",
            description=None,
            is_popular=False,
            sort_order=1,
            active=True,
        )
        with patch("token_ledger.api.routes.PricingService") as mock_pricing:
            mock_pricing.return_value.list_active_packages = AsyncMock(return_value=[package])

            response = client.get("/v1/billing/packages")

        assert response.status_code == 200
        packages = response.json()["packages"]
        assert packages[0]["token_amount"] == 150_000
        assert "stripe_price_id" not in packages[0]

    def test_create_checkout(self, client: TestClient, provider_overrides: MagicMock) -> None:
        with patch("token_ledger.api.routes.PaymentGatewayService") as mock_gateway:
            mock_gateway.return_value.create_checkout = AsyncMock(
                return_value=CheckoutSession(session_id="cs_1", url="https://checkout/cs_1")
            )

            response = client.post(
                "/v1/billing/checkout",
                json={
                    "package_id": str(uuid4()),
                    "success_url": "https://app/success",
                    "cancel_url": "https://app/cancel",
                },
            )

        assert response.status_code == 200
        assert response.json() == {"session_id": "cs_1", "url": "https://checkout/cs_1"}

    def test_checkout_rejects_relative_urls(
        self, client: TestClient, provider_overrides: MagicMock
    ) -> None:
        response = client.post(
            "/v1/billing/checkout",
            json={"package_id": str(uuid4()), "success_url": "/ok", "cancel_url": "/cancel"},
        )
        assert response.status_code == 422

    @pytest.mark.parametrize(
        ("error", "expected_status"),
        [
            (PackageNotFoundError(uuid4()), 404),
            (PaymentProviderError("stripe down"), 502),
        ],
    )
    def test_checkout_errors(
        self,
        client: TestClient,
        provider_overrides: MagicMock,
        error: Exception,
        expected_status: int,
    ) -> None:
        with patch("token_ledger.api.routes.PaymentGatewayService") as mock_gateway:
            mock_gateway.return_value.create_checkout = AsyncMock(side_effect=error)

            response = client.post(
                "/v1/billing/checkout",
                json={
                    "package_id": str(uuid4()),
                    "success_url": "https://app/success",
                    "cancel_url": "https://app/cancel",
                },
            )

        assert response.status_code == expected_status

    def test_webhook_success(self, client: TestClient, provider_overrides: MagicMock) -> None:
        with patch("token_ledger.api.routes.PaymentGatewayService") as mock_gateway:
            mock_gateway.return_value.handle_webhook = AsyncMock(
                return_value=WebhookResult(
                    event_id="evt_1", event_type="checkout.session.completed", result="credited"
                )
            )

            response = client.post(
                "/v1/billing/webhooks/stripe",
                content=b'{"id": "evt_1"}',
                headers={"Stripe-Signature": "t=1,v1=abc"},
            )

        assert response.status_code == 200
        assert response.json() == {"status": "credited", "event_id": "evt_1"}
        mock_gateway.return_value.handle_webhook.assert_awaited_once_with(
            b'{"id": "evt_1"}', "t=1,v1=abc"
        )

    def test_webhook_bad_signature(
        self, client: TestClient, provider_overrides: MagicMock
    ) -> None:
        with patch("token_ledger.api.routes.PaymentGatewayService") as mock_gateway:
            mock_gateway.return_value.handle_webhook = AsyncMock(
                side_effect=WebhookVerificationError("bad")
            )

            response = client.post("/v1/billing/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    def test_webhook_ledger_failure_asks_for_retry(
        self, client: TestClient, provider_overrides: MagicMock
    ) -> None:
        with patch("token_ledger.api.routes.PaymentGatewayService") as mock_gateway:
            mock_gateway.return_value.handle_webhook = AsyncMock(
                side_effect=InvariantViolationError("chain broken")
            )

            response = client.post(
                "/v1/billing/webhooks/stripe",
                content=b"{}",
                headers={"Stripe-Signature": "t=1,v1=abc"},
            )

        assert response.status_code == 500


class TestAuthentication:
    """Bearer token handling."""

    def test_missing_token(self, anonymous_client: TestClient) -> None:
        response = anonymous_client.get("/v1/billing/account")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token(self, anonymous_client: TestClient) -> None:
        response = anonymous_client.get(
            "/v1/billing/account", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    def test_valid_token_resolves_user(self, app: FastAPI, anonymous_client: TestClient) -> None:
        stored_user = MagicMock()
        stored_user.id = uuid4()
        identity = MagicMock()
        identity.verify_token = MagicMock(return_value={"sub": "subject-1", "email": "a@b.c"})
        identity.get_or_create_user = AsyncMock(return_value=stored_user)
        app.dependency_overrides[get_identity_service] = lambda: identity

        account = create_account_data(stored_user.id)
        with patch("token_ledger.api.routes.LedgerService") as mock_ledger:
            mock_ledger.return_value.get_account = AsyncMock(return_value=account)

            response = anonymous_client.get(
                "/v1/billing/account", headers={"Authorization": "Bearer good"}
            )

        assert response.status_code == 200
        assert identity.get_or_create_user.await_args.kwargs["subject"] == "subject-1"
        mock_ledger.return_value.get_account.assert_awaited_once_with(stored_user.id)


class TestHealth:
    """Health check."""

    def test_healthy(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, client: TestClient, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(side_effect=ConnectionError("db down"))

        response = client.get("/health")

        assert response.status_code == 503
