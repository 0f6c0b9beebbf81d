"""Tests for Chargebee webhook verification and crediting."""

from __future__ import annotations

import asyncio
import base64
import json

from typing import Any

import pytest

from fakes import FakeLedger

from tokenchat.api.middleware.exception_handlers import LedgerError, WebhookError
from tokenchat.api.services.billing_service import BillingService
from tokenchat.api.services.webhook_service import (
    ChargebeeWebhookService,
    ProcessedEventStore,
    WebhookOutcome,
    resolve_purchase,
)
from tokenchat.core.constants import Settings
from tokenchat.models.billing_models import TransactionType
from tokenchat.models.error_models import ErrorCode


def _basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


def _payment_event(event_id: str = "ev_1", **invoice: Any) -> dict[str, Any]:
    body_invoice: dict[str, Any] = {"id": "inv_1"}
    body_invoice.update(invoice)
    return {"id": event_id, "event_type": "payment_succeeded", "content": {"invoice": body_invoice}}


@pytest.fixture
def webhook_service(fake_ledger: FakeLedger, settings: Settings) -> ChargebeeWebhookService:
    return ChargebeeWebhookService(BillingService(fake_ledger), ProcessedEventStore(), settings)


class TestVerifyBasicAuth:
    def test_valid_credentials(self, webhook_service: ChargebeeWebhookService) -> None:
        webhook_service.verify_basic_auth(_basic("cb-user", "cb-pass"))

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "Bearer token",
            "Basic !!!not-base64!!!",
            _basic("cb-user", "wrong"),
            _basic("other", "cb-pass"),
        ],
    )
    def test_rejected(self, webhook_service: ChargebeeWebhookService, header: str | None) -> None:
        with pytest.raises(WebhookError) as exc_info:
            webhook_service.verify_basic_auth(header)

        assert exc_info.value.code is ErrorCode.WEBHOOK_UNAUTHORIZED
        assert exc_info.value.status_code == 401

    def test_unconfigured_rejects_everything(self, fake_ledger: FakeLedger, settings: Settings) -> None:
        service = ChargebeeWebhookService(
            BillingService(fake_ledger),
            ProcessedEventStore(),
            settings.model_copy(update={"chargebee_webhook_password": None}),
        )

        with pytest.raises(WebhookError):
            service.verify_basic_auth(_basic("cb-user", "cb-pass"))


class TestResolvePurchase:
    def test_invoice_pass_thru(self) -> None:
        body = _payment_event(pass_thru_content=json.dumps({"packId": "pack-150", "userId": "user-9"}))

        target = resolve_purchase(body)

        assert target is not None
        assert (target.pack_id, target.user_id) == ("pack-150", "user-9")

    def test_top_level_pass_thru(self) -> None:
        body = _payment_event()
        body["pass_thru_content"] = json.dumps({"packId": "pack-50", "userId": "user-3"})

        target = resolve_purchase(body)

        assert target is not None
        assert target.pack_id == "pack-50"

    def test_price_fallback(self) -> None:
        body = _payment_event(customer_id="user-4", line_items=[{"amount": 2500}])

        target = resolve_purchase(body)

        assert target is not None
        assert (target.pack_id, target.user_id) == ("pack-500", "user-4")

    def test_total_fallback(self) -> None:
        target = resolve_purchase(_payment_event(customer_id="user-4", total=1000))

        assert target is not None
        assert target.pack_id == "pack-150"

    def test_unknown_price(self) -> None:
        assert resolve_purchase(_payment_event(customer_id="user-4", total=123)) is None

    def test_malformed_pass_thru_falls_back(self) -> None:
        body = _payment_event(pass_thru_content="{not json", customer_id="user-5", total=500)

        target = resolve_purchase(body)

        assert target is not None
        assert (target.pack_id, target.user_id) == ("pack-50", "user-5")

    def test_nothing_to_resolve(self) -> None:
        assert resolve_purchase({"id": "ev", "event_type": "payment_succeeded"}) is None


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_payment_credits_pack(
        self, webhook_service: ChargebeeWebhookService, fake_ledger: FakeLedger
    ) -> None:
        fake_ledger.balances["user-9"] = 2
        body = _payment_event(pass_thru_content=json.dumps({"packId": "pack-50", "userId": "user-9"}))

        assert await webhook_service.handle_event(body) is WebhookOutcome.CREDITED

        assert fake_ledger.balances["user-9"] == 52
        [tx] = fake_ledger.transactions_for("user-9", TransactionType.PURCHASE)
        assert tx.reference_id == "inv_1"

    @pytest.mark.asyncio
    async def test_redelivery_credits_once(
        self, webhook_service: ChargebeeWebhookService, fake_ledger: FakeLedger
    ) -> None:
        body = _payment_event(pass_thru_content=json.dumps({"packId": "pack-50", "userId": "user-9"}))

        assert await webhook_service.handle_event(body) is WebhookOutcome.CREDITED
        assert await webhook_service.handle_event(body) is WebhookOutcome.DUPLICATE

        assert fake_ledger.balances["user-9"] == 50
        assert len(fake_ledger.transactions_for("user-9")) == 1

    @pytest.mark.asyncio
    async def test_failed_event_is_retried(
        self, webhook_service: ChargebeeWebhookService, fake_ledger: FakeLedger
    ) -> None:
        """Test that an event whose handling failed is not recorded as processed."""
        bad = _payment_event(pass_thru_content=json.dumps({"packId": "pack-7", "userId": "user-9"}))

        with pytest.raises(LedgerError):
            await webhook_service.handle_event(bad)

        assert "ev_1" not in webhook_service.processed_events

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(
        self, webhook_service: ChargebeeWebhookService, fake_ledger: FakeLedger
    ) -> None:
        outcome = await webhook_service.handle_event({"id": "ev_2", "event_type": "subscription_created"})

        assert outcome is WebhookOutcome.IGNORED
        assert fake_ledger.transactions == []
        assert "ev_2" in webhook_service.processed_events

    @pytest.mark.asyncio
    async def test_unresolved_payment(self, webhook_service: ChargebeeWebhookService) -> None:
        outcome = await webhook_service.handle_event({"id": "ev_3", "event_type": "payment_succeeded"})

        assert outcome is WebhookOutcome.UNRESOLVED

    @pytest.mark.asyncio
    async def test_missing_event_id(self, webhook_service: ChargebeeWebhookService) -> None:
        with pytest.raises(WebhookError) as exc_info:
            await webhook_service.handle_event({"event_type": "payment_succeeded"})

        assert exc_info.value.code is ErrorCode.WEBHOOK_PAYLOAD_INVALID


class TestConcurrentDelivery:
    @pytest.mark.asyncio
    async def test_simultaneous_duplicates_credit_once(
        self, webhook_service: ChargebeeWebhookService, fake_ledger: FakeLedger
    ) -> None:
        fake_ledger.credit_delay = 0.05
        body = _payment_event(pass_thru_content=json.dumps({"packId": "pack-50", "userId": "user-9"}))

        outcomes = await asyncio.gather(webhook_service.handle_event(body), webhook_service.handle_event(body))

        assert sorted(o.value for o in outcomes) == ["credited", "duplicate"]
        assert fake_ledger.balances["user-9"] == 50
        assert len(fake_ledger.transactions_for("user-9", TransactionType.PURCHASE)) == 1

    @pytest.mark.asyncio
    async def test_unresolved_event_not_recorded(self, webhook_service: ChargebeeWebhookService) -> None:
        await webhook_service.handle_event({"id": "ev_3", "event_type": "payment_succeeded"})

        assert "ev_3" not in webhook_service.processed_events


class TestProcessedEventStore:
    @pytest.mark.asyncio
    async def test_evicts_oldest(self) -> None:
        store = ProcessedEventStore(max_size=2)
        for event_id in ("a", "b", "c"):
            assert await store.try_reserve(event_id)

        assert len(store) == 2
        assert "a" not in store
        assert "c" in store

    @pytest.mark.asyncio
    async def test_reserve_is_exclusive_until_released(self) -> None:
        store = ProcessedEventStore()

        assert await store.try_reserve("ev")
        assert not await store.try_reserve("ev")

        await store.release("ev")

        assert await store.try_reserve("ev")
