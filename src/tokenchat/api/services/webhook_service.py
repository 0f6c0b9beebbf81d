"""
Chargebee payment webhook processing.

Credits purchased token packs through the billing service. Duplicate and
concurrent deliveries are filtered with an injected ``ProcessedEventStore``:
an event id is claimed before crediting and given back when handling fails,
so a failed delivery is retried by Chargebee and processed again.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import secrets

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tokenchat.api.middleware.exception_handlers import WebhookError
from tokenchat.api.services.billing_service import BillingService
from tokenchat.core.constants import Settings, find_token_pack_by_price
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils import metrics
from tokenchat.utils.logger import logger

EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"

#: Processed event ids remembered per process before the oldest are evicted
MAX_TRACKED_EVENTS = 10000


class WebhookOutcome(str, Enum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True, slots=True)
class PurchaseTarget:
    pack_id: str
    user_id: str


class ProcessedEventStore:
    """Bounded, lock-guarded set of webhook event ids claimed by this process.

    ``try_reserve`` checks and inserts in one step, so of two concurrent
    deliveries of the same event only one proceeds. A failed delivery gives
    its id back with ``release`` and can be retried.
    """

    def __init__(self, max_size: int = MAX_TRACKED_EVENTS):
        self._events: OrderedDict[str, None] = OrderedDict()
        self._max_size = max_size
        self._lock = asyncio.Lock()

    async def try_reserve(self, event_id: str) -> bool:
        """Claim ``event_id``. False when it is already processed or in progress."""
        async with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = None
            while len(self._events) > self._max_size:
                self._events.popitem(last=False)
            return True

    async def release(self, event_id: str) -> None:
        async with self._lock:
            self._events.pop(event_id, None)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __len__(self) -> int:
        return len(self._events)


def _parse_pass_thru(raw: Any) -> PurchaseTarget | None:
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    pack_id, user_id = parsed.get("packId"), parsed.get("userId")
    if pack_id and user_id:
        return PurchaseTarget(pack_id=str(pack_id), user_id=str(user_id))
    return None


def resolve_purchase(body: dict[str, Any]) -> PurchaseTarget | None:
    """Find which pack was bought and by whom.

    Prefers the checkout's ``pass_thru_content`` (invoice level, else top level);
    falls back to the invoice customer id plus the pack priced at the charged amount.
    """
    invoice = (body.get("content") or {}).get("invoice") or {}

    raw = invoice.get("pass_thru_content")
    if raw is None:
        raw = body.get("pass_thru_content")
    target = _parse_pass_thru(raw)
    if target:
        return target

    user_id = invoice.get("customer_id")
    if not invoice or not user_id:
        return None

    line_items = invoice.get("line_items") or []
    amount = line_items[0].get("amount") if line_items else None
    if amount is None:
        amount = invoice.get("total")
    if amount is None:
        return None

    pack = find_token_pack_by_price(int(amount))
    if pack is None:
        logger.error("No token pack matches the charged amount", charge_amount=amount)
        return None
    return PurchaseTarget(pack_id=pack.id, user_id=str(user_id))


class ChargebeeWebhookService:
    """Verifies and applies Chargebee webhook deliveries."""

    def __init__(self, billing: BillingService, processed_events: ProcessedEventStore, settings: Settings):
        self.billing = billing
        self.processed_events = processed_events
        self.settings = settings

    def verify_basic_auth(self, authorization: str | None) -> None:
        """Check HTTP Basic credentials against the configured webhook user.

        Raises:
            WebhookError: WEBHOOK_UNAUTHORIZED on any mismatch, or when no credentials are configured
        """
        expected_user = self.settings.chargebee_webhook_username
        expected_password = self.settings.chargebee_webhook_password
        if not expected_user or not expected_password:
            logger.error("Chargebee webhook credentials are not configured")
            raise WebhookError(code=ErrorCode.WEBHOOK_UNAUTHORIZED, message="Unauthorized")

        if not authorization or not authorization.startswith("Basic "):
            raise WebhookError(code=ErrorCode.WEBHOOK_UNAUTHORIZED, message="Unauthorized")

        try:
            decoded = base64.b64decode(authorization[len("Basic ") :], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise WebhookError(code=ErrorCode.WEBHOOK_UNAUTHORIZED, message="Unauthorized", cause=e) from e

        username, _, password = decoded.partition(":")
        user_ok = secrets.compare_digest(username.encode(), expected_user.encode())
        password_ok = secrets.compare_digest(password.encode(), expected_password.encode())
        if not (user_ok and password_ok):
            raise WebhookError(code=ErrorCode.WEBHOOK_UNAUTHORIZED, message="Unauthorized")

    async def handle_event(self, body: dict[str, Any]) -> WebhookOutcome:
        """Apply one webhook event. Errors propagate and leave the event unrecorded."""
        event_id = body.get("id")
        event_type = body.get("event_type")
        if not isinstance(event_id, str) or not event_id:
            raise WebhookError(code=ErrorCode.WEBHOOK_PAYLOAD_INVALID, message="Webhook event id is missing")

        if not await self.processed_events.try_reserve(event_id):
            logger.info("Duplicate webhook event skipped", event_id=event_id)
            metrics.webhook_events_total.labels(outcome=WebhookOutcome.DUPLICATE.value).inc()
            return WebhookOutcome.DUPLICATE

        logger.info("Webhook event received", event_id=event_id, event_type=event_type)

        try:
            outcome = await self._apply(event_id, event_type, body)
        except BaseException:
            await self.processed_events.release(event_id)
            raise

        if outcome is WebhookOutcome.UNRESOLVED:
            await self.processed_events.release(event_id)
        metrics.webhook_events_total.labels(outcome=outcome.value).inc()
        return outcome

    async def _apply(self, event_id: str, event_type: Any, body: dict[str, Any]) -> WebhookOutcome:
        if event_type != EVENT_PAYMENT_SUCCEEDED:
            return WebhookOutcome.IGNORED

        target = resolve_purchase(body)
        if target is None:
            logger.error("Cannot resolve pack and user for payment", event_id=event_id)
            return WebhookOutcome.UNRESOLVED

        invoice = (body.get("content") or {}).get("invoice") or {}
        invoice_id = invoice.get("id") or event_id
        await self.billing.credit_purchased_tokens(target.user_id, target.pack_id, invoice_id)
        logger.info(
            "Webhook tokens credited",
            event_id=event_id,
            user_id=target.user_id,
            pack_id=target.pack_id,
        )
        return WebhookOutcome.CREDITED


__all__ = [
    "ChargebeeWebhookService",
    "ProcessedEventStore",
    "PurchaseTarget",
    "WebhookOutcome",
    "resolve_purchase",
]
