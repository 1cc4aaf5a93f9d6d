"""Payment provider integration: checkout links and webhook-driven top-ups.

The provider calls ``/credits/webhook`` with an HMAC-SHA256 signature of the
raw body. A completed payment grants its product's credits exactly once per
``payment_id``: the unique constraint on ``payment_transactions.payment_id``
makes replays no-ops.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.audit import AuditRecorder
from authledger.auth.clock import utcnow
from authledger.auth.credits import CreditLedger
from authledger.auth.events import CreditsPurchasedDetails
from authledger.errors import (
    InvalidWebhookSignature,
    UnknownProduct,
    ValidationFailure,
    translate_db_errors,
)
from authledger.models import AuditEventType, PaymentStatus, PaymentTransaction, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    credits: int
    price_cents: int
    billing_period: str


PRODUCTS: dict[str, Product] = {
    "pro_subscription": Product(
        id="pro_subscription",
        name="Pro Credits",
        credits=100,
        price_cents=1999,
        billing_period="monthly",
    ),
}


def get_product(product_id: str) -> Product:
    """Look up a product.

    Raises:
        UnknownProduct: If ``product_id`` is not in the catalog.
    """
    product = PRODUCTS.get(product_id)
    if product is None:
        raise UnknownProduct(f"Unknown product: {product_id}")
    return product


class WebhookData(BaseModel):
    payment_id: str
    user_id: str | None = None
    product_id: str | None = None
    amount: int = 0
    currency: str = "usd"
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def resolved_user_id(self) -> str | None:
        return self.user_id or self.metadata.get("user_id")

    @property
    def resolved_product_id(self) -> str:
        return self.product_id or self.metadata.get("product_id") or "pro_subscription"


class WebhookPayload(BaseModel):
    event: str
    data: WebhookData


@dataclass(frozen=True)
class WebhookOutcome:
    handled: bool
    message: str


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class PaymentNotifier:
    """Builds checkout links and applies payment webhooks to the ledger."""

    SUCCESS_EVENTS = frozenset({"payment.succeeded", "payment.completed"})
    FAILURE_EVENTS = frozenset({"payment.failed"})

    def __init__(
        self,
        session: AsyncSession,
        ledger: CreditLedger,
        audit: AuditRecorder,
        webhook_secret: str | None,
        checkout_url: str,
        app_url: str,
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.audit = audit
        self.webhook_secret = webhook_secret
        self.checkout_url = checkout_url
        self.app_url = app_url

    def checkout_link(self, user_id: str, product_id: str) -> str:
        """Hosted checkout URL carrying the user id as metadata."""
        product = get_product(product_id)
        metadata = json.dumps(
            {"user_id": user_id, "product_id": product.id, "app_url": self.app_url},
            separators=(",", ":"),
        )
        return f"{self.checkout_url.rstrip('/')}/{product.id}?{urlencode({'metadata': metadata})}"

    def verify_signature(self, body: bytes, signature: str | None) -> None:
        """Check the webhook signature; an unset secret rejects everything.

        Raises:
            InvalidWebhookSignature: On a missing or wrong signature.
        """
        if not self.webhook_secret or not signature:
            logger.warning("Webhook rejected: missing secret or signature")
            raise InvalidWebhookSignature()
        expected = sign_payload(body, self.webhook_secret)
        if not hmac.compare_digest(expected, signature.strip()):
            logger.warning("Webhook rejected: signature mismatch")
            raise InvalidWebhookSignature()

    @staticmethod
    def parse(body: bytes) -> WebhookPayload:
        try:
            return WebhookPayload.model_validate_json(body)
        except ValidationError as e:
            raise ValidationFailure("Malformed webhook payload") from e

    async def handle(self, body: bytes, signature: str | None) -> WebhookOutcome:
        """Verify, parse and apply one webhook delivery (caller commits)."""
        self.verify_signature(body, signature)
        payload = self.parse(body)

        if payload.event in self.SUCCESS_EVENTS:
            return await self._complete(payload.data)
        if payload.event in self.FAILURE_EVENTS:
            return await self._fail(payload.data)

        logger.info(f"Ignoring webhook event {payload.event}")
        return WebhookOutcome(handled=False, message="Event ignored")

    @translate_db_errors
    async def _existing(self, payment_id: str) -> PaymentTransaction | None:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def _record(
        self,
        data: WebhookData,
        product: Product,
        status: PaymentStatus,
    ) -> PaymentTransaction | None:
        user_id = data.resolved_user_id
        if not user_id or await self.session.get(User, user_id) is None:
            raise ValidationFailure("Webhook does not identify a known user")

        now = utcnow()
        record = PaymentTransaction(
            user_id=user_id,
            payment_id=data.payment_id,
            product_id=product.id,
            amount_cents=data.amount or product.price_cents,
            credits=product.credits if status == PaymentStatus.COMPLETED else 0,
            status=status,
            created_at=now,
            completed_at=now if status == PaymentStatus.COMPLETED else None,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(record)
                await self.session.flush()
        except IntegrityError:
            return None
        return record

    @translate_db_errors
    async def _complete(self, data: WebhookData) -> WebhookOutcome:
        existing = await self._existing(data.payment_id)
        if existing is not None and existing.status == PaymentStatus.COMPLETED:
            return WebhookOutcome(handled=True, message="Already processed")

        product = get_product(data.resolved_product_id)
        if existing is not None:
            # A failure was recorded first; only one delivery may flip it
            result = await self.session.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.payment_id == data.payment_id,
                    PaymentTransaction.status != PaymentStatus.COMPLETED,
                )
                .values(
                    status=PaymentStatus.COMPLETED,
                    credits=product.credits,
                    completed_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                return WebhookOutcome(handled=True, message="Already processed")
            record = existing
        else:
            record = await self._record(data, product, PaymentStatus.COMPLETED)
            if record is None:
                return WebhookOutcome(handled=True, message="Already processed")

        await self.ledger.add_purchased(record.user_id, product.credits)
        await self.audit.log(
            AuditEventType.CREDITS_PURCHASED,
            CreditsPurchasedDetails(
                payment_id=record.payment_id,
                product_id=product.id,
                credits=product.credits,
                amount_cents=record.amount_cents,
            ),
            user_id=record.user_id,
        )
        logger.info(f"Credits granted: {product.credits} to user {record.user_id}")
        return WebhookOutcome(handled=True, message="Credits granted")

    @translate_db_errors
    async def _fail(self, data: WebhookData) -> WebhookOutcome:
        existing = await self._existing(data.payment_id)
        if existing is not None:
            return WebhookOutcome(handled=True, message="Already recorded")

        product = get_product(data.resolved_product_id)
        await self._record(data, product, PaymentStatus.FAILED)
        logger.info(f"Payment failed: {data.payment_id}")
        return WebhookOutcome(handled=True, message="Failure recorded")
