"""Credits API endpoints: balance, usage, costs, spending and purchases.

Endpoints:
    GET  /credits/balance  - Current balance (daily reset applied first)
    GET  /credits/usage    - Recent usage records, newest first
    GET  /credits/costs    - Credit cost table
    POST /credits/spend    - Charge one metered action
    POST /credits/purchase - Hosted checkout link for a product
    POST /credits/webhook  - Payment provider notifications (HMAC signed)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.audit import AuditRecorder
from authledger.auth.credits import CREDIT_COSTS, CreditBalance, CreditLedger
from authledger.auth.dependencies import get_current_claims, get_device, get_ledger
from authledger.auth.events import CreditsDeductedDetails
from authledger.auth.payments import PaymentNotifier, get_product
from authledger.auth.schemas import (
    CreditBalanceResponse,
    CreditCostsResponse,
    PurchaseRequest,
    PurchaseResponse,
    SpendRequest,
    SpendResponse,
    UsageHistoryResponse,
    UsageRecordResponse,
    WebhookResponse,
)
from authledger.auth.sessions import DeviceInfo
from authledger.auth.tokens import TokenClaims
from authledger.config import get_settings
from authledger.database import get_db_session
from authledger.models import AuditEventType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

SIGNATURE_HEADER = "X-Webhook-Signature"


def _balance_response(balance: CreditBalance) -> CreditBalanceResponse:
    return CreditBalanceResponse(
        daily=balance.daily,
        purchased=balance.purchased,
        total=balance.total,
    )


async def get_payment_notifier(
    session: AsyncSession = Depends(get_db_session),
    ledger: CreditLedger = Depends(get_ledger),
) -> PaymentNotifier:
    settings = get_settings()
    return PaymentNotifier(
        session,
        ledger,
        AuditRecorder(session),
        webhook_secret=settings.PAYMENT_WEBHOOK_SECRET,
        checkout_url=settings.PAYMENT_CHECKOUT_URL,
        app_url=settings.APP_URL,
    )


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    claims: TokenClaims = Depends(get_current_claims),
    ledger: CreditLedger = Depends(get_ledger),
    session: AsyncSession = Depends(get_db_session),
) -> CreditBalanceResponse:
    """Return the caller's balance, refilling the daily pool if it is due."""
    await ledger.check_and_reset(claims.user_id)
    balance = await ledger.balance(claims.user_id)
    await session.commit()
    return _balance_response(balance)


@router.get("/usage", response_model=UsageHistoryResponse)
async def get_usage(
    limit: int = Query(50, ge=1, le=100),
    claims: TokenClaims = Depends(get_current_claims),
    ledger: CreditLedger = Depends(get_ledger),
) -> UsageHistoryResponse:
    records = await ledger.usage_history(claims.user_id, limit=limit)
    return UsageHistoryResponse(
        usage=[UsageRecordResponse.model_validate(r) for r in records]
    )


@router.get("/costs", response_model=CreditCostsResponse)
async def get_costs() -> CreditCostsResponse:
    """Return the credit cost of each metered action. No auth required."""
    return CreditCostsResponse(
        costs={action.value: cost for action, cost in CREDIT_COSTS.items()}
    )


@router.post("/spend", response_model=SpendResponse)
async def spend(
    body: SpendRequest,
    claims: TokenClaims = Depends(get_current_claims),
    ledger: CreditLedger = Depends(get_ledger),
    session: AsyncSession = Depends(get_db_session),
    device: DeviceInfo = Depends(get_device),
) -> SpendResponse:
    """Charge the cost of one action. Answers 402 when the pools cannot cover it."""
    balance = await ledger.spend(claims.user_id, body.action_type, body.details)
    cost = CREDIT_COSTS[body.action_type]
    await AuditRecorder(session).log(
        AuditEventType.CREDITS_DEDUCTED,
        CreditsDeductedDetails(action_type=body.action_type.value, amount=cost),
        user_id=claims.user_id,
        device=device,
    )
    await session.commit()
    return SpendResponse(charged=cost, credits=_balance_response(balance))


@router.post("/purchase", response_model=PurchaseResponse)
async def purchase(
    body: PurchaseRequest,
    claims: TokenClaims = Depends(get_current_claims),
    notifier: PaymentNotifier = Depends(get_payment_notifier),
) -> PurchaseResponse:
    """Return a hosted checkout link; credits arrive through the webhook."""
    product = get_product(body.product_id)
    return PurchaseResponse(
        checkout_url=notifier.checkout_link(claims.user_id, product.id),
        product_id=product.id,
        credits=product.credits,
        price_cents=product.price_cents,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    notifier: PaymentNotifier = Depends(get_payment_notifier),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookResponse:
    """Apply a signed payment notification. Replays are acknowledged, not re-applied."""
    body = await request.body()
    outcome = await notifier.handle(body, signature)
    await session.commit()
    return WebhookResponse(success=outcome.handled, message=outcome.message)
