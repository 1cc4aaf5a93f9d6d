"""Dual-pool credit ledger: check, deduct, reset, top up.

Every user has a renewable ``daily`` pool and a durable ``purchased`` pool.
Deductions always drain ``purchased`` before ``daily`` and are all-or-nothing.
Each decrement is a single conditional UPDATE (``WHERE amount >= n``) whose
row count decides success, so concurrent deductions cannot overspend.

The daily reset is lazy: ``check_and_reset`` must run before any balance read
or deduction on a request path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.clock import next_utc_midnight, utcnow
from authledger.auth.events import ApiCallUsage, ChatMessageUsage
from authledger.errors import (
    InsufficientCredits,
    UserNotFound,
    ValidationFailure,
    translate_db_errors,
)
from authledger.models import Credit, CreditType, CreditUsage, User

logger = logging.getLogger(__name__)


class CreditAction(str, Enum):
    """Metered actions."""

    CHAT_MESSAGE = "chat_message"
    API_CALL = "api_call"


# Credit costs per action
CREDIT_COSTS: dict[CreditAction, int] = {
    CreditAction.CHAT_MESSAGE: 1,
    CreditAction.API_CALL: 1,
}

_USAGE_DETAILS = {
    CreditAction.CHAT_MESSAGE: ChatMessageUsage,
    CreditAction.API_CALL: ApiCallUsage,
}


@dataclass(frozen=True)
class CreditBalance:
    daily: int
    purchased: int

    @property
    def total(self) -> int:
        return self.daily + self.purchased


class CreditLedger:
    """Credit pools for one request's DB session (caller commits)."""

    def __init__(self, session: AsyncSession, daily_allotment: int = 5) -> None:
        self.session = session
        self.daily_allotment = daily_allotment

    @translate_db_errors
    async def balance(self, user_id: str) -> CreditBalance:
        """Read both pools in one statement.

        Raises:
            UserNotFound: If the user does not exist.
        """
        stmt = (
            select(
                User.id,
                func.coalesce(
                    func.sum(
                        case((Credit.credit_type == CreditType.DAILY, Credit.amount), else_=0)
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(
                        case((Credit.credit_type == CreditType.PURCHASED, Credit.amount), else_=0)
                    ),
                    0,
                ),
            )
            .select_from(User)
            .outerjoin(Credit, Credit.user_id == User.id)
            .where(User.id == user_id)
            .group_by(User.id)
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            raise UserNotFound()
        _, daily, purchased = row
        return CreditBalance(daily=int(daily), purchased=int(purchased))

    async def has_credits(self, user_id: str, n: int = 1) -> bool:
        return (await self.balance(user_id)).total >= n

    async def _decrement(self, user_id: str, pool: CreditType, n: int) -> bool:
        result = await self.session.execute(
            update(Credit)
            .where(
                Credit.user_id == user_id,
                Credit.credit_type == pool,
                Credit.amount >= n,
            )
            .values(amount=Credit.amount - n, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _take(self, user_id: str, n: int) -> list[tuple[CreditType, int]] | None:
        if await self._decrement(user_id, CreditType.PURCHASED, n):
            return [(CreditType.PURCHASED, n)]

        current = await self.balance(user_id)
        if current.total < n:
            return None

        from_purchased = min(n, current.purchased)
        from_daily = n - from_purchased
        taken: list[tuple[CreditType, int]] = []

        if from_purchased:
            if not await self._decrement(user_id, CreditType.PURCHASED, from_purchased):
                return None
            taken.append((CreditType.PURCHASED, from_purchased))
        if from_daily:
            if not await self._decrement(user_id, CreditType.DAILY, from_daily):
                return None
            taken.append((CreditType.DAILY, from_daily))
        return taken

    @translate_db_errors
    async def deduct(
        self,
        user_id: str,
        n: int,
        action: CreditAction,
        details: ChatMessageUsage | ApiCallUsage | None = None,
    ) -> bool:
        """Deduct ``n`` credits, purchased pool first.

        Args:
            user_id: User UUID.
            n: Positive number of credits.
            action: Metered action consuming the credits.
            details: Usage details for ``action``.

        Returns:
            True on success; False (nothing mutated) if the pools cannot cover ``n``.

        Raises:
            ValidationFailure: If ``n`` is not positive.
            TypeError: If ``details`` does not belong to ``action``.
        """
        if n <= 0:
            raise ValidationFailure("Deduction amount must be positive")
        if details is not None and not isinstance(details, _USAGE_DETAILS[action]):
            raise TypeError(f"{action.value} usage takes {_USAGE_DETAILS[action].__name__}")

        savepoint = await self.session.begin_nested()
        try:
            taken = await self._take(user_id, n)
            if taken is None:
                await savepoint.rollback()
                return False

            for pool, amount in taken:
                self.session.add(
                    CreditUsage(
                        user_id=user_id,
                        credits_deducted=amount,
                        credit_type_used=pool,
                        action_type=action.value,
                        details=details.to_json() if details is not None else None,
                        created_at=utcnow(),
                    )
                )
            await self.session.flush()
            await savepoint.commit()
        except Exception:
            if savepoint.is_active:
                await savepoint.rollback()
            raise

        return True

    @translate_db_errors
    async def add_purchased(self, user_id: str, n: int) -> None:
        """Increment the purchased pool, creating it on first purchase.

        Raises:
            ValidationFailure: If ``n`` is not positive.
            UserNotFound: If the user does not exist.
        """
        if n <= 0:
            raise ValidationFailure("Top-up amount must be positive")

        stmt = (
            update(Credit)
            .where(Credit.user_id == user_id, Credit.credit_type == CreditType.PURCHASED)
            .values(amount=Credit.amount + n, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if (await self.session.execute(stmt)).rowcount == 1:
            return

        try:
            async with self.session.begin_nested():
                self.session.add(
                    Credit(user_id=user_id, credit_type=CreditType.PURCHASED, amount=n)
                )
                await self.session.flush()
            return
        except IntegrityError:
            # Lost the insert race, or the user is gone
            pass

        if (await self.session.execute(stmt)).rowcount != 1:
            raise UserNotFound()

    @translate_db_errors
    async def reset_daily(self, user_id: str, now: datetime | None = None) -> None:
        """Restore the daily pool and set ``reset_date`` to the next UTC midnight.

        Idempotent within a UTC day.
        """
        reset_date = next_utc_midnight(now)
        result = await self.session.execute(
            update(Credit)
            .where(Credit.user_id == user_id, Credit.credit_type == CreditType.DAILY)
            .values(amount=self.daily_allotment, reset_date=reset_date, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            try:
                async with self.session.begin_nested():
                    self.session.add(
                        Credit(
                            user_id=user_id,
                            credit_type=CreditType.DAILY,
                            amount=self.daily_allotment,
                            reset_date=reset_date,
                        )
                    )
                    await self.session.flush()
            except IntegrityError:
                if await self.session.get(User, user_id) is None:
                    raise UserNotFound()
        logger.info(f"Daily credits reset for user {user_id}")

    @translate_db_errors
    async def check_and_reset(self, user_id: str, now: datetime | None = None) -> bool:
        """Apply the daily reset if its boundary has passed.

        Returns:
            True if a reset was applied.
        """
        now = now or utcnow()
        result = await self.session.execute(
            update(Credit)
            .where(
                Credit.user_id == user_id,
                Credit.credit_type == CreditType.DAILY,
                or_(Credit.reset_date.is_(None), Credit.reset_date <= now),
            )
            .values(
                amount=self.daily_allotment,
                reset_date=next_utc_midnight(now),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Daily credits reset for user {user_id}")
            return True

        exists = await self.session.execute(
            select(Credit.id).where(
                Credit.user_id == user_id, Credit.credit_type == CreditType.DAILY
            )
        )
        if exists.scalar_one_or_none() is None:
            await self.reset_daily(user_id, now)
            return True
        return False

    async def spend(
        self,
        user_id: str,
        action: CreditAction,
        details: ChatMessageUsage | ApiCallUsage | None = None,
    ) -> CreditBalance:
        """Reset if due, then charge the cost of ``action``.

        Returns:
            The balance after the charge.

        Raises:
            InsufficientCredits: If the pools cannot cover the cost.
        """
        cost = CREDIT_COSTS[action]
        await self.check_and_reset(user_id)
        if not await self.deduct(user_id, cost, action, details):
            current = await self.balance(user_id)
            raise InsufficientCredits(required=cost, available=current.total)
        return await self.balance(user_id)

    @translate_db_errors
    async def usage_history(self, user_id: str, limit: int = 50) -> list[CreditUsage]:
        result = await self.session.execute(
            select(CreditUsage)
            .where(CreditUsage.user_id == user_id)
            .order_by(CreditUsage.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
