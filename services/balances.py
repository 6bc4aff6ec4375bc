"""Creator balance mutations.

Balances are only changed through SQL increments (never read-modify-write),
inside the transaction that moves the payout entry or writes the ledger
payout that justifies the change.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from config import utcnow
from exceptions import BalanceInvariantError, ResourceNotFoundError
from models import CreatorBalance

BALANCE_BUCKETS = (
    "available_balance_cents",
    "pending_balance_cents",
    "locked_reserve_cents",
    "total_earned_cents",
)


async def get_creator_balance(session: AsyncSession, creator_id: int) -> Optional[CreatorBalance]:
    result = await session.exec(select(CreatorBalance).where(CreatorBalance.creator_id == creator_id))
    return result.first()


async def ensure_creator_balance(session: AsyncSession, creator_id: int) -> CreatorBalance:
    """Fetch the balance row, creating an empty one for a first-time creator."""
    balance = await get_creator_balance(session, creator_id)
    if balance is None:
        balance = CreatorBalance(creator_id=creator_id)
        session.add(balance)
        await session.flush()
    return balance


async def adjust_creator_balance(
    session: AsyncSession,
    creator_id: int,
    now: Optional[datetime] = None,
    **deltas: int,
) -> None:
    """
    Apply signed cent deltas to the named balance buckets.

    A bucket that a negative delta would take below zero aborts the whole
    update with BalanceInvariantError.
    """
    unknown = set(deltas) - set(BALANCE_BUCKETS)
    if unknown:
        raise ValueError(f"Unknown balance buckets: {sorted(unknown)}")

    deltas = {name: delta for name, delta in deltas.items() if delta}
    if not deltas:
        return

    stmt = update(CreatorBalance).where(CreatorBalance.creator_id == creator_id)
    for name, delta in deltas.items():
        column = getattr(CreatorBalance, name)
        if delta < 0:
            stmt = stmt.where(column >= -delta)
    values = {name: getattr(CreatorBalance, name) + delta for name, delta in deltas.items()}
    values["updated_at"] = now or utcnow()

    result = await session.execute(stmt.values(**values))
    if result.rowcount == 1:
        return

    if await get_creator_balance(session, creator_id) is None:
        raise ResourceNotFoundError("Creator balance not found", detail={"creator_id": creator_id})
    raise BalanceInvariantError(
        "Creator balance would go negative",
        detail={"creator_id": creator_id, "deltas": deltas},
    )
