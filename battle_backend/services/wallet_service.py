"""
Wallet service: balances and the wallet transaction ledger.

Consumed by reward distribution. Credits are applied with an atomic
``balance = balance + amount`` update so concurrent payouts don't lose writes.
"""

from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import Wallet, WalletTransaction, WalletTransactionType
from battle_backend.utils.datetime_utils import isoformat_or_none, utcnow
import logging

logger = logging.getLogger(__name__)


async def get_balance(session: AsyncSession, user_id: str) -> int:
    """
    Read a user's balance in SEK (0 if the user has no wallet yet).
    """
    result = await session.execute(select(Wallet.balance_sek).where(Wallet.user_id == user_id))
    balance = result.scalar_one_or_none()
    return balance or 0


async def set_balance(session: AsyncSession, user_id: str, balance_sek: int) -> int:
    """
    Overwrite a user's balance, creating the wallet if needed.

    Returns:
        The new balance
    """
    if balance_sek < 0:
        raise ValueError("Balance cannot be negative")

    result = await session.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance_sek=balance_sek)
        session.add(wallet)
    else:
        wallet.balance_sek = balance_sek
    await session.flush()
    return balance_sek


async def credit_balance(session: AsyncSession, user_id: str, amount_sek: int) -> int:
    """
    Add to a user's balance atomically, creating the wallet if needed.

    Args:
        session: Database session
        user_id: Wallet owner
        amount_sek: Amount to add (must be positive)

    Returns:
        The new balance
    """
    if amount_sek <= 0:
        raise ValueError("Credit amount must be positive")

    result = await session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance_sek=Wallet.balance_sek + amount_sek, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.add(Wallet(user_id=user_id, balance_sek=amount_sek))
        await session.flush()
        return amount_sek

    return await get_balance(session, user_id)


async def add_transaction(
    session: AsyncSession,
    user_id: str,
    amount_sek: int,
    type: str,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Dict:
    """
    Append a wallet transaction record.

    Args:
        session: Database session
        user_id: Wallet owner
        amount_sek: Signed amount
        type: WalletTransactionType enum value
        description: Human readable description
        reference_id: Related entity (e.g. battle match id)

    Returns:
        Dict with the transaction data
    """
    valid_types = {t.value for t in WalletTransactionType}
    if type not in valid_types:
        raise ValueError(f"Unknown wallet transaction type: {type}")

    transaction = WalletTransaction(
        user_id=user_id,
        amount_sek=amount_sek,
        type=type,
        description=description,
        reference_id=reference_id,
    )
    session.add(transaction)
    await session.flush()
    return _format_transaction(transaction)


async def get_transactions(session: AsyncSession, user_id: str, limit: int = 50) -> List[Dict]:
    """Most recent wallet transactions for a user."""
    result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(limit)
    )
    return [_format_transaction(t) for t in result.scalars().all()]


def _format_transaction(transaction: WalletTransaction) -> Dict:
    return {
        "id": transaction.id,
        "user_id": transaction.user_id,
        "amount_sek": transaction.amount_sek,
        "type": transaction.type,
        "description": transaction.description,
        "reference_id": transaction.reference_id,
        "created_at": isoformat_or_none(transaction.created_at),
    }
