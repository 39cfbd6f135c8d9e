import logging
import re
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import Database
from .errors import InvalidAmountError, InvalidWalletError
from .models import (
    CreditResult,
    LedgerEntry,
    LedgerHistoryResponse,
    ReconciliationReport,
    TransactionType,
    Wallet,
    WalletBalance,
    WalletMove,
    WalletReconciliation,
)
from .tables import GemBalance, GemTransaction, utc_now

logger = logging.getLogger(__name__)

# wallet columns are 32-bit INTEGER
MAX_AMOUNT = 2**31 - 1

_DIGITS = re.compile(r"\d+", re.ASCII)


def coerce_amount(value: Any) -> int:
    """Accept a positive whole number of gems, or its decimal string form."""
    if isinstance(value, bool):
        raise InvalidAmountError(f"amount must be a positive integer, got {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float) and value.is_integer():
        amount = int(value)
    elif isinstance(value, str) and _DIGITS.fullmatch(value.strip()):
        amount = int(value.strip())
    else:
        raise InvalidAmountError(f"amount must be a positive integer, got {value!r}")
    if amount <= 0 or amount > MAX_AMOUNT:
        raise InvalidAmountError(f"amount must be between 1 and {MAX_AMOUNT}, got {amount}")
    return amount


def coerce_wallet(value: Any) -> Wallet:
    try:
        return Wallet(value)
    except ValueError:
        raise InvalidWalletError(f"Unknown wallet {value!r}") from None


class GemLedger:
    """Wallet balances plus the append-only transaction log behind them.

    Every public operation is one transaction against the store. Pass
    `session=` to run inside a caller's transaction instead.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def credit(
        self,
        user_id: str,
        wallet: Wallet,
        amount: Any,
        transaction_type: TransactionType = TransactionType.CREDIT,
        description: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> int:
        amount = coerce_amount(amount)
        wallet = coerce_wallet(wallet)
        transaction_type = TransactionType(transaction_type)
        description = description or f"{transaction_type.value}: {amount} gems"

        with self.db.transaction(session) as s:
            now = self.clock()
            self._ensure_balance(s, user_id, now)
            column = getattr(GemBalance, wallet.value)
            s.execute(
                update(GemBalance)
                .where(GemBalance.user_id == user_id)
                .values({wallet.value: column + amount, "updated_at": now})
                .execution_options(synchronize_session=False)
            )
            self._append(s, user_id, transaction_type, amount, wallet, None, description, now)
            new_balance = s.execute(
                select(column).where(GemBalance.user_id == user_id)
            ).scalar_one()

        logger.info("Credited %d gems to %s/%s, new balance %d", amount, user_id, wallet.value, new_balance)
        return new_balance

    def credit_gems(self, user_id: str, amount: Any, reason: Optional[str] = None) -> CreditResult:
        amount = coerce_amount(amount)
        new_balance = self.credit(
            user_id,
            Wallet.SPENDABLE,
            amount,
            TransactionType.CREDIT,
            reason or f"Manual credit: {amount} gems",
        )
        return CreditResult(user_id=user_id, credited=amount, new_balance=new_balance)

    def move_between_wallets(
        self,
        user_id: str,
        from_wallet: Wallet,
        to_wallet: Wallet,
        amount: int,
        description: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> WalletMove:
        """Move up to `amount` gems; the move is clamped to what `from_wallet` holds."""
        from_wallet = coerce_wallet(from_wallet)
        to_wallet = coerce_wallet(to_wallet)
        if from_wallet == to_wallet:
            raise InvalidWalletError(f"Cannot move gems from {from_wallet.value} to itself")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidAmountError(f"amount must be a non-negative integer, got {amount!r}")

        with self.db.transaction(session) as s:
            now = self.clock()
            self._ensure_balance(s, user_id, now)
            row = s.execute(
                select(GemBalance)
                .where(GemBalance.user_id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            before = WalletBalance.model_validate(row)

            available = getattr(row, from_wallet.value)
            moved = min(amount, available)
            if moved < amount:
                logger.warning(
                    "Clamped move for %s: requested %d from %s but only %d available",
                    user_id, amount, from_wallet.value, available,
                )

            entry = None
            if moved > 0:
                setattr(row, from_wallet.value, available - moved)
                setattr(row, to_wallet.value, getattr(row, to_wallet.value) + moved)
                row.updated_at = now
                entry = self._append(
                    s, user_id, TransactionType.VEST, moved, to_wallet, from_wallet,
                    description or f"Moved {moved} gems from {from_wallet.value} to {to_wallet.value}",
                    now,
                )
            after = WalletBalance.model_validate(row)

        return WalletMove(user_id=user_id, requested=amount, moved=moved, before=before, after=after, entry=entry)

    def get_balance(self, user_id: str, session: Optional[Session] = None) -> WalletBalance:
        with self.db.transaction(session) as s:
            row = s.execute(
                select(GemBalance)
                .where(GemBalance.user_id == user_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if row is None:
                return WalletBalance(user_id=user_id)
            return WalletBalance.model_validate(row)

    def get_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.db.transaction() as s:
            total = s.execute(
                select(func.count()).select_from(GemTransaction).where(GemTransaction.user_id == user_id)
            ).scalar_one()
            rows = s.execute(
                select(GemTransaction)
                .where(GemTransaction.user_id == user_id)
                .order_by(GemTransaction.created_at.desc(), GemTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            entries = [LedgerEntry.model_validate(r) for r in rows]
            balance = self.get_balance(user_id, session=s)

        return LedgerHistoryResponse(user_id=user_id, entries=entries, total_count=total, balance=balance)

    def reconcile(self, user_id: str) -> ReconciliationReport:
        """Compare each wallet against the sum of its transactions."""
        with self.db.transaction() as s:
            credited = dict(s.execute(
                select(GemTransaction.wallet, func.sum(GemTransaction.amount))
                .where(GemTransaction.user_id == user_id)
                .group_by(GemTransaction.wallet)
            ).all())
            debited = dict(s.execute(
                select(GemTransaction.source_wallet, func.sum(GemTransaction.amount))
                .where(GemTransaction.user_id == user_id, GemTransaction.source_wallet.is_not(None))
                .group_by(GemTransaction.source_wallet)
            ).all())
            balance = self.get_balance(user_id, session=s)

        wallets = [
            WalletReconciliation(
                wallet=wallet,
                ledger_total=(credited.get(wallet.value) or 0) - (debited.get(wallet.value) or 0),
                balance=balance.get(wallet),
            )
            for wallet in Wallet
        ]
        report = ReconciliationReport(user_id=user_id, wallets=wallets)
        if not report.balanced:
            logger.error("Ledger out of balance for %s: %s", user_id, [w.model_dump() for w in wallets if not w.in_sync])
        return report

    def _ensure_balance(self, s: Session, user_id: str, now: datetime) -> None:
        exists = s.execute(select(GemBalance.user_id).where(GemBalance.user_id == user_id)).first()
        if exists is not None:
            return
        try:
            with s.begin_nested():
                s.add(GemBalance(user_id=user_id, created_at=now, updated_at=now))
        except IntegrityError:
            # created by a concurrent request between the check and the insert
            logger.debug("Balance row for %s already exists", user_id)

    def _append(
        self,
        s: Session,
        user_id: str,
        transaction_type: TransactionType,
        amount: int,
        wallet: Wallet,
        source_wallet: Optional[Wallet],
        description: str,
        now: datetime,
    ) -> LedgerEntry:
        tx = GemTransaction(
            user_id=user_id,
            transaction_type=transaction_type.value,
            amount=amount,
            wallet=wallet.value,
            source_wallet=source_wallet.value if source_wallet else None,
            description=description,
            created_at=now,
        )
        s.add(tx)
        s.flush()
        return LedgerEntry.model_validate(tx)
