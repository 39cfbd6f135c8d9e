import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .database import Database
from .errors import ReferralNotEligibleError
from .ledger import GemLedger
from .models import (
    ReferralRecord,
    ReferralStatus,
    VestedReferral,
    VestingSweep,
    VestResult,
    Wallet,
    WalletSnapshot,
)
from .tables import Referral, utc_now

logger = logging.getLogger(__name__)

MANUAL_VEST_REASON = "Manual admin vest"


def no_activity(user_id: str) -> int:
    return 0


class VestingEngine:
    """Releases a referrer's pending_referral gems into cashable, once per referral.

    The `vested` flag is flipped with a conditional update before any gems
    move; only the request that flips it performs the move.
    """

    def __init__(
        self,
        db: Database,
        ledger: GemLedger,
        conversation_count: Callable[[str], int] = no_activity,
        days_required: int = 30,
        chats_required: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ledger = ledger
        self.conversation_count = conversation_count
        self.days_required = days_required
        self.chats_required = chats_required
        self.clock = clock

    def vest(self, referrer_id: str, referred_id: str, reason: Optional[str] = None) -> VestResult:
        with self.db.transaction() as s:
            referral = s.execute(
                select(Referral).where(
                    Referral.referrer_user_id == referrer_id,
                    Referral.referred_user_id == referred_id,
                    Referral.status == ReferralStatus.REWARDED.value,
                )
            ).scalar_one_or_none()
            if referral is None:
                raise ReferralNotEligibleError(
                    f"No rewarded referral from {referrer_id} to {referred_id}"
                )
            return self._vest_referral(s, referral, reason or MANUAL_VEST_REASON)

    def vest_for_purchase(self, referred_id: str, purchase_type: str) -> Optional[VestResult]:
        """Vest the referrer's gems once the referred user pays for something."""
        with self.db.transaction() as s:
            referral = s.execute(
                select(Referral).where(
                    Referral.referred_user_id == referred_id,
                    Referral.status == ReferralStatus.REWARDED.value,
                    Referral.vested.is_(False),
                )
            ).scalar_one_or_none()
            if referral is None:
                logger.info("No unvested referral found for %s", referred_id)
                return None
            if (referral.gems_awarded_referrer or 0) <= 0:
                logger.info("No gems to vest for referral %s", referral.id)
                return None
            return self._vest_referral(s, referral, f"Referred user made {purchase_type}")

    def list_unvested(self) -> list[ReferralRecord]:
        with self.db.transaction() as s:
            rows = s.execute(
                select(Referral)
                .where(Referral.status == ReferralStatus.REWARDED.value, Referral.vested.is_(False))
                .order_by(Referral.created_at)
            ).scalars().all()
            return [ReferralRecord.model_validate(r) for r in rows]

    def vest_all_eligible(self, referrer_id: Optional[str] = None) -> VestingSweep:
        """Vest referrals rewarded long enough ago whose referred user has been active.

        Each referral vests in its own transaction so one failure does not
        undo the others.
        """
        cutoff = self.clock() - timedelta(days=self.days_required)
        query = select(Referral.id, Referral.referred_user_id).where(
            Referral.status == ReferralStatus.REWARDED.value,
            Referral.vested.is_(False),
            Referral.updated_at <= cutoff,
        )
        if referrer_id is not None:
            query = query.where(Referral.referrer_user_id == referrer_id)

        with self.db.transaction() as s:
            candidates = s.execute(query.order_by(Referral.updated_at)).all()

        sweep = VestingSweep()
        for referral_id, referred_id in candidates:
            conversations = self.conversation_count(referred_id)
            if conversations < self.chats_required:
                logger.info(
                    "Referral %s: only %d/%d conversations, skipping",
                    referral_id, conversations, self.chats_required,
                )
                continue

            reason = f"Time-based: {self.days_required}+ days and {conversations} conversations"
            with self.db.transaction() as s:
                referral = s.get(Referral, referral_id)
                result = self._vest_referral(s, referral, reason)
            if result.already_vested:
                continue
            sweep.vested_count += 1
            sweep.total_gems_vested += result.vested_amount
            sweep.details.append(VestedReferral(
                referrer_id=result.referrer_id,
                referred_id=result.referred_id,
                gems_vested=result.vested_amount,
            ))

        logger.info("Vested %d referrals (%d gems)", sweep.vested_count, sweep.total_gems_vested)
        return sweep

    def _vest_referral(self, s: Session, referral: Referral, reason: str) -> VestResult:
        referrer_id = referral.referrer_user_id
        if referral.vested:
            return self._already_vested(s, referral)

        claimed = s.execute(
            update(Referral)
            .where(Referral.id == referral.id, Referral.vested.is_(False))
            .values(vested=True, vested_at=self.clock(), vested_reason=reason)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            logger.info("Referral %s was vested by a concurrent request", referral.id)
            s.refresh(referral)
            return self._already_vested(s, referral)

        # bonuses may have raised gems_awarded_referrer since the row was read
        s.refresh(referral)
        move = self.ledger.move_between_wallets(
            referrer_id,
            Wallet.PENDING_REFERRAL,
            Wallet.CASHABLE,
            referral.gems_awarded_referrer or 0,
            description=f"Referral gems vested: {reason}",
            session=s,
        )
        logger.info("Vested %d gems for referrer %s (%s)", move.moved, referrer_id, reason)
        return VestResult(
            referrer_id=referrer_id,
            referred_id=referral.referred_user_id,
            vested_amount=move.moved,
            before=WalletSnapshot.of(move.before),
            after=WalletSnapshot.of(move.after),
            referral=ReferralRecord.model_validate(referral),
        )

    def _already_vested(self, s: Session, referral: Referral) -> VestResult:
        snapshot = WalletSnapshot.of(self.ledger.get_balance(referral.referrer_user_id, session=s))
        return VestResult(
            referrer_id=referral.referrer_user_id,
            referred_id=referral.referred_user_id,
            vested_amount=0,
            already_vested=True,
            before=snapshot,
            after=snapshot,
            referral=ReferralRecord.model_validate(referral),
        )
