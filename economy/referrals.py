"""
Referral lifecycle: clicked -> signed_up -> active -> rewarded.

Transitions only move forward. Asking for a state the referral has already
reached (or passed) returns the row unchanged, so triggering events can be
delivered more than once.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .database import Database
from .errors import ReferralNotEligibleError, ReferralNotFoundError, SelfReferralError
from .ledger import GemLedger
from .models import ReferralRecord, ReferralStats, ReferralStatus, TransactionType, Wallet
from .tables import Referral, utc_now

logger = logging.getLogger(__name__)


def referral_code_for(user_id: str) -> str:
    return user_id[:8].upper()


class ReferralService:
    def __init__(
        self,
        db: Database,
        ledger: GemLedger,
        referrer_reward: int = 500,
        referred_reward: int = 500,
        purchase_bonus_referrer: int = 250,
        purchase_bonus_referred: int = 100,
        subscription_bonus_referrer: int = 1000,
        subscription_bonus_referred: int = 500,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ledger = ledger
        self.referrer_reward = referrer_reward
        self.referred_reward = referred_reward
        self.purchase_bonus_referrer = purchase_bonus_referrer
        self.purchase_bonus_referred = purchase_bonus_referred
        self.subscription_bonus_referrer = subscription_bonus_referrer
        self.subscription_bonus_referred = subscription_bonus_referred
        self.clock = clock

    def record_click(self, referrer_id: str, referral_code: Optional[str] = None) -> ReferralRecord:
        code = (referral_code or referral_code_for(referrer_id)).upper()
        with self.db.transaction() as s:
            now = self.clock()
            referral = Referral(
                referrer_user_id=referrer_id,
                referral_code=code,
                status=ReferralStatus.CLICKED.value,
                created_at=now,
                updated_at=now,
            )
            s.add(referral)
            s.flush()
            record = ReferralRecord.model_validate(referral)

        logger.info("Referral click tracked for code %s", code)
        return record

    def record_signup(self, referrer_id: str, referred_id: str, referral_code: Optional[str] = None) -> ReferralRecord:
        if referrer_id == referred_id:
            logger.warning("Blocked self-referral attempt by %s", referred_id)
            raise SelfReferralError("Self-referral not allowed")

        code = (referral_code or referral_code_for(referrer_id)).upper()
        with self.db.transaction() as s:
            now = self.clock()
            existing = self._find_by_referred(s, referred_id)
            if existing is not None:
                if existing.referrer_user_id != referrer_id:
                    logger.info(
                        "%s already attributed to %s, ignoring signup via %s",
                        referred_id, existing.referrer_user_id, referrer_id,
                    )
                else:
                    self._advance(existing, ReferralStatus.SIGNED_UP, now)
                return ReferralRecord.model_validate(existing)

            referral = s.execute(
                select(Referral)
                .where(
                    Referral.referrer_user_id == referrer_id,
                    Referral.referral_code == code,
                    Referral.status == ReferralStatus.CLICKED.value,
                    Referral.referred_user_id.is_(None),
                )
                .order_by(Referral.created_at.desc())
                .limit(1)
                .with_for_update()
            ).scalar_one_or_none()
            if referral is None:
                referral = Referral(referrer_user_id=referrer_id, referral_code=code, created_at=now)
                s.add(referral)

            referral.referred_user_id = referred_id
            referral.status = ReferralStatus.SIGNED_UP.value
            referral.updated_at = now
            s.flush()
            record = ReferralRecord.model_validate(referral)

        logger.info("Referral signup tracked: %s referred by %s", referred_id, referrer_id)
        return record

    def mark_active(self, referred_id: str) -> ReferralRecord:
        with self.db.transaction() as s:
            referral = self._get_by_referred(s, referred_id)
            if self._advance(referral, ReferralStatus.ACTIVE, self.clock()):
                logger.info("Referral for %s is now active", referred_id)
            s.flush()
            return ReferralRecord.model_validate(referral)

    def grant_rewards(self, referred_id: str) -> ReferralRecord:
        """Reward both sides once.

        The referred user gets promo gems right away. The referrer's share
        lands in `pending_referral` and only becomes cashable when vested.
        """
        with self.db.transaction() as s:
            referral = self._get_by_referred(s, referred_id)
            if referral.status == ReferralStatus.REWARDED.value:
                return ReferralRecord.model_validate(referral)

            claimed = s.execute(
                update(Referral)
                .where(
                    Referral.id == referral.id,
                    Referral.status.in_([ReferralStatus.SIGNED_UP.value, ReferralStatus.ACTIVE.value]),
                )
                .values(
                    status=ReferralStatus.REWARDED.value,
                    gems_awarded_referrer=Referral.gems_awarded_referrer + self.referrer_reward,
                    gems_awarded_referred=Referral.gems_awarded_referred + self.referred_reward,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed:
                if self.referred_reward > 0:
                    self.ledger.credit(
                        referred_id, Wallet.PROMO, self.referred_reward, TransactionType.REFERRAL_BONUS,
                        "Welcome bonus - signed up with referral link", session=s,
                    )
                if self.referrer_reward > 0:
                    self.ledger.credit(
                        referral.referrer_user_id, Wallet.PENDING_REFERRAL, self.referrer_reward,
                        TransactionType.REFERRAL_BONUS,
                        "Referral bonus - friend completed first chat (pending vesting)", session=s,
                    )
                logger.info(
                    "Referral rewarded: %s +%d pending, %s +%d promo",
                    referral.referrer_user_id, self.referrer_reward, referred_id, self.referred_reward,
                )

            s.refresh(referral)
            return ReferralRecord.model_validate(referral)

    def grant_purchase_bonus(self, referred_id: str) -> ReferralRecord:
        """Pay both sides once for the referred user's first purchase.

        Only a rewarded referral qualifies.
        """
        return self._grant_bonus(
            referred_id,
            Referral.first_purchase_rewarded,
            self.purchase_bonus_referrer,
            self.purchase_bonus_referred,
            referrer_note="Referral bonus - friend made first purchase",
            referred_note="Bonus gems for first purchase",
            rewarded_only=True,
        )

    def grant_subscription_bonus(self, referred_id: str) -> ReferralRecord:
        return self._grant_bonus(
            referred_id,
            Referral.subscription_rewarded,
            self.subscription_bonus_referrer,
            self.subscription_bonus_referred,
            referrer_note="Referral bonus - friend subscribed",
            referred_note="Bonus gems for subscribing",
        )

    def _grant_bonus(
        self,
        referred_id: str,
        flag,
        referrer_bonus: int,
        referred_bonus: int,
        referrer_note: str,
        referred_note: str,
        rewarded_only: bool = False,
    ) -> ReferralRecord:
        with self.db.transaction() as s:
            # row lock orders the bonus against a concurrent vest
            referral = s.execute(
                select(Referral)
                .where(Referral.referred_user_id == referred_id)
                .order_by(Referral.created_at)
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if referral is None:
                raise ReferralNotFoundError(f"No referral found for user {referred_id}")
            if rewarded_only and referral.status != ReferralStatus.REWARDED.value:
                raise ReferralNotEligibleError(f"Referral for {referred_id} has not been rewarded yet")
            if getattr(referral, flag.key):
                return ReferralRecord.model_validate(referral)

            claimed = s.execute(
                update(Referral)
                .where(Referral.id == referral.id, flag.is_(False))
                .values({
                    flag.key: True,
                    "gems_awarded_referrer": Referral.gems_awarded_referrer + referrer_bonus,
                    "gems_awarded_referred": Referral.gems_awarded_referred + referred_bonus,
                })
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed:
                # Unvested referrer gems wait in pending_referral for the vest
                referrer_wallet = Wallet.CASHABLE if referral.vested else Wallet.PENDING_REFERRAL
                if referrer_bonus > 0:
                    self.ledger.credit(
                        referral.referrer_user_id, referrer_wallet, referrer_bonus,
                        TransactionType.REFERRAL_BONUS, referrer_note, session=s,
                    )
                if referred_bonus > 0:
                    self.ledger.credit(
                        referred_id, Wallet.PROMO, referred_bonus,
                        TransactionType.REFERRAL_BONUS, referred_note, session=s,
                    )
                logger.info(
                    "%s granted: %s +%d %s, %s +%d promo",
                    flag.key, referral.referrer_user_id, referrer_bonus, referrer_wallet.value,
                    referred_id, referred_bonus,
                )

            s.refresh(referral)
            return ReferralRecord.model_validate(referral)

    def get_referral(self, referrer_id: str, referred_id: str) -> ReferralRecord:
        with self.db.transaction() as s:
            referral = s.execute(
                select(Referral).where(
                    Referral.referrer_user_id == referrer_id,
                    Referral.referred_user_id == referred_id,
                )
            ).scalar_one_or_none()
            if referral is None:
                raise ReferralNotFoundError(f"No referral from {referrer_id} to {referred_id}")
            return ReferralRecord.model_validate(referral)

    def get_stats(self, referrer_id: str) -> ReferralStats:
        with self.db.transaction() as s:
            rows = s.execute(
                select(Referral).where(Referral.referrer_user_id == referrer_id)
            ).scalars().all()

        stats = ReferralStats(user_id=referrer_id, clicks=len(rows))
        for r in rows:
            if r.status != ReferralStatus.CLICKED.value:
                stats.signups += 1
            if r.status in (ReferralStatus.ACTIVE.value, ReferralStatus.REWARDED.value):
                stats.active += 1
            stats.gems_earned += r.gems_awarded_referrer or 0
            if r.status == ReferralStatus.REWARDED.value:
                if r.vested:
                    stats.gems_vested += r.gems_awarded_referrer or 0
                else:
                    stats.gems_pending += r.gems_awarded_referrer or 0
        return stats

    def _find_by_referred(self, s: Session, referred_id: str) -> Optional[Referral]:
        return s.execute(
            select(Referral)
            .where(Referral.referred_user_id == referred_id)
            .order_by(Referral.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def _get_by_referred(self, s: Session, referred_id: str) -> Referral:
        referral = self._find_by_referred(s, referred_id)
        if referral is None:
            raise ReferralNotFoundError(f"No referral found for user {referred_id}")
        return referral

    @staticmethod
    def _advance(referral: Referral, target: ReferralStatus, now: datetime) -> bool:
        if ReferralStatus(referral.status).rank >= target.rank:
            return False
        referral.status = target.value
        referral.updated_at = now
        return True
