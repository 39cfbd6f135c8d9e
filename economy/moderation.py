import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import distinct, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import Database
from .errors import DuplicateReportError, InvalidCategoryError, SelfReportError
from .models import (
    ReportCategory,
    ReportOutcome,
    SuspensionCheck,
    SuspensionRecord,
    SuspensionStatus,
)
from .tables import ReportCooldown, UserReport, UserSuspension, utc_now

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 500

_BLOCK_TAGS = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r"<[^>]*>")
_SCRIPT_PROTOCOLS = re.compile(r"(javascript|vbscript|data\s*:\s*text/html)\s*:?", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SPACES = re.compile(r"[ \t]+")


def clean_description(text: Optional[str], max_length: int = DESCRIPTION_MAX_LENGTH) -> Optional[str]:
    if not text:
        return None
    clean = _BLOCK_TAGS.sub("", text)
    clean = _TAGS.sub("", clean)
    clean = _SCRIPT_PROTOCOLS.sub("", clean)
    clean = _CONTROL_CHARS.sub("", clean)
    clean = _SPACES.sub(" ", clean).strip()
    return clean[:max_length] or None


class SuspensionEngine:
    """Suspends a user once enough distinct people have reported them recently."""

    def __init__(
        self,
        db: Database,
        threshold: int = 3,
        window_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.threshold = threshold
        self.window_days = window_days
        self.clock = clock

    def count_distinct_reporters(self, reported_id: str, session: Optional[Session] = None) -> int:
        since = self.clock() - timedelta(days=self.window_days)
        with self.db.transaction(session) as s:
            return s.execute(
                select(func.count(distinct(UserReport.reporter_id))).where(
                    UserReport.reported_id == reported_id,
                    UserReport.created_at >= since,
                )
            ).scalar_one()

    def evaluate(self, reported_id: str, session: Optional[Session] = None) -> SuspensionCheck:
        with self.db.transaction(session) as s:
            count = self.count_distinct_reporters(reported_id, session=s)
            if count < self.threshold:
                return SuspensionCheck(report_count=count, suspended=False)

            if self._active(s, reported_id) is not None:
                return SuspensionCheck(report_count=count, suspended=False)

            now = self.clock()
            try:
                with s.begin_nested():
                    s.add(UserSuspension(
                        user_id=reported_id,
                        reason=(
                            f"Auto-suspended: {count} reports from different users "
                            f"in {self.window_days} days"
                        ),
                        suspended_by="system",
                        is_active=True,
                        expires_at=None,
                        created_at=now,
                    ))
            except IntegrityError:
                logger.info("%s was suspended by a concurrent report", reported_id)
                return SuspensionCheck(report_count=count, suspended=False)

        logger.warning("AUTO-SUSPENDED: user %s (%d reports)", reported_id, count)
        return SuspensionCheck(report_count=count, suspended=True)

    def get_active_suspension(self, user_id: str) -> Optional[SuspensionRecord]:
        with self.db.transaction() as s:
            suspension = s.execute(
                select(UserSuspension)
                .where(
                    UserSuspension.user_id == user_id,
                    UserSuspension.is_active.is_(True),
                    or_(UserSuspension.expires_at.is_(None), UserSuspension.expires_at > self.clock()),
                )
                .order_by(UserSuspension.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return SuspensionRecord.model_validate(suspension) if suspension else None

    def check(self, user_id: str) -> SuspensionStatus:
        suspension = self.get_active_suspension(user_id)
        return SuspensionStatus(is_suspended=suspension is not None, suspension=suspension)

    def _active(self, s: Session, user_id: str) -> Optional[UserSuspension]:
        return s.execute(
            select(UserSuspension)
            .where(UserSuspension.user_id == user_id, UserSuspension.is_active.is_(True))
            .limit(1)
        ).scalar_one_or_none()


class ReportService:
    def __init__(
        self,
        db: Database,
        suspensions: SuspensionEngine,
        cooldown_hours: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.suspensions = suspensions
        self.cooldown_hours = cooldown_hours
        self.clock = clock

    def submit_report(
        self,
        reporter_id: str,
        reported_id: str,
        category: str,
        room_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ReportOutcome:
        if reporter_id == reported_id:
            raise SelfReportError("Cannot report yourself")
        try:
            category = ReportCategory(category)
        except ValueError:
            valid = ", ".join(c.value for c in ReportCategory)
            raise InvalidCategoryError(f"Category must be one of: {valid}") from None

        with self.db.transaction() as s:
            now = self.clock()
            if not self._claim_cooldown(s, reporter_id, reported_id, now):
                logger.info("Duplicate report from %s against %s rejected", reporter_id, reported_id)
                raise DuplicateReportError("You already reported this user recently")

            report = UserReport(
                reporter_id=reporter_id,
                reported_id=reported_id,
                room_id=room_id or None,
                category=category.value,
                description=clean_description(description),
                created_at=now,
            )
            s.add(report)
            s.flush()
            logger.info("Report submitted: %s reported %s for %s", reporter_id, reported_id, category.value)

            check = self.suspensions.evaluate(reported_id, session=s)

        return ReportOutcome(
            report_id=report.id,
            report_count=check.report_count,
            user_suspended=check.suspended,
        )

    def _claim_cooldown(self, s: Session, reporter_id: str, reported_id: str, now: datetime) -> bool:
        """Take the pair's cooldown slot; False while an earlier report still holds it.

        The slot is claimed with a conditional update or a primary-key insert,
        so two concurrent reports for the same pair cannot both succeed.
        """
        claimed = s.execute(
            update(ReportCooldown)
            .where(
                ReportCooldown.reporter_id == reporter_id,
                ReportCooldown.reported_id == reported_id,
                ReportCooldown.last_reported_at < now - timedelta(hours=self.cooldown_hours),
            )
            .values(last_reported_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed:
            return True
        try:
            with s.begin_nested():
                s.add(ReportCooldown(reporter_id=reporter_id, reported_id=reported_id, last_reported_at=now))
        except IntegrityError:
            return False
        return True
