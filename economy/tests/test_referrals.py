"""
Unit Tests for the referral lifecycle
"""

import pytest

from economy.errors import ReferralNotEligibleError, ReferralNotFoundError, SelfReferralError
from economy.models import ReferralStatus, Wallet
from economy.referrals import referral_code_for


REFERRER_ID = "550e8400-e29b-41d4-a716-446655440000"
REFERRED_ID = "660e8400-e29b-41d4-a716-446655440001"
OTHER_REFERRER_ID = "770e8400-e29b-41d4-a716-446655440002"


class TestClickAndSignup:

    def test_click_creates_clicked_referral(self, referrals):
        """Test that a click has no referred user yet."""
        record = referrals.record_click(REFERRER_ID)

        assert record.status == ReferralStatus.CLICKED
        assert record.referred_user_id is None
        assert record.referral_code == "550E8400"
        assert record.vested is False

    def test_referral_code_is_id_prefix(self):
        assert referral_code_for("abcdef12-3456") == "ABCDEF12"

    def test_signup_claims_latest_click(self, referrals, clock):
        """Test that signup attaches the referred user to the click row."""
        referrals.record_click(REFERRER_ID)
        clock.advance(minutes=5)
        latest = referrals.record_click(REFERRER_ID)

        record = referrals.record_signup(REFERRER_ID, REFERRED_ID)

        assert record.id == latest.id
        assert record.status == ReferralStatus.SIGNED_UP
        assert record.referred_user_id == REFERRED_ID

    def test_signup_without_click(self, referrals):
        """Test that a signup can be the first thing we see."""
        record = referrals.record_signup(REFERRER_ID, REFERRED_ID)

        assert record.status == ReferralStatus.SIGNED_UP
        assert record.referral_code == referral_code_for(REFERRER_ID)

    def test_self_referral_blocked(self, referrals):
        """Test that nobody can refer themselves."""
        with pytest.raises(SelfReferralError):
            referrals.record_signup(REFERRER_ID, REFERRER_ID)

    def test_repeated_signup_is_noop(self, referrals):
        """Test at-least-once delivery of the signup event."""
        first = referrals.record_signup(REFERRER_ID, REFERRED_ID)
        second = referrals.record_signup(REFERRER_ID, REFERRED_ID)

        assert second.id == first.id
        assert second.status == ReferralStatus.SIGNED_UP

    def test_first_attribution_wins(self, referrals):
        """Test that a second referrer cannot claim the same user."""
        first = referrals.record_signup(REFERRER_ID, REFERRED_ID)
        second = referrals.record_signup(OTHER_REFERRER_ID, REFERRED_ID)

        assert second.id == first.id
        assert second.referrer_user_id == REFERRER_ID


class TestActivationAndRewards:

    def test_mark_active(self, referrals):
        """Test signed_up -> active."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)

        record = referrals.mark_active(REFERRED_ID)

        assert record.status == ReferralStatus.ACTIVE

    def test_mark_active_unknown_user(self, referrals):
        """Test that activating an unknown referral fails."""
        with pytest.raises(ReferralNotFoundError):
            referrals.mark_active(REFERRED_ID)

    def test_grant_rewards_credits_both_sides(self, referrals, ledger):
        """Test the referrer's share goes to pending_referral, not spendable."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.mark_active(REFERRED_ID)

        record = referrals.grant_rewards(REFERRED_ID)

        assert record.status == ReferralStatus.REWARDED
        assert record.gems_awarded_referrer == 500
        assert record.gems_awarded_referred == 500
        assert record.vested is False

        referrer = ledger.get_balance(REFERRER_ID)
        assert referrer.pending_referral == 500
        assert referrer.spendable == 0
        assert referrer.cashable == 0

        referred = ledger.get_balance(REFERRED_ID)
        assert referred.promo == 500
        assert referred.pending_referral == 0

    def test_grant_rewards_twice_credits_once(self, referrals, ledger):
        """Test that a duplicate reward event is a no-op."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.grant_rewards(REFERRED_ID)
        record = referrals.grant_rewards(REFERRED_ID)

        assert record.status == ReferralStatus.REWARDED
        assert ledger.get_balance(REFERRER_ID).get(Wallet.PENDING_REFERRAL) == 500
        assert ledger.get_history(REFERRER_ID).total_count == 1
        assert ledger.get_history(REFERRED_ID).total_count == 1

    def test_status_never_moves_backward(self, referrals):
        """Test that late activity events leave a rewarded referral alone."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.grant_rewards(REFERRED_ID)

        assert referrals.mark_active(REFERRED_ID).status == ReferralStatus.REWARDED
        assert referrals.record_signup(REFERRER_ID, REFERRED_ID).status == ReferralStatus.REWARDED

    def test_get_referral(self, referrals):
        referrals.record_signup(REFERRER_ID, REFERRED_ID)

        assert referrals.get_referral(REFERRER_ID, REFERRED_ID).referred_user_id == REFERRED_ID
        with pytest.raises(ReferralNotFoundError):
            referrals.get_referral(OTHER_REFERRER_ID, REFERRED_ID)


class TestFollowOnBonuses:

    def test_purchase_bonus_credits_once(self, referrals, ledger):
        """Test that the first-purchase bonus is paid a single time."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.grant_rewards(REFERRED_ID)

        referrals.grant_purchase_bonus(REFERRED_ID)
        record = referrals.grant_purchase_bonus(REFERRED_ID)

        assert record.first_purchase_rewarded is True
        assert record.gems_awarded_referrer == 750
        assert record.gems_awarded_referred == 600

        # Referrer's share waits for vesting like the signup reward
        referrer = ledger.get_balance(REFERRER_ID)
        assert referrer.pending_referral == 750
        assert referrer.cashable == 0
        assert ledger.get_balance(REFERRED_ID).promo == 600
        assert ledger.get_history(REFERRER_ID).total_count == 2

    def test_purchase_bonus_requires_reward(self, referrals, ledger):
        """Test that a referral still at signed_up earns no purchase bonus."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)

        with pytest.raises(ReferralNotEligibleError):
            referrals.grant_purchase_bonus(REFERRED_ID)

        assert ledger.get_balance(REFERRER_ID).pending_referral == 0

    def test_bonus_without_referral(self, referrals):
        with pytest.raises(ReferralNotFoundError):
            referrals.grant_purchase_bonus(REFERRED_ID)
        with pytest.raises(ReferralNotFoundError):
            referrals.grant_subscription_bonus(REFERRED_ID)

    def test_subscription_bonus_credits_once(self, referrals, ledger):
        """Test the subscription bonus, paid once per referral."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.grant_rewards(REFERRED_ID)

        referrals.grant_subscription_bonus(REFERRED_ID)
        record = referrals.grant_subscription_bonus(REFERRED_ID)

        assert record.subscription_rewarded is True
        assert record.first_purchase_rewarded is False
        assert record.gems_awarded_referrer == 1500
        assert ledger.get_balance(REFERRER_ID).pending_referral == 1500
        assert ledger.get_balance(REFERRED_ID).promo == 1000

    def test_subscription_before_reward_adds_up(self, referrals, ledger):
        """Test that the signup reward adds to an earlier subscription bonus."""
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.grant_subscription_bonus(REFERRED_ID)

        record = referrals.grant_rewards(REFERRED_ID)

        assert record.gems_awarded_referrer == 1500
        assert record.gems_awarded_referred == 1000
        assert ledger.get_balance(REFERRER_ID).pending_referral == 1500
        assert ledger.reconcile(REFERRER_ID).balanced


class TestStats:

    def test_stats(self, referrals):
        """Test click/signup/active counts and gem totals."""
        referrals.record_click(REFERRER_ID)
        referrals.record_click(REFERRER_ID)
        referrals.record_signup(REFERRER_ID, REFERRED_ID)
        referrals.grant_rewards(REFERRED_ID)

        stats = referrals.get_stats(REFERRER_ID)

        assert stats.clicks == 2
        assert stats.signups == 1
        assert stats.active == 1
        assert stats.gems_earned == 500
        assert stats.gems_pending == 500
        assert stats.gems_vested == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
