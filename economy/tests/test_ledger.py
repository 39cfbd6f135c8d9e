"""
Unit Tests for the Gem Ledger

Tests cover:
1. Credit flow
2. Amount validation
3. Moves between wallets (vesting)
4. Reconciliation against the transaction log
5. History
"""

import pytest

from economy.errors import InvalidAmountError, InvalidWalletError
from economy.models import TransactionType, Wallet


# Test constants
USER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_USER_ID = "660e8400-e29b-41d4-a716-446655440001"


class TestCreditFlow:
    """Tests for crediting gems."""

    def test_credit_creates_balance_row(self, ledger):
        """Test that crediting an unknown user creates their balance."""
        new_balance = ledger.credit(USER_ID, Wallet.SPENDABLE, 100, TransactionType.PURCHASE, "Gem pack")

        assert new_balance == 100

        balance = ledger.get_balance(USER_ID)
        assert balance.spendable == 100
        assert balance.cashable == 0
        assert balance.promo == 0
        assert balance.pending_referral == 0

        # Exactly one transaction with the same amount
        history = ledger.get_history(USER_ID)
        assert history.total_count == 1
        entry = history.entries[0]
        assert entry.amount == 100
        assert entry.wallet == Wallet.SPENDABLE
        assert entry.transaction_type == TransactionType.PURCHASE
        assert entry.description == "Gem pack"
        assert entry.source_wallet is None

    def test_multiple_credits_accumulate(self, ledger):
        """Test that credits add up and each one is logged."""
        ledger.credit(USER_ID, Wallet.SPENDABLE, 100)
        new_balance = ledger.credit(USER_ID, Wallet.SPENDABLE, 250)

        assert new_balance == 350
        assert ledger.get_history(USER_ID).total_count == 2

    def test_credit_only_touches_named_wallet(self, ledger):
        """Test that other wallets and other users are unaffected."""
        ledger.credit(USER_ID, Wallet.SPENDABLE, 40)
        ledger.credit(USER_ID, Wallet.PROMO, 60)

        balance = ledger.get_balance(USER_ID)
        assert balance.spendable == 40
        assert balance.promo == 60
        assert balance.cashable == 0
        assert ledger.get_balance(OTHER_USER_ID).spendable == 0

    @pytest.mark.parametrize(
        "amount",
        [0, -5, "abc", None, 1.5, True, "", "-3", [10], "²", "5²", "①", 1e300, 2**31, str(2**40)],
    )
    def test_invalid_amount_rejected(self, ledger, amount):
        """Test that non-positive or non-numeric amounts leave everything unchanged."""
        ledger.credit(USER_ID, Wallet.SPENDABLE, 10)

        with pytest.raises(InvalidAmountError):
            ledger.credit(USER_ID, Wallet.SPENDABLE, amount)

        assert ledger.get_balance(USER_ID).spendable == 10
        assert ledger.get_history(USER_ID).total_count == 1

    def test_numeric_string_amount_accepted(self, ledger):
        """Test that a whole-number string is parsed."""
        assert ledger.credit(USER_ID, Wallet.SPENDABLE, "25") == 25

    def test_unknown_wallet_rejected(self, ledger):
        """Test that only the four wallets can be credited."""
        with pytest.raises(InvalidWalletError):
            ledger.credit(USER_ID, "savings", 10)

    def test_credit_gems_operation(self, ledger):
        """Test the admin credit operation."""
        result = ledger.credit_gems(USER_ID, 50, "Missing purchase credit")

        assert result.credited == 50
        assert result.new_balance == 50
        assert ledger.get_history(USER_ID).entries[0].description == "Missing purchase credit"

    def test_credit_gems_default_reason(self, ledger):
        """Test the default description for admin credits."""
        ledger.credit_gems(USER_ID, "75")

        entry = ledger.get_history(USER_ID).entries[0]
        assert entry.description == "Manual credit: 75 gems"
        assert entry.transaction_type == TransactionType.CREDIT


class TestMoveBetweenWallets:
    """Tests for moving gems from one wallet to another."""

    def test_move_full_amount(self, ledger):
        """Test moving gems that are fully available."""
        ledger.credit(USER_ID, Wallet.PENDING_REFERRAL, 100, TransactionType.REFERRAL_BONUS)

        move = ledger.move_between_wallets(USER_ID, Wallet.PENDING_REFERRAL, Wallet.CASHABLE, 100)

        assert move.moved == 100
        assert not move.clamped
        assert move.before.pending_referral == 100
        assert move.after.pending_referral == 0
        assert move.after.cashable == 100

        # One vest transaction recording both sides
        assert move.entry is not None
        assert move.entry.transaction_type == TransactionType.VEST
        assert move.entry.wallet == Wallet.CASHABLE
        assert move.entry.source_wallet == Wallet.PENDING_REFERRAL

    def test_move_clamps_to_available(self, ledger):
        """Test that a move never drives the source wallet negative."""
        ledger.credit(USER_ID, Wallet.PENDING_REFERRAL, 40)

        move = ledger.move_between_wallets(USER_ID, Wallet.PENDING_REFERRAL, Wallet.CASHABLE, 100)

        assert move.moved == 40
        assert move.clamped
        balance = ledger.get_balance(USER_ID)
        assert balance.pending_referral == 0
        assert balance.cashable == 40

    def test_move_with_empty_source(self, ledger):
        """Test that nothing is logged when there is nothing to move."""
        move = ledger.move_between_wallets(USER_ID, Wallet.PENDING_REFERRAL, Wallet.CASHABLE, 100)

        assert move.moved == 0
        assert move.entry is None
        assert ledger.get_history(USER_ID).total_count == 0

    def test_move_to_same_wallet_rejected(self, ledger):
        """Test that source and destination must differ."""
        with pytest.raises(InvalidWalletError):
            ledger.move_between_wallets(USER_ID, Wallet.CASHABLE, Wallet.CASHABLE, 10)

    def test_negative_move_rejected(self, ledger):
        """Test that negative moves are refused."""
        with pytest.raises(InvalidAmountError):
            ledger.move_between_wallets(USER_ID, Wallet.PENDING_REFERRAL, Wallet.CASHABLE, -1)


class TestReconciliation:
    """Tests for reconciling balances with the transaction log."""

    def test_balances_match_transactions(self, ledger):
        """Test that credits and clamped moves keep every wallet reconciled."""
        ledger.credit(USER_ID, Wallet.SPENDABLE, 100)
        ledger.credit(USER_ID, Wallet.PENDING_REFERRAL, 60)
        ledger.move_between_wallets(USER_ID, Wallet.PENDING_REFERRAL, Wallet.CASHABLE, 200)

        report = ledger.reconcile(USER_ID)

        assert report.balanced
        totals = {w.wallet: w.ledger_total for w in report.wallets}
        assert totals[Wallet.SPENDABLE] == 100
        assert totals[Wallet.PENDING_REFERRAL] == 0
        assert totals[Wallet.CASHABLE] == 60

    def test_unknown_user_reconciles(self, ledger):
        """Test that a user with no activity is trivially balanced."""
        assert ledger.reconcile(OTHER_USER_ID).balanced


class TestHistory:
    """Tests for transaction history."""

    def test_history_newest_first(self, ledger, clock):
        """Test ordering and pagination."""
        ledger.credit(USER_ID, Wallet.SPENDABLE, 10)
        clock.advance(minutes=1)
        ledger.credit(USER_ID, Wallet.SPENDABLE, 20)
        clock.advance(minutes=1)
        ledger.credit(USER_ID, Wallet.SPENDABLE, 30)

        history = ledger.get_history(USER_ID, limit=2)

        assert history.total_count == 3
        assert [e.amount for e in history.entries] == [30, 20]
        assert history.balance.spendable == 60

        page = ledger.get_history(USER_ID, limit=2, offset=2)
        assert [e.amount for e in page.entries] == [10]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
