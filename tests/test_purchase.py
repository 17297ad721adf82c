"""
Tests for the purchase transaction.

Covers validation, the doubling price sequence, the all-or-nothing commit,
internal retries and behaviour under concurrent purchases.
"""

import sqlite3
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from pixel_ledger.config import Settings
from pixel_ledger.db import get_db
from pixel_ledger.errors import (
    AccountNotFound,
    AuthRequired,
    InsufficientFunds,
    InvalidInput,
    LedgerUnavailable,
    PriceCapReached,
)
from pixel_ledger.ledger import Ledger
from pixel_ledger.purchase import validate_purchase


def _purchase_rows(ledger):
    with get_db(ledger.settings.db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM purchases").fetchone()[0]


class TestValidation:
    """Test rejection of malformed purchase requests."""

    def test_valid_request_canonicalises_color(self):
        request = validate_purchase("alice", 42, "#FF00aa", 10, grid_size=100)
        assert request.color == "#ff00aa"
        assert request.intensity == 10

    def test_missing_intensity_defaults_to_zero(self):
        assert validate_purchase("alice", 0, "#000000", None, grid_size=100).intensity == 0

    @pytest.mark.parametrize("account_id", [None, "", "   "])
    def test_missing_account(self, account_id):
        with pytest.raises(AuthRequired):
            validate_purchase(account_id, 1, "#ffffff", 0, grid_size=100)

    @pytest.mark.parametrize("index", [-1, 100, 1.0, "1", None, True])
    def test_bad_index(self, index):
        with pytest.raises(InvalidInput, match="index"):
            validate_purchase("alice", index, "#ffffff", 0, grid_size=100)

    @pytest.mark.parametrize("color", ["ff0000", "#ff000", "#ff00000", "#gg0000", "red", None, 0xff0000])
    def test_bad_color(self, color):
        with pytest.raises(InvalidInput, match="color"):
            validate_purchase("alice", 1, color, 0, grid_size=100)

    @pytest.mark.parametrize("intensity", [-1, 31, 2.5, "3", False])
    def test_bad_intensity(self, intensity):
        with pytest.raises(InvalidInput, match="intensity"):
            validate_purchase("alice", 1, "#ffffff", intensity, grid_size=100)


class TestPurchaseScenarios:
    """End-to-end purchase scenarios against a real database."""

    def test_first_purchase_charges_base_price(self, ledger, funded):
        funded("alice", 100)
        receipt = ledger.buy("alice", 42, "#ff0000", 10)

        assert receipt.price_cents_charged == 1
        assert receipt.purchase_count_after == 1
        assert receipt.balance_cents_after == 99
        assert ledger.wallet.balance("alice") == 99

    def test_second_purchase_doubles(self, ledger, funded):
        funded("alice", 100)
        ledger.buy("alice", 42, "#ff0000", 10)
        receipt = ledger.buy("alice", 42, "#ff0000", 10)

        assert receipt.price_cents_charged == 2
        assert receipt.purchase_count_after == 2
        assert ledger.wallet.balance("alice") == 97

    def test_zero_balance_rejected_without_effect(self, ledger, funded):
        funded("alice", 0)
        with pytest.raises(InsufficientFunds):
            ledger.buy("alice", 42, "#ff0000", 10)

        assert ledger.wallet.balance("alice") == 0
        assert ledger.store.get(42) is None
        assert _purchase_rows(ledger) == 0

    def test_price_sequence_follows_doubling(self, ledger, funded):
        """The i-th purchase of a cell costs 2^(i-1) and leaves count i."""
        funded("alice", 2 ** 12)
        for i in range(1, 11):
            receipt = ledger.buy("alice", 7, "#00ff00", 0)
            assert receipt.price_cents_charged == 2 ** (i - 1)
            assert receipt.purchase_count_after == i
        assert ledger.wallet.balance("alice") == 2 ** 12 - (2 ** 10 - 1)

    def test_audit_record_written(self, ledger, funded):
        funded("alice", 10)
        ledger.buy("alice", 3, "#ABCDEF", 4)

        [record] = ledger.audit.recent()
        assert record.account_id == "alice"
        assert record.cell_index == 3
        assert record.color == "#abcdef"
        assert record.intensity == 4
        assert record.price_charged_cents == 1
        assert record.purchase_count_after == 1
        assert record.timestamp.utcoffset() == timedelta(0)

    def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            ledger.buy("ghost", 1, "#ffffff", 0)
        assert ledger.store.get(1) is None

    def test_invalid_input_leaves_state_unchanged(self, ledger, funded):
        funded("alice", 10)
        with pytest.raises(InvalidInput):
            ledger.buy("alice", ledger.settings.grid_size, "#ffffff", 0)
        assert ledger.wallet.balance("alice") == 10
        assert _purchase_rows(ledger) == 0

    def test_price_cap_rejects_further_purchases(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "cap.db"), max_price_exponent=2)
        ledger = Ledger.open(settings)
        ledger.wallet.create_account("alice")
        ledger.wallet.credit("alice", 100, "seed")

        charged = [ledger.buy("alice", 1, "#ffffff", 0).price_cents_charged for _ in range(3)]
        assert charged == [1, 2, 4]

        with pytest.raises(PriceCapReached):
            ledger.buy("alice", 1, "#ffffff", 0)
        assert ledger.wallet.balance("alice") == 93
        assert ledger.store.get(1).purchase_count == 3


class TestAtomicity:
    """A failure anywhere in the unit leaves no partial purchase."""

    def test_audit_failure_rolls_back_debit_and_cell(self, ledger, funded):
        funded("alice", 10)
        with patch.object(ledger.audit, "append", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                ledger.buy("alice", 42, "#ff0000", 10)

        assert ledger.wallet.balance("alice") == 10
        assert ledger.store.get(42) is None
        assert _purchase_rows(ledger) == 0

    def test_cell_write_failure_rolls_back_debit(self, ledger, funded):
        funded("alice", 10)
        with patch.object(ledger.store, "apply_purchase", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                ledger.buy("alice", 42, "#ff0000", 10)

        assert ledger.wallet.balance("alice") == 10
        assert _purchase_rows(ledger) == 0


class TestRetries:
    """Transient storage conflicts are retried from scratch."""

    def test_transient_error_retried(self, ledger, funded):
        funded("alice", 10)
        real_attempt = ledger.purchases._attempt
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real_attempt(request)

        with patch.object(ledger.purchases, "_attempt", side_effect=flaky):
            receipt = ledger.buy("alice", 5, "#ffffff", 0)

        assert len(calls) == 2
        assert receipt.price_cents_charged == 1
        assert ledger.wallet.balance("alice") == 9

    def test_retry_reprices_after_concurrent_purchase(self, ledger, funded):
        """A retry after losing a race pays the new price, not the stale one."""
        funded("alice", 10)
        funded("bob", 10)
        real_attempt = ledger.purchases._attempt
        calls = []

        def lose_race(request):
            calls.append(request)
            if len(calls) == 1:
                # bob commits first while alice's attempt fails
                real_attempt(validate_purchase("bob", 5, "#000000", 0, grid_size=100))
                raise sqlite3.OperationalError("database is locked")
            return real_attempt(request)

        with patch.object(ledger.purchases, "_attempt", side_effect=lose_race):
            receipt = ledger.buy("alice", 5, "#ffffff", 0)

        assert receipt.price_cents_charged == 2
        assert receipt.purchase_count_after == 2
        assert ledger.wallet.balance("alice") == 8
        assert ledger.wallet.balance("bob") == 9

    def test_non_transient_error_not_retried(self, ledger, funded):
        funded("alice", 10)
        with patch.object(ledger.purchases, "_attempt",
                          side_effect=sqlite3.OperationalError("no such table: pixels")) as attempt:
            with pytest.raises(sqlite3.OperationalError):
                ledger.buy("alice", 5, "#ffffff", 0)
        assert attempt.call_count == 1

    def test_exhausted_retries_surface_generic_failure(self, tmp_path):
        settings = Settings(
            db_path=str(tmp_path / "busy.db"),
            max_retries=3,
            retry_backoff_seconds=0.001,
            busy_timeout_seconds=0.05,
        )
        ledger = Ledger.open(settings)
        ledger.wallet.create_account("alice")
        ledger.wallet.credit("alice", 10, "seed")

        # Hold the write lock for the whole purchase
        blocker = sqlite3.connect(settings.db_path, isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with pytest.raises(LedgerUnavailable):
                ledger.buy("alice", 5, "#ffffff", 0)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert ledger.wallet.balance("alice") == 10
        assert ledger.store.get(5) is None

        # Once the lock is gone the same purchase goes through
        assert ledger.buy("alice", 5, "#ffffff", 0).price_cents_charged == 1


class TestConcurrency:
    """Concurrent purchases serialize per cell and per account."""

    def _run_concurrently(self, count, target):
        barrier = threading.Barrier(count)
        results = []
        lock = threading.Lock()

        def worker(i):
            barrier.wait()
            try:
                outcome = target(i)
            except Exception as e:  # collected for assertions below
                outcome = e
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_balance_covers_only_some_purchases(self, ledger, funded):
        """8 racing buys of one cell with funds for 3 (1+2+4) commit exactly 3."""
        funded("alice", 7)
        results = self._run_concurrently(
            8, lambda i: ledger.buy("alice", 42, "#ff0000", i)
        )

        receipts = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert sorted(r.price_cents_charged for r in receipts) == [1, 2, 4]
        assert len(failures) == 5
        assert all(isinstance(f, InsufficientFunds) for f in failures)
        assert ledger.wallet.balance("alice") == 0
        assert ledger.store.get(42).purchase_count == 3
        assert _purchase_rows(ledger) == 3

    def test_same_cell_never_priced_twice_off_one_count(self, ledger, funded):
        accounts = [funded(f"user{i}", 10_000) for i in range(10)]
        results = self._run_concurrently(
            10, lambda i: ledger.buy(accounts[i], 99, "#0000ff", 0)
        )

        assert not any(isinstance(r, Exception) for r in results)
        assert sorted(r.price_cents_charged for r in results) == [2 ** i for i in range(10)]
        assert sorted(r.purchase_count_after for r in results) == list(range(1, 11))
        assert ledger.store.get(99).purchase_count == 10

    def test_disjoint_cells_all_commit(self, ledger, funded):
        accounts = [funded(f"user{i}", 1) for i in range(10)]
        results = self._run_concurrently(
            10, lambda i: ledger.buy(accounts[i], i, "#ffffff", 0)
        )

        assert all(r.price_cents_charged == 1 for r in results)
        assert ledger.store.count_cells() == 10
        assert all(ledger.wallet.balance(a) == 0 for a in accounts)
