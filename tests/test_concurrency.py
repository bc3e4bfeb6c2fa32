"""
Concurrency tests for the balance engine

Operations are started from several threads at once behind a barrier so the
read-check-write sequences genuinely overlap.
"""

import threading

import pytest
from decimal import Decimal

from balance_ledger.balance import BalanceEngine
from balance_ledger.errors import InsufficientFunds
from balance_ledger.storage import InMemoryLedgerStore
from balance_ledger.transactions import TransactionType


def run_concurrently(*calls):
    """Run callables in parallel threads; return (results, errors) in call order"""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = [None] * len(calls)

    def worker(index, call):
        barrier.wait()
        try:
            results[index] = call()
        except Exception as e:
            errors[index] = e

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
        assert not thread.is_alive(), "worker thread did not finish"

    return results, errors


class TestConcurrentOperations:
    """Test serialization of operations on the same user"""

    @pytest.fixture(autouse=True)
    def setup(self, store):
        """Set up test fixtures"""
        self.store = store
        self.engine = BalanceEngine(store)
        self.alice = store.add_user("Alice")
        self.bob = store.add_user("Bob")

    def test_two_withdrawals_of_60_against_100(self):
        self.engine.deposit(self.alice.id, Decimal("100.00"))

        results, errors = run_concurrently(
            lambda: self.engine.withdraw(self.alice.id, Decimal("60.00")),
            lambda: self.engine.withdraw(self.alice.id, Decimal("60.00")),
        )

        succeeded = [r for r in results if r is not None]
        failed = [e for e in errors if e is not None]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientFunds)
        assert succeeded[0].new_balance == Decimal("40.00")
        assert self.store.get_balance(self.alice.id) == Decimal("40.00")

        withdrawals = [r for r in self.store.list_transactions(self.alice.id)
                       if r.type is TransactionType.WITHDRAW]
        assert len(withdrawals) == 1

    def test_concurrent_deposits_are_not_lost(self):
        calls = [lambda: self.engine.deposit(self.alice.id, Decimal("1.25")) for _ in range(8)]

        results, errors = run_concurrently(*calls)

        assert errors == [None] * 8
        assert self.store.get_balance(self.alice.id) == Decimal("10.00")
        assert len(self.store.list_transactions(self.alice.id)) == 8

    def test_opposite_transfers_do_not_deadlock(self):
        self.engine.deposit(self.alice.id, Decimal("100.00"))
        self.engine.deposit(self.bob.id, Decimal("100.00"))

        calls = []
        for _ in range(5):
            calls.append(lambda: self.engine.transfer(self.alice.id, self.bob.id, Decimal("7.00")))
            calls.append(lambda: self.engine.transfer(self.bob.id, self.alice.id, Decimal("3.00")))

        results, errors = run_concurrently(*calls)

        assert errors == [None] * 10
        assert self.store.get_balance(self.alice.id) == Decimal("80.00")
        assert self.store.get_balance(self.bob.id) == Decimal("120.00")


class TestPerUserLocking:
    """Units of work on different users proceed independently (in-memory store)"""

    def setup_method(self):
        """Set up test fixtures"""
        self.store = InMemoryLedgerStore()
        self.engine = BalanceEngine(self.store)
        self.alice = self.store.add_user("Alice")
        self.bob = self.store.add_user("Bob")

    def test_open_unit_on_one_user_does_not_block_another(self):
        finished = threading.Event()

        def deposit_to_bob():
            self.engine.deposit(self.bob.id, Decimal("5.00"))
            finished.set()

        with self.store.atomic([self.alice.id]) as uow:
            uow.adjust_balance(self.alice.id, Decimal("1.00"))
            worker = threading.Thread(target=deposit_to_bob)
            worker.start()
            assert finished.wait(timeout=5), "deposit to another user was blocked"

        worker.join(timeout=5)
        assert self.store.get_balance(self.bob.id) == Decimal("5.00")
        assert self.store.get_balance(self.alice.id) == Decimal("1.00")

    def test_open_unit_blocks_same_user_until_it_ends(self):
        finished = threading.Event()

        def deposit_to_alice():
            self.engine.deposit(self.alice.id, Decimal("5.00"))
            finished.set()

        with self.store.atomic([self.alice.id]) as uow:
            uow.adjust_balance(self.alice.id, Decimal("1.00"))
            worker = threading.Thread(target=deposit_to_alice)
            worker.start()
            assert not finished.wait(timeout=0.2)

        assert finished.wait(timeout=5)
        worker.join(timeout=5)
        assert self.store.get_balance(self.alice.id) == Decimal("6.00")
