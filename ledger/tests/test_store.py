"""
Unit Tests for the Ledger Store

Tests cover:
1. Open/close lifecycle
2. Copy-in/copy-out isolation
3. Version compare-and-swap
4. Atomic unit rollback
"""

import pytest
from decimal import Decimal

from ledger.errors import ConcurrencyConflict, NotFound, StoreUnavailable
from ledger.models import Balance, Wallet, WalletKind
from ledger.store import WALLETS, LedgerStore


def make_wallet(wallet_id="PW-TEST-000001") -> Wallet:
    return Wallet(id=wallet_id, owner_id="user-1", kind=WalletKind.PERSONAL, balance=Balance())


class TestLifecycle:
    """Tests for opening and closing the store."""

    def test_closed_store_rejects_reads(self):
        """Any access before open() is a fatal infrastructure error."""
        store = LedgerStore()

        with pytest.raises(StoreUnavailable):
            store.find(WALLETS, "PW-TEST-000001", Wallet)

    def test_closed_store_rejects_atomic_units(self):
        """A closed store cannot start an atomic unit."""
        store = LedgerStore().open()
        store.close()

        with pytest.raises(StoreUnavailable):
            with store.atomic():
                pass

    def test_store_unavailable_is_not_a_business_error(self):
        """The fatal error sits outside the business hierarchy."""
        from ledger.errors import EngineError

        assert not issubclass(StoreUnavailable, EngineError)


class TestRecords:
    """Tests for record reads and writes."""

    def test_get_returns_a_copy(self):
        """Mutating a fetched record does not touch stored state."""
        store = LedgerStore().open()
        store.insert(WALLETS, make_wallet())

        fetched = store.get(WALLETS, "PW-TEST-000001", Wallet)
        fetched.balance.available = Decimal("999.00")

        assert store.get(WALLETS, "PW-TEST-000001", Wallet).balance.available == Decimal("0.00")

    def test_get_missing_raises_not_found(self):
        """Unknown identifiers raise NotFound."""
        store = LedgerStore().open()

        with pytest.raises(NotFound):
            store.get(WALLETS, "PW-NOPE", Wallet)

    def test_insert_duplicate_id_conflicts(self):
        """Inserting an existing id is rejected."""
        store = LedgerStore().open()
        store.insert(WALLETS, make_wallet())

        with pytest.raises(ConcurrencyConflict):
            store.insert(WALLETS, make_wallet())

    def test_put_bumps_version(self):
        """Each successful put increments the version."""
        store = LedgerStore().open()
        wallet = store.insert(WALLETS, make_wallet())

        saved = store.put(WALLETS, wallet)

        assert saved.version == wallet.version + 1

    def test_stale_put_conflicts(self):
        """Writing a record read before another writer committed is rejected."""
        store = LedgerStore().open()
        first = store.insert(WALLETS, make_wallet())
        second = store.get(WALLETS, first.id, Wallet)

        store.put(WALLETS, first)

        with pytest.raises(ConcurrencyConflict):
            store.put(WALLETS, second)

    def test_select_filters(self):
        """select applies the predicate to every row."""
        store = LedgerStore().open()
        store.insert(WALLETS, make_wallet("PW-A"))
        store.insert(WALLETS, make_wallet("PW-B"))

        found = store.select(WALLETS, Wallet, lambda w: w.id == "PW-B")

        assert [w.id for w in found] == ["PW-B"]


class TestAtomicUnits:
    """Tests for atomic rollback."""

    def test_exception_rolls_back_every_write(self):
        """A failing unit leaves no partial effect behind."""
        store = LedgerStore().open()
        wallet = store.insert(WALLETS, make_wallet())

        with pytest.raises(RuntimeError):
            with store.atomic():
                wallet.balance.available = Decimal("50.00")
                store.put(WALLETS, wallet)
                store.insert(WALLETS, make_wallet("PW-OTHER"), idempotency_key="key-1")
                raise RuntimeError("boom")

        assert store.get(WALLETS, wallet.id, Wallet).balance.available == Decimal("0.00")
        assert store.find(WALLETS, "PW-OTHER", Wallet) is None
        assert store.lookup_key(WALLETS, "key-1") is None

    def test_nested_units_join_the_outer_one(self):
        """An inner unit's writes roll back with the outer unit."""
        store = LedgerStore().open()

        with pytest.raises(ValueError):
            with store.atomic():
                with store.atomic():
                    store.insert(WALLETS, make_wallet("PW-INNER"))
                raise ValueError("outer fails")

        assert store.find(WALLETS, "PW-INNER", Wallet) is None

    def test_committed_unit_persists(self):
        """A unit that exits cleanly keeps its writes."""
        store = LedgerStore().open()

        with store.atomic():
            store.insert(WALLETS, make_wallet("PW-KEPT"))

        assert store.find(WALLETS, "PW-KEPT", Wallet) is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
