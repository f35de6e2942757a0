"""
Unit tests for the wallet: scanning, balances, note selection and building.

Transact events are assembled by hand from built transactions, so nothing
here runs a pairing check.
"""

import pytest

from shieldpool.core.errors import FormatError, StateError
from shieldpool.core.state.events import NullifiedEvent, TransactEvent
from shieldpool.core.state.note import erc20
from shieldpool.core.wallet import Payment, ShieldedAddress, Wallet


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def alice(config):
    return Wallet(tree_depth=config.tree_depth)


@pytest.fixture
def bob(config):
    return Wallet(tree_depth=config.tree_depth)


@pytest.fixture
def other_token():
    return erc20(bytes([0xBB]) * 20)


def shield(pool, wallet, caller, token, *values, receiver=None):
    """Mint and shield one note per value."""
    pool.vault.mint(token, caller, sum(values))
    pool.shield([wallet.shield_request(token, v, receiver=receiver) for v in values], caller=caller)


def as_events(tx, start_index):
    """The events the pool would emit for ``tx``."""
    outputs = tx.commitments[:-1] if tx.is_unshield else tx.commitments
    return [
        NullifiedEvent(tree_number=0, nullifiers=tuple(tx.nullifiers)),
        TransactEvent(
            tree_number=0,
            start_index=start_index,
            hashes=tuple(outputs),
            ciphertext=tx.bound_params.commitment_ciphertext,
        ),
    ]


# =============================================================================
# Keys
# =============================================================================


class TestKeys:
    """Key derivation."""

    def test_keys_determine_address(self, alice):
        restored = Wallet(spending_key=alice.spending_key, viewing_key=alice.viewing_key)
        assert restored.address == alice.address

    def test_fresh_wallets_differ(self, alice, bob):
        assert alice.master_public_key != bob.master_public_key
        assert alice.viewing_public_key != bob.viewing_public_key

    def test_address(self, alice):
        assert isinstance(alice.address, ShieldedAddress)
        assert alice.address.master_public_key == alice.master_public_key


# =============================================================================
# Scanning
# =============================================================================


class TestScan:
    """Mirroring the log and discovering notes."""

    def test_shield_found_by_owner_only(self, pool, alice, bob, alice_public, token):
        shield(pool, alice, alice_public, token, 1000)

        assert len(alice.scan(pool.events)) == 1
        assert bob.scan(pool.events) == []
        assert alice.balance(token) == 997
        assert bob.balance(token) == 0

    def test_every_wallet_mirrors_the_tree(self, pool, alice, bob, alice_public, token):
        shield(pool, alice, alice_public, token, 1000, 2000)
        bob.scan(pool.events)
        assert bob.trees[0].root == pool.merkle_root

    def test_scan_is_incremental(self, pool, alice, alice_public, token):
        shield(pool, alice, alice_public, token, 1000)
        assert len(alice.scan(pool.events)) == 1
        assert alice.scan(pool.events) == []

        shield(pool, alice, alice_public, token, 500)
        found = alice.scan(pool.events)
        assert [n.position for n in found] == [1]

    def test_shield_to_receiver(self, pool, alice, bob, alice_public, token):
        shield(pool, alice, alice_public, token, 1000, receiver=bob.address)
        alice.scan(pool.events)
        bob.scan(pool.events)
        assert alice.balance(token) == 0
        assert bob.balance(token) == 997

    def test_transfer_with_memo(self, pool, alice, bob, alice_public, prover, token):
        shield(pool, alice, alice_public, token, 1000)
        alice.scan(pool.events)

        tx = alice.build_transaction(prover, token, payments=[Payment(bob.address, 300, memo="rent")])
        events = pool.events + as_events(tx, start_index=1)

        [received] = bob.scan(events)
        assert (received.value, received.memo, received.position) == (300, "rent", 1)

        [change] = alice.scan(events)
        assert change.value == 697
        assert alice.balance(token) == 697
        assert len(alice.notes) == 2

    def test_mismatched_leaf_ignored(self, pool, alice, bob, alice_public, prover, token):
        shield(pool, alice, alice_public, token, 1000)
        alice.scan(pool.events)

        tx = alice.build_transaction(prover, token, payments=[Payment(bob.address, 300)])
        nullified, transact = as_events(tx, start_index=1)
        swapped = TransactEvent(
            tree_number=0,
            start_index=1,
            hashes=tuple(reversed(transact.hashes)),
            ciphertext=transact.ciphertext,
        )
        assert bob.scan(pool.events + [nullified, swapped]) == []


# =============================================================================
# Balances and Selection
# =============================================================================


class TestBalances:
    """Spendable value accounting."""

    def test_balances_per_token(self, pool, alice, alice_public, token, other_token):
        shield(pool, alice, alice_public, token, 1000)
        shield(pool, alice, alice_public, other_token, 10025)
        alice.scan(pool.events)
        assert alice.balances() == {token.token_id: 997, other_token.token_id: 10000}

    def test_spent_notes_excluded(self, pool, alice, alice_public, token):
        shield(pool, alice, alice_public, token, 1000)
        [note] = alice.scan(pool.events)
        alice.scan(pool.events + [NullifiedEvent(tree_number=0, nullifiers=(note.nullifier,))])
        assert alice.is_spent(note)
        assert alice.balance(token) == 0
        assert alice.unspent_notes() == []

    def test_select_largest_first(self, pool, alice, alice_public, token):
        shield(pool, alice, alice_public, token, 100, 1000, 500)
        alice.scan(pool.events)
        selected = alice.select_notes(token, 900, max_inputs=2)
        assert [n.value for n in selected] == [997]

    def test_select_multiple(self, pool, alice, alice_public, token):
        shield(pool, alice, alice_public, token, 100, 1000, 500)
        alice.scan(pool.events)
        selected = alice.select_notes(token, 1200, max_inputs=2)
        assert [n.value for n in selected] == [997, 498]

    def test_select_respects_max_inputs(self, pool, alice, alice_public, token):
        shield(pool, alice, alice_public, token, 100, 1000, 500)
        alice.scan(pool.events)
        with pytest.raises(StateError):
            alice.select_notes(token, 1200, max_inputs=1)

    def test_select_insufficient(self, alice, token):
        with pytest.raises(StateError):
            alice.select_notes(token, 1, max_inputs=2)


# =============================================================================
# Building
# =============================================================================


class TestBuild:
    """Transaction construction."""

    def test_needs_an_output(self, alice, prover, token):
        with pytest.raises(FormatError):
            alice.build_transaction(prover, token)

    def test_exact_spend_has_no_change(self, pool, alice, bob, alice_public, prover, token):
        shield(pool, alice, alice_public, token, 1000)
        alice.scan(pool.events)
        tx = alice.build_transaction(prover, token, payments=[Payment(bob.address, 997)])
        assert tx.shape == (1, 1)

    def test_unshield_output_last(self, pool, alice, bob, alice_public, prover, token):
        shield(pool, alice, alice_public, token, 1000)
        alice.scan(pool.events)
        tx = alice.build_unshield(prover, token, alice_public, 500, payments=[Payment(bob.address, 100)])

        assert tx.shape == (1, 3)
        assert tx.is_unshield
        assert tx.commitments[-1] == tx.unshield_preimage.hash
        assert tx.unshield_preimage.recipient == alice_public
        assert len(tx.bound_params.commitment_ciphertext) == 2

    def test_proof_binds_root_and_tree(self, pool, alice, bob, alice_public, prover, token):
        shield(pool, alice, alice_public, token, 1000)
        alice.scan(pool.events)
        tx = alice.build_transaction(prover, token, payments=[Payment(bob.address, 1)], min_gas_price=7)
        assert tx.merkle_root == pool.merkle_root
        assert tx.bound_params.tree_number == 0
        assert tx.bound_params.min_gas_price == 7
        assert tx.validate_structure() == (True, "")

    def test_repr(self, alice):
        assert "Wallet(" in repr(alice)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
