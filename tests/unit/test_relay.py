"""
Unit tests for the relay adapt multicall.
"""

import pytest

from shieldpool.core.errors import AuthorizationError, FormatError, StateError, TransferError
from shieldpool.core.relay import (
    RELAY_RANDOM_SIZE,
    RelayActionData,
    RelayAdapt,
    RelayCall,
    TokenTransfer,
    action_data,
    compute_adapt_params,
    shield_call,
    transfer_call,
)
from shieldpool.core.wallet import Wallet
from shieldpool.crypto import FIELD_PRIME

SALT = bytes([0x42]) * RELAY_RANDOM_SIZE


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
def relay(pool):
    return RelayAdapt(pool)


@pytest.fixture
def funded(pool, alice, alice_public, token):
    pool.vault.mint(token, alice_public, 1000)
    pool.shield([alice.shield_request(token, 1000)], caller=alice_public)
    alice.scan(pool.events)
    return pool


def relayed_unshield(alice, prover, relay, token, value, action):
    """Unshield ``value`` to the relay, bound to ``action``."""
    return alice.build_unshield(
        prover,
        token,
        relay.address,
        value,
        adapt_contract=relay.address,
        adapt_params=lambda nullifiers: compute_adapt_params([nullifiers], action),
    )


# =============================================================================
# Action Data
# =============================================================================


class TestActionData:
    """Salt, failure mode and gas floor."""

    def test_fresh_salt(self):
        a, b = action_data(), action_data()
        assert len(a.random) == RELAY_RANDOM_SIZE
        assert a.random != b.random
        assert a.require_success

    def test_salt_size_enforced(self):
        valid, err = RelayActionData(random=bytes(32)).validate()
        assert not valid
        assert "31 bytes" in err

    def test_unknown_method_invalid(self):
        valid, err = RelayActionData(SALT, calls=(RelayCall(method="selfdestruct"),)).validate()
        assert not valid
        assert "selfdestruct" in err

    def test_negative_gas_floor_invalid(self):
        valid, _ = RelayActionData(SALT, min_gas_limit=-1).validate()
        assert not valid


# =============================================================================
# Adapt Params
# =============================================================================


class TestAdaptParams:
    """Binding action data to transactions."""

    def test_in_field(self, token, bob_public):
        action = action_data(transfer_call(TokenTransfer(token, bob_public)), random=SALT)
        assert 0 <= compute_adapt_params([[1, 2]], action) < FIELD_PRIME

    def test_deterministic(self, token, bob_public):
        call = transfer_call(TokenTransfer(token, bob_public, 5))
        assert compute_adapt_params([[1]], action_data(call, random=SALT)) == compute_adapt_params(
            [[1]], action_data(call, random=SALT)
        )

    def test_binds_calls(self, token, bob_public, alice_public):
        a = compute_adapt_params([[1]], action_data(transfer_call(TokenTransfer(token, bob_public)), random=SALT))
        b = compute_adapt_params([[1]], action_data(transfer_call(TokenTransfer(token, alice_public)), random=SALT))
        c = compute_adapt_params([[1]], action_data(transfer_call(TokenTransfer(token, bob_public, 1)), random=SALT))
        assert len({a, b, c}) == 3

    def test_binds_salt_and_flags(self):
        base = compute_adapt_params([[1]], action_data(random=SALT))
        assert base != compute_adapt_params([[1]], action_data(random=bytes(RELAY_RANDOM_SIZE)))
        assert base != compute_adapt_params([[1]], action_data(random=SALT, require_success=False))
        assert base != compute_adapt_params([[1]], action_data(random=SALT, min_gas_limit=1))

    def test_binds_nullifiers(self):
        action = action_data(random=SALT)
        assert compute_adapt_params([[1]], action) != compute_adapt_params([[2]], action)
        assert compute_adapt_params([[1, 2]], action) != compute_adapt_params([[1], [2]], action)


# =============================================================================
# Relay
# =============================================================================


class TestRelayAdapt:
    """Atomic unshield-then-call."""

    def test_relay_only_methods(self, relay, token, bob_public):
        with pytest.raises(AuthorizationError):
            relay.transfer([TokenTransfer(token, bob_public)])
        with pytest.raises(AuthorizationError):
            relay.shield([])

    def test_unknown_method(self, relay, alice_public):
        action = RelayActionData(SALT, calls=(RelayCall(method="selfdestruct"),))
        with pytest.raises(FormatError):
            relay.relay([], action, caller=alice_public)

    def test_gas_floor(self, relay, alice_public):
        action = action_data(random=SALT, min_gas_limit=100_000)
        with pytest.raises(StateError, match="Not enough gas"):
            relay.relay([], action, caller=alice_public, gas_limit=99_999)
        assert not relay.in_progress

    def test_requires_adapt_lock(self, funded, relay, alice, alice_public, prover, token):
        tx = alice.build_unshield(prover, token, relay.address, 500)
        with pytest.raises(AuthorizationError, match="not locked"):
            relay.relay([tx], action_data(), caller=alice_public)

    def test_calls_cannot_be_swapped(self, funded, relay, alice, alice_public, bob_public, prover, token):
        signed = action_data(transfer_call(TokenTransfer(token, bob_public)), random=SALT)
        tx = relayed_unshield(alice, prover, relay, token, 500, signed)

        swapped = action_data(transfer_call(TokenTransfer(token, alice_public)), random=SALT)
        with pytest.raises(AuthorizationError, match="adapt params"):
            relay.relay([tx], swapped, caller=alice_public)

        # Loosening the failure mode is a swap too
        loosened = action_data(*signed.calls, random=SALT, require_success=False)
        with pytest.raises(AuthorizationError, match="adapt params"):
            relay.relay([tx], loosened, caller=alice_public)

    def test_locked_tx_rejected_by_pool(self, funded, relay, alice, alice_public, prover, token):
        tx = relayed_unshield(alice, prover, relay, token, 500, action_data())
        with pytest.raises(AuthorizationError):
            funded.transact([tx], caller=alice_public)

    def test_unshield_transfer_and_reshield(self, funded, relay, alice, bob, alice_public, bob_public, prover, token):
        pool = funded
        action = action_data(
            transfer_call(TokenTransfer(token, bob_public, 100)),
            shield_call(bob.shield_request(token, 398)),
            min_gas_limit=50_000,
        )
        tx = relayed_unshield(alice, prover, relay, token, 500, action)

        results = relay.relay([tx], action, caller=alice_public, gas_limit=50_000)

        assert [r.success for r in results] == [True, True]
        # 500 unshielded -> 498 to the relay, 100 forwarded, 398 reshielded
        assert pool.vault.balance_of(token, relay.address) == 0
        assert pool.vault.balance_of(token, bob_public) == 100
        assert pool.is_spent(0, tx.nullifiers[0])
        assert not relay.in_progress

        bob.scan(pool.events)
        alice.scan(pool.events)
        assert bob.balance(token) == 397
        assert alice.balance(token) == 497

    def test_failed_call_rolls_back(self, funded, relay, alice, alice_public, bob_public, prover, token):
        pool = funded
        action = action_data(transfer_call(TokenTransfer(token, bob_public, 10_000)))
        tx = relayed_unshield(alice, prover, relay, token, 500, action)
        root, events = pool.merkle_root, len(pool.events)

        with pytest.raises(TransferError):
            relay.relay([tx], action, caller=alice_public)

        assert not pool.is_spent(0, tx.nullifiers[0])
        assert pool.merkle_root == root
        assert len(pool.events) == events
        assert pool.vault.balance_of(token, relay.address) == 0
        assert pool.vault.balance_of(token, pool.address) == 997
        assert not relay.in_progress

    def test_failed_call_tolerated(self, funded, relay, alice, alice_public, bob_public, prover, token):
        """Without require_success a failing call is skipped and the batch stands."""
        pool = funded
        action = action_data(
            transfer_call(TokenTransfer(token, bob_public, 60), TokenTransfer(token, bob_public, 10_000)),
            transfer_call(TokenTransfer(token, bob_public, 100)),
            require_success=False,
        )
        tx = relayed_unshield(alice, prover, relay, token, 500, action)

        results = relay.relay([tx], action, caller=alice_public)

        assert [r.success for r in results] == [False, True]
        assert results[0].index == 0
        assert "Insufficient balance" in results[0].error
        assert pool.is_spent(0, tx.nullifiers[0])

        # The first call's partial transfer of 60 was undone with it
        assert pool.vault.balance_of(token, bob_public) == 100
        assert pool.vault.balance_of(token, relay.address) == 398
        assert not relay.in_progress


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
