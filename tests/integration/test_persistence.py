import pytest

from shieldpool.core.config import PoolConfig
from shieldpool.core.errors import StateError, TransferError
from shieldpool.core.state.ledger import ShieldedPool
from shieldpool.core.state.note import erc20
from shieldpool.core.storage.storage_manager import StorageManager
from shieldpool.core.tokenomics import FeeSchedule
from shieldpool.core.wallet import Payment, Wallet


@pytest.fixture
def temp_pool_dir(tmp_path):
    """Create a temporary directory for pool data."""
    data_dir = tmp_path / "pool_data"
    data_dir.mkdir()
    return data_dir


def open_pool(config, data_dir):
    return ShieldedPool(config, storage_manager=StorageManager(data_dir=data_dir))


def test_pool_state_persistence(temp_pool_dir, config, register, owner, alice_public, prover, token):
    """Leaves, roots, nullifiers and admin state survive a restart."""
    # 1. Start pool A
    pool_a = open_pool(config, temp_pool_dir)
    register(pool_a)

    alice = Wallet(tree_depth=config.tree_depth)
    bob = Wallet(tree_depth=config.tree_depth)
    other = erc20(bytes([0xBB]) * 20)

    pool_a.vault.mint(token, alice_public, 2000)
    pool_a.shield([alice.shield_request(token, 1000) for _ in range(2)], caller=alice_public)
    alice.scan(pool_a.events)

    tx = alice.build_transaction(prover, token, payments=[Payment(bob.address, 300)], max_inputs=1)
    pool_a.transact([tx], caller=alice_public)

    pool_a.change_fees(owner, 30, 40)
    pool_a.add_to_blocklist(owner, other)

    root, next_index, shapes = pool_a.merkle_root, pool_a.next_leaf_index, pool_a.verifier.shapes()
    assert next_index == 4

    # 2. Stop pool A
    pool_a.close()

    # 3. Start pool B on the same data
    pool_b = open_pool(config, temp_pool_dir)

    assert pool_b.merkle_root == root
    assert pool_b.next_leaf_index == next_index
    assert pool_b.is_spent(0, tx.nullifiers[0])
    assert pool_b.verifier.shapes() == shapes
    assert pool_b.fees.schedule == FeeSchedule(30, 40)
    assert pool_b.is_blocklisted(other)

    # A replay against the restored pool is a double spend
    with pytest.raises(StateError, match="Note already spent"):
        pool_b.transact([tx], caller=alice_public)

    # 4. Continue
    pool_b.vault.mint(token, alice_public, 1000)
    event = pool_b.shield([alice.shield_request(token, 1000)], caller=alice_public)
    assert event.start_index == next_index
    root = pool_b.merkle_root
    pool_b.close()

    pool_c = open_pool(config, temp_pool_dir)
    assert pool_c.merkle_root == root
    assert pool_c.next_leaf_index == next_index + 1
    pool_c.close()


def test_failed_batch_writes_nothing(temp_pool_dir, config, alice_public, token):
    """Rolled back batches never reach the database."""
    pool = open_pool(config, temp_pool_dir)
    alice = Wallet(tree_depth=config.tree_depth)
    pool.vault.mint(token, alice_public, 1000)

    # Insufficient balance for the second request
    with pytest.raises(TransferError):
        pool.shield([alice.shield_request(token, 1000) for _ in range(2)], caller=alice_public)

    # Outer block aborted after an inner shield succeeded
    with pytest.raises(StateError):
        with pool.atomic():
            pool.shield([alice.shield_request(token, 1000)], caller=alice_public)
            raise StateError("abort")

    assert pool.storage_manager.get_commitment_count() == 0
    pool.close()

    restored = open_pool(config, temp_pool_dir)
    assert restored.next_leaf_index == 0
    assert restored.merkle_root == restored.accumulator.empty_root
    restored.close()


def test_retired_root_persistence(temp_pool_dir, config, owner, alice_public, token):
    """Retired roots stay retired after a restart."""
    pool = open_pool(config, temp_pool_dir)
    alice = Wallet(tree_depth=config.tree_depth)
    pool.vault.mint(token, alice_public, 2000)

    pool.shield([alice.shield_request(token, 1000)], caller=alice_public)
    old_root = pool.merkle_root
    pool.shield([alice.shield_request(token, 1000)], caller=alice_public)
    assert pool.retire_root(owner, 0, old_root)
    pool.close()

    restored = open_pool(config, temp_pool_dir)
    assert not restored.accumulator.is_known_root(0, old_root)
    assert restored.accumulator.is_known_root(0, restored.merkle_root)
    restored.close()


def test_rollover_persistence(temp_pool_dir, owner, alice_public, token):
    """The active tree and older trees' roots survive a restart."""
    config = PoolConfig(tree_depth=2, owner="0x" + owner.hex())
    pool = open_pool(config, temp_pool_dir)
    alice = Wallet(tree_depth=2)
    pool.vault.mint(token, alice_public, 5000)

    pool.shield([alice.shield_request(token, 1000) for _ in range(4)], caller=alice_public)
    full_root = pool.merkle_root
    event = pool.shield([alice.shield_request(token, 1000)], caller=alice_public)
    assert (event.tree_number, event.start_index) == (1, 0)
    root = pool.merkle_root
    pool.close()

    restored = open_pool(config, temp_pool_dir)
    assert restored.tree_number == 1
    assert restored.next_leaf_index == 1
    assert restored.merkle_root == root
    assert restored.accumulator.is_known_root(0, full_root)
    restored.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
