"""
Shared fixtures.

Trapdoor setups and pairing checks are slow in pure Python, so the prover is
session-scoped and seeded: every test sees the same verifying keys.
"""

import pytest

from shieldpool.core.config import PoolConfig
from shieldpool.core.prover.prover import ProverManager
from shieldpool.core.state.ledger import ShieldedPool
from shieldpool.core.state.note import erc20

SHAPES = ((1, 1), (1, 2), (1, 3), (2, 1), (2, 2), (2, 3))


@pytest.fixture(scope="session")
def prover():
    """Seeded trapdoor prover shared by the whole run."""
    return ProverManager(use_trapdoor=True, seed=b"shieldpool-tests")


@pytest.fixture
def owner():
    return bytes([0x01]) * 20


@pytest.fixture
def alice_public():
    return bytes([0xA1]) * 20


@pytest.fixture
def bob_public():
    return bytes([0xB0]) * 20


@pytest.fixture
def config(owner):
    """Small trees keep wallet mirrors and rollovers cheap."""
    return PoolConfig(tree_depth=4, owner="0x" + owner.hex())


@pytest.fixture
def token():
    return erc20(bytes([0xAA]) * 20)


@pytest.fixture
def register(prover, owner):
    """Install the prover's verifying keys on a pool."""
    def _register(pool, shapes=SHAPES):
        for n_in, n_out in shapes:
            pool.set_verification_key(owner, n_in, n_out, prover.verifying_key(n_in, n_out))
    return _register


@pytest.fixture
def pool(config, register):
    """In-memory pool with every test shape registered."""
    pool = ShieldedPool(config)
    register(pool)
    return pool
