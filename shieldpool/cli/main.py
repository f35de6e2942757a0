"""
shieldpool CLI - command line interface for the shielded pool prototype.

Main entry point for all CLI commands.
"""

import base64
import hashlib
import json
from pathlib import Path
from typing import Optional, Tuple

import click

from shieldpool.utils.logger import setup_logging

PBKDF2_ITERATIONS = 100000


def _fernet_key(password: str, salt: bytes) -> bytes:
    return base64.urlsafe_b64encode(
        hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    )


def decrypt_wallet_keys(wallet_data: dict, password: str) -> Optional[Tuple[bytes, bytes]]:
    """
    Decrypt a wallet's spending and viewing keys.

    Args:
        wallet_data: Loaded wallet JSON data
        password: User's password

    Returns:
        (spending_key, viewing_key), or None on a wrong password
    """
    from cryptography.fernet import Fernet, InvalidToken

    salt = bytes.fromhex(wallet_data["salt"])
    fernet = Fernet(_fernet_key(password, salt))
    try:
        keys = json.loads(fernet.decrypt(wallet_data["encrypted_keys"].encode()))
    except InvalidToken:
        return None
    return bytes.fromhex(keys["spending_key"]), bytes.fromhex(keys["viewing_key"])


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON config file")
@click.option("--data-dir", default=None, help="Data directory (overrides the config)")
@click.option("--log-file", is_flag=True, help="Also write logs to the config log_dir")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, config_path, data_dir, log_file):
    """shieldpool - shielded-value ledger prototype"""
    import logging

    from pydantic import ValidationError

    from shieldpool.core.config import load_config

    try:
        config = load_config(config_path)
        if data_dir is not None:
            config.data_dir = Path(data_dir)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    level = logging.DEBUG if debug else getattr(logging, config.log_level)
    setup_logging(level=level, log_dir=str(config.log_dir), log_to_file=log_file)
    config.ensure_dirs()

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["data_dir"] = config.data_dir


# =============================================================================
# Wallet Commands
# =============================================================================


@cli.group()
def wallet():
    """Wallet management commands"""
    pass


@wallet.command("create")
@click.option("--name", default="default", help="Wallet name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True, help="Encryption password")
@click.pass_context
def wallet_create(ctx, name, password):
    """Create a new encrypted wallet"""
    from cryptography.fernet import Fernet
    from shieldpool.core.wallet import Wallet
    from shieldpool.crypto import random_bytes

    wallet_path = ctx.obj["data_dir"] / "wallets" / f"{name}.json"
    if wallet_path.exists():
        raise click.ClickException(f"Wallet {name} already exists")

    w = Wallet()

    salt = random_bytes(16)
    fernet = Fernet(_fernet_key(password, salt))
    secret = json.dumps({
        "spending_key": w.spending_key.hex(),
        "viewing_key": w.viewing_key.hex(),
    }).encode()

    wallet_data = {
        "name": name,
        "master_public_key": hex(w.master_public_key),
        "viewing_public_key": w.viewing_public_key.hex(),
        "salt": salt.hex(),
        "encrypted_keys": fernet.encrypt(secret).decode("utf-8"),
    }

    wallet_path.parent.mkdir(parents=True, exist_ok=True)
    wallet_path.write_text(json.dumps(wallet_data, indent=2))

    click.echo(f"✓ Wallet created: {name}")
    click.echo(f"  Master public key: {wallet_data['master_public_key']}")
    click.echo(f"  Saved to: {wallet_path}")
    click.echo("  ⚠️  Remember your password - it cannot be recovered!")


@wallet.command("list")
@click.pass_context
def wallet_list(ctx):
    """List all wallets"""
    wallet_dir = ctx.obj["data_dir"] / "wallets"
    files = sorted(wallet_dir.glob("*.json")) if wallet_dir.exists() else []
    if not files:
        click.echo("No wallets found.")
        return

    for wallet_file in files:
        data = json.loads(wallet_file.read_text())
        click.echo(f"  {data['name']}: {data['master_public_key'][:18]}...")


@wallet.command("show")
@click.argument("name")
@click.option("--password", default=None, help="Also check the password decrypts the keys")
@click.pass_context
def wallet_show(ctx, name, password):
    """Show a wallet's shielded address"""
    wallet_path = ctx.obj["data_dir"] / "wallets" / f"{name}.json"
    if not wallet_path.exists():
        raise click.ClickException(f"Wallet {name} not found")

    data = json.loads(wallet_path.read_text())
    click.echo(f"Wallet: {data['name']}")
    click.echo(f"  Master public key:  {data['master_public_key']}")
    click.echo(f"  Viewing public key: {data['viewing_public_key']}")

    if password is not None:
        if decrypt_wallet_keys(data, password) is None:
            raise click.ClickException("Wrong password")
        click.echo("  ✓ Password OK")


# =============================================================================
# Pool Commands
# =============================================================================


@cli.group("pool")
def pool_group():
    """Persisted pool commands"""
    pass


@pool_group.command("stats")
@click.pass_context
def pool_stats(ctx):
    """Show the state of the pool stored in the data directory"""
    from shieldpool.core.state.ledger import ShieldedPool
    from shieldpool.core.storage.storage_manager import StorageManager

    config = ctx.obj["config"]
    pool = ShieldedPool(config, storage_manager=StorageManager(config.data_dir))
    try:
        stats = pool.stats()
    finally:
        pool.close()

    click.echo(f"Pool at {config.data_dir}")
    click.echo(f"  Tree: {stats['tree_number']}  Next leaf: {stats['next_leaf_index']}")
    click.echo(f"  Root: {stats['merkle_root']}")
    click.echo(f"  Nullifiers: {stats['nullifier_count']}")
    click.echo(f"  Verifying keys: {stats['shapes']}")
    click.echo(f"  Fees: shield={stats['fees']['shield_fee_bp']}bp unshield={stats['fees']['unshield_fee_bp']}bp")


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
@click.option("--amount", default=1000, help="Amount Alice shields")
@click.option("--snarkjs", is_flag=True, help="Prove with snarkjs and the config circuit_dir")
@click.pass_context
def demo(ctx, amount, snarkjs):
    """Shield, transfer and unshield against an in-memory pool"""
    from shieldpool.core.prover.prover import ProverManager
    from shieldpool.core.state.ledger import ShieldedPool
    from shieldpool.core.state.note import erc20
    from shieldpool.core.wallet import Payment, Wallet

    click.echo("=" * 60)
    click.echo("  SHIELDPOOL - DEMO")
    click.echo("=" * 60)
    click.echo()

    click.echo("📦 Initializing components...")
    config = ctx.obj["config"]
    pool = ShieldedPool(config)
    prover = ProverManager(circuit_dir=config.circuit_dir, use_trapdoor=not snarkjs)
    owner = config.owner_bytes
    for shape in ((1, 1), (1, 2), (2, 2), (2, 3)):
        pool.set_verification_key(owner, *shape, prover.verifying_key(*shape))

    token = erc20(bytes([0xAA]) * 20)
    alice_public = bytes([0xA1]) * 20
    bob_public = bytes([0xB0]) * 20
    pool.vault.mint(token, alice_public, amount)

    alice = Wallet(tree_depth=config.tree_depth, chain_id=config.chain_id)
    bob = Wallet(tree_depth=config.tree_depth, chain_id=config.chain_id)
    click.echo(f"  ✓ Pool, prover and wallets ready (shapes: {pool.verifier.shapes()})")
    click.echo()

    click.echo(f"🛡️  Alice shields {amount}...")
    pool.shield([alice.shield_request(token, amount)], caller=alice_public)
    alice.scan(pool.events)
    click.echo(f"  ✓ Alice shielded balance: {alice.balance(token)}")
    click.echo(f"  ✓ Treasury fee: {pool.vault.balance_of(token, pool.treasury)}")
    click.echo()

    send = alice.balance(token) // 2
    click.echo(f"💸 Alice privately sends {send} to Bob...")
    tx = alice.build_transaction(prover, token, payments=[Payment(bob.address, send, memo="demo")])
    pool.transact([tx], caller=alice_public)
    alice.scan(pool.events)
    bob.scan(pool.events)
    click.echo(f"  ✓ Alice: {alice.balance(token)}  Bob: {bob.balance(token)}")
    click.echo()

    click.echo(f"🏦 Bob unshields {send} to a public address...")
    tx = bob.build_unshield(prover, token, bob_public, send)
    pool.transact([tx], caller=bob_public)
    bob.scan(pool.events)
    click.echo(f"  ✓ Bob public balance: {pool.vault.balance_of(token, bob_public)}")
    click.echo(f"  ✓ Bob shielded balance: {bob.balance(token)}")
    click.echo()

    stats = pool.stats()
    click.echo("📊 Pool stats:")
    click.echo(f"  Leaves: {stats['next_leaf_index']}  Nullifiers: {stats['nullifier_count']}")
    click.echo(f"  Fees collected: {stats['fees']['total_collected']}")
    click.echo(f"  Proofs generated: {prover.stats()['proofs_generated']}")


if __name__ == "__main__":
    cli()
