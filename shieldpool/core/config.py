"""
Pool configuration parameters for shieldpool.

Defines accumulator geometry, fee rates, chain binding, and operational paths.

Sources, lowest to highest priority:
1. Field defaults below
2. A JSON config file
3. ``SHIELDPOOL_*`` environment variables (a ``.env`` file is read first)
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = "SHIELDPOOL_"

HOME_DIR = Path("~/.shieldpool")


def _address(fill: int) -> str:
    return "0x" + bytes([fill]).hex() * 20


class PoolConfig(BaseModel):
    """Pool-wide configuration parameters"""

    model_config = ConfigDict(validate_assignment=True, validate_default=True)

    # Accumulator
    tree_depth: int = Field(16, ge=1, le=32)

    # Fees (basis points)
    shield_fee_bp: int = Field(25, ge=0, le=10000)
    unshield_fee_bp: int = Field(25, ge=0, le=10000)

    # Replay protection across deployments
    chain_id: int = Field(1, ge=0)

    # Addresses (20-byte hex)
    pool_address: str = _address(0x50)
    treasury: str = _address(0x7E)
    owner: str = _address(0x01)

    # Paths (~ is expanded)
    data_dir: Path = HOME_DIR / "data"
    log_dir: Path = HOME_DIR / "logs"
    circuit_dir: Path = HOME_DIR / "circuits"

    log_level: str = "INFO"

    @field_validator("pool_address", "treasury", "owner")
    @classmethod
    def _check_address(cls, value: str) -> str:
        hex_str = value[2:] if value.startswith("0x") else value
        if len(hex_str) != 40:
            raise ValueError("address must be 20 bytes of hex")
        bytes.fromhex(hex_str)
        return "0x" + hex_str.lower()

    @field_validator("data_dir", "log_dir", "circuit_dir")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return Path(value).expanduser()

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @property
    def pool_address_bytes(self) -> bytes:
        return bytes.fromhex(self.pool_address[2:])

    @property
    def treasury_bytes(self) -> bytes:
        return bytes.fromhex(self.treasury[2:])

    @property
    def owner_bytes(self) -> bytes:
        return bytes.fromhex(self.owner[2:])

    def ensure_dirs(self) -> None:
        """Create data/log/circuit directories."""
        for path in (self.data_dir, self.log_dir, self.circuit_dir):
            path.mkdir(exist_ok=True, parents=True)


def _env_overrides(env_file: Optional[str]) -> Dict[str, Any]:
    env: Dict[str, Optional[str]] = {}
    if env_file:
        env.update(dotenv_values(env_file))
    env.update(os.environ)

    overrides = {}
    for key, value in env.items():
        if key.startswith(ENV_PREFIX) and value is not None:
            name = key[len(ENV_PREFIX):].lower()
            if name in PoolConfig.model_fields:
                overrides[name] = value
    return overrides


def load_config(config_path: Optional[str] = None, env_file: Optional[str] = ".env") -> PoolConfig:
    """
    Load configuration from file and environment, falling back to defaults.

    Args:
        config_path: Optional path to a JSON config file
        env_file: Optional .env file consulted before the process environment

    Returns:
        PoolConfig instance

    Raises:
        pydantic.ValidationError: If any value is out of range
    """
    values: Dict[str, Any] = {}

    if config_path:
        with open(config_path) as f:
            values.update(json.load(f))

    values.update(_env_overrides(env_file))

    return PoolConfig(**values)
