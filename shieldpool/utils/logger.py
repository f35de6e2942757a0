"""
Centralized logging configuration for shieldpool.

Provides colored console output and separate loggers for each subsystem
(pool, merkle, verifier, prover, wallet, storage, relay).
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import colorlog


class PoolLogger:
    """Centralized logger for shieldpool components"""

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: int = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_dir: Directory for log files. If None, uses ./logs
            log_to_file: Whether to write logs to file
        """
        if cls._initialized:
            return

        root_logger = logging.getLogger("shieldpool")
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        console_handler = colorlog.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            colorlog.ColoredFormatter(
                "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
                log_colors={
                    "DEBUG": "cyan",
                    "INFO": "green",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "red,bg_white",
                },
            )
        )
        root_logger.addHandler(console_handler)

        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            cls._log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(cls._log_dir / "shieldpool.log")
            file_handler.setLevel(level)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(name)s] %(levelname)-8s %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            root_logger.addHandler(file_handler)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger for a specific subsystem.

        Args:
            name: Subsystem name (e.g., 'pool', 'merkle', 'wallet')

        Returns:
            Logger instance
        """
        if not cls._initialized:
            cls.setup()

        return logging.getLogger(f"shieldpool.{name}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return PoolLogger.get_logger(name)


def setup_logging(level: int = logging.INFO, log_dir: Optional[str] = None, log_to_file: bool = False):
    """Setup logging configuration"""
    PoolLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file)
