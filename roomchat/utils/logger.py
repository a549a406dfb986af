"""
Centralized logging configuration for roomchat.

Provides colored console output and separate loggers for the node
subsystems (transport, peer, connections, gossip, discovery, bridge).
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import colorlog


class RoomChatLogger:
    """Centralized logger for roomchat components"""

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: int = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
        force: bool = False,
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_dir: Directory for log files. If None, uses ./logs
            log_to_file: Whether to write logs to file
            force: Reconfigure even if setup already ran
        """
        if cls._initialized and not force:
            return

        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            cls._log_dir.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger("roomchat")
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        # Chat output goes to stdout, keep diagnostics on stderr
        console_handler = colorlog.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_formatter = colorlog.ColoredFormatter(
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
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

        if log_to_file and cls._log_dir:
            file_handler = logging.FileHandler(cls._log_dir / "roomchat.log")
            file_handler.setLevel(level)
            file_formatter = logging.Formatter(
                "%(asctime)s [%(name)s] %(levelname)-8s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            file_handler.setFormatter(file_formatter)
            root_logger.addHandler(file_handler)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger for a specific subsystem.

        Args:
            name: Subsystem name (e.g., 'transport', 'gossip')

        Returns:
            Logger instance
        """
        if not cls._initialized:
            cls.setup()

        return logging.getLogger(f"roomchat.{name}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return RoomChatLogger.get_logger(name)


def setup_logging(level: int = logging.INFO, log_dir: Optional[str] = None):
    """Setup logging configuration, writing a file only when log_dir is given"""
    RoomChatLogger.setup(level=level, log_dir=log_dir, log_to_file=log_dir is not None, force=True)


def short_id(peer_id: str) -> str:
    """Abbreviate a peer id for log lines."""
    if len(peer_id) > 16:
        return f"{peer_id[:8]}...{peer_id[-6:]}"
    return peer_id
