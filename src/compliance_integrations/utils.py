"""
Logging setup and small helpers shared across modules.
"""

import hashlib
import logging


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging for the integration framework.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def short_hash(value: str) -> str:
    """Short SHA-256 hash for logging secrets (state tokens etc.) safely."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]
