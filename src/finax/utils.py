"""
Shared utility functions for Finax.

Contains path helpers and small formatting helpers used across packages.
"""

import os
from pathlib import Path
from typing import Optional


def get_app_dir() -> Path:
    """Get the application data directory (FINAX_HOME or ~/.finax)."""
    env_dir = os.environ.get("FINAX_HOME")
    if env_dir:
        app_dir = Path(env_dir).expanduser()
    else:
        app_dir = Path.home() / ".finax"

    app_dir.mkdir(parents=True, exist_ok=True)
    return app_dir


def get_logs_dir(base: Optional[Path] = None) -> Path:
    """Get the logs directory."""
    logs_dir = (base or get_app_dir()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def format_address(address: str, chars: int = 4) -> str:
    """Format address as 0x1234...5678"""
    if not address or len(address) <= chars * 2 + 2:
        return address
    return f"{address[:chars+2]}...{address[-chars:]}"


def normalize_address(address: str) -> str:
    """Lower-case an address for use as an index key."""
    return address.strip().lower()
