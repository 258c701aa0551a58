"""Utility modules for Club Sync."""

from club_sync.utils.logger import setup_logging, get_logger
from club_sync.utils.display import ProgressDisplay

__all__ = ["setup_logging", "get_logger", "ProgressDisplay"]
