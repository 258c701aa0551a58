"""Club Sync - member administration to directory, mailing list and helpdesk."""

__version__ = "1.0.0"
__author__ = "Club Sync Contributors"

from club_sync.config import Settings

__all__ = ["Settings", "__version__"]
