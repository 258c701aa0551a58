"""Tracking store and remote target connectors for Club Sync."""

from club_sync.connectors.tracking import TrackingStore

__all__ = ["TrackingStore"]
