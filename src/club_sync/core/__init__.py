"""Core sync components for Club Sync."""
