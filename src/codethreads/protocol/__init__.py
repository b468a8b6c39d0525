"""Filesystem protocol: models, atomic IO and locks."""
