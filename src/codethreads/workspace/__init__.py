"""Isolated working copies and worker naming."""
