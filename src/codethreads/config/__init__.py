"""Configuration loading for codethreads."""
