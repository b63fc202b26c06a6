"""CLI module for parley."""
