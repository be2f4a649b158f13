"""CLI module for rotaguard."""
