"""Command line helpers for operating the analytics pipeline."""
