"""Command line interface for chart-sync."""
