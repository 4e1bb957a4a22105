"""Command line helpers for a running wallet center."""
