"""Command line interface for RMRI."""
