"""Command-line entry points for Converge."""
