"""CLI commands for rolloutctl."""
