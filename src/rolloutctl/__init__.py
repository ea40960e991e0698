"""rolloutctl - deployment state reconciliation for fleets of targets."""

__version__ = "0.1.0"
