"""Command-line interface for fleetgate."""
