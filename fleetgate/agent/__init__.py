"""Agent integration for fleetgate."""
