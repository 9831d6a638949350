"""
Entry point for running fleetgate as a module: python -m fleetgate
"""

from fleetgate.cli.commands import app

if __name__ == "__main__":
    app()
