"""
fleetgate - dispatch commands to remote execution nodes through a gateway.
"""

__version__ = "0.1.0"
__logo__ = "🛰"
