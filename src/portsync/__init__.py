"""
PortSync - Portfolio Position Reconciliation

Rebuilds multi-asset holdings from a transaction log, revalues them
against live prices and an exchange rate, and publishes snapshots.
"""

from importlib.metadata import version

try:
    __version__ = version("portsync")
except Exception:
    __version__ = "0.0.0.dev"  # Fallback for development


__all__ = [
    "__version__",
]
