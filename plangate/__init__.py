"""plangate: subscription reconciliation and quota enforcement."""

__version__ = "0.1.0"
