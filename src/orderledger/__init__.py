"""orderledger: gift certificate balances and merge-safe order records."""

__version__ = "0.1.0"
