"""Generation job lifecycle and credit ledger."""

__version__ = "0.1.0"
