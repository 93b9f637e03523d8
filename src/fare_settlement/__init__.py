"""Payment settlement and wallet ledger for a booking marketplace."""

__version__ = "1.0.0"
