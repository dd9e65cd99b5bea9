"""Creator payout engine: view tracking, CPM payouts and multi-rail disbursement."""

__version__ = "0.1.0"
