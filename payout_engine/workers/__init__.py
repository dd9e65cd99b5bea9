"""Background workers: view sync and settlement reconciliation."""
from .reconciliation_worker import start_reconciliation_worker
from .view_sync_worker import start_view_sync_worker, sync_views

__all__ = ["start_reconciliation_worker", "start_view_sync_worker", "sync_views"]
