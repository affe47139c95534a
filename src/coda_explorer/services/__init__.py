from coda_explorer.services.exporter import BlockExporter
from coda_explorer.services.reconciler import Reconciler, ReconcileResult
from coda_explorer.services.scheduler import IndexerScheduler, SyncState

__all__ = ["BlockExporter", "Reconciler", "ReconcileResult", "IndexerScheduler", "SyncState"]
