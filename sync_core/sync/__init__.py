"""
InvoiceSync sync engine.

- SyncOrchestrator: pull / push / bidirectional attempts with audit logging
- SyncRunner: background attempts with polling and cooperative cancel
"""
from sync_core.sync.orchestrator import RecordDetail, SyncOrchestrator, SyncResult, remote_wins
from sync_core.sync.runner import SyncRunner

__all__ = [
    "RecordDetail",
    "SyncOrchestrator",
    "SyncResult",
    "SyncRunner",
    "remote_wins",
]
