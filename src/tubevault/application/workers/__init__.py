"""Background workers: the download queue, its executor and housekeeping."""

from .downloader import Downloader
from .queue_maintenance_worker import QueueMaintenanceWorker
from .queue_manager import QueueManager
from .queue_recovery import QueueRecoveryService, RecoveryReport

__all__ = [
    "Downloader",
    "QueueMaintenanceWorker",
    "QueueManager",
    "QueueRecoveryService",
    "RecoveryReport",
]
