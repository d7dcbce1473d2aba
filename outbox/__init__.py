"""
Offline outbox: durable client-side queue replayed on reconnect.

Usage:
    from outbox import ConnectivityMonitor, HttpTransport, JsonFileStorage, Outbox

    monitor = ConnectivityMonitor()
    outbox = Outbox(JsonFileStorage())
    outbox.setup_auto_sync(monitor, HttpTransport(url))
"""

from .connectivity import ConnectivityMonitor
from .queue import MAX_RETRIES, QUEUE_KEY, RETRY_DELAY, Outbox, QueuedMessage, SyncReport
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage
from .transport import HttpTransport

__all__ = [
    "Outbox",
    "QueuedMessage",
    "SyncReport",
    "QUEUE_KEY",
    "MAX_RETRIES",
    "RETRY_DELAY",
    "KeyValueStorage",
    "MemoryStorage",
    "JsonFileStorage",
    "ConnectivityMonitor",
    "HttpTransport",
]
