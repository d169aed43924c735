"""
FastAPI dependencies for the sync services

Each returns the process-wide singleton; tests swap them through
app.dependency_overrides.
"""
from ..services.asset_cache import OfflineAssetCache, asset_cache
from ..services.connectivity import ConnectivityWatcher, connectivity_watcher
from ..services.offline_queue import OfflineQueue, offline_queue
from ..services.status_monitor import StatusMonitor, status_monitor
from ..services.sync_engine import SyncEngine, sync_engine


def get_offline_queue() -> OfflineQueue:
    return offline_queue


def get_sync_engine() -> SyncEngine:
    return sync_engine


def get_connectivity_watcher() -> ConnectivityWatcher:
    return connectivity_watcher


def get_status_monitor() -> StatusMonitor:
    return status_monitor


def get_asset_cache() -> OfflineAssetCache:
    return asset_cache
