"""Storage backends behind the common ``StorageBackend`` interface."""

from .base import LegacyBundle, StorageBackend
from .local_store import LocalStore
from .mirror_store import MirrorStore, MirrorWriteReport
from .remote_store import RemoteStore

__all__ = [
    'LegacyBundle',
    'LocalStore',
    'MirrorStore',
    'MirrorWriteReport',
    'RemoteStore',
    'StorageBackend',
]
