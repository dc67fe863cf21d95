"""数据库操作模块"""

from .database import Database
from .models import SyncConfiguration, SyncOptions, ConnectionCredential, SyncRun
from .repository import (
    CredentialRepository,
    SyncConfigRepository,
    SyncRunRepository,
    MySQLCredentialRepository,
    MySQLSyncConfigRepository,
    MySQLSyncRunRepository,
)

__all__ = [
    "Database",
    "SyncConfiguration",
    "SyncOptions",
    "ConnectionCredential",
    "SyncRun",
    "CredentialRepository",
    "SyncConfigRepository",
    "SyncRunRepository",
    "MySQLCredentialRepository",
    "MySQLSyncConfigRepository",
    "MySQLSyncRunRepository",
]
