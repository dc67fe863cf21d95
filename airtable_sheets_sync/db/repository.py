"""
持久化接口及其 MySQL 实现
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional, List

from loguru import logger

from ..core.errors import ConfigurationError
from .database import Database
from .models import (
    SyncConfiguration, ConnectionCredential, SyncRun, RunStatus, Provider
)


class CredentialRepository(ABC):
    """连接凭证存取接口"""

    @abstractmethod
    def get(self, user_id: str, provider: Provider) -> Optional[ConnectionCredential]:
        """读取凭证，不存在时返回 None"""
        pass

    @abstractmethod
    def save(self, credential: ConnectionCredential) -> None:
        """新建或更新凭证"""
        pass

    @abstractmethod
    def delete(self, user_id: str, provider: Provider) -> bool:
        """删除凭证"""
        pass


class SyncConfigRepository(ABC):
    """同步配置存取接口"""

    @abstractmethod
    def get(self, config_id: int) -> Optional[SyncConfiguration]:
        pass

    @abstractmethod
    def list_active(self) -> List[SyncConfiguration]:
        pass

    @abstractmethod
    def update_last_run(self, config_id: int, run_at: datetime, status: RunStatus) -> None:
        pass


class SyncRunRepository(ABC):
    """运行记录存取接口"""

    @abstractmethod
    def create(self, run: SyncRun) -> int:
        """保存新的运行记录，返回 ID"""
        pass

    @abstractmethod
    def complete(self, run: SyncRun) -> None:
        """写入最终结果，已完成的记录不可再修改"""
        pass

    @abstractmethod
    def find_running(self, config_id: int, since: datetime) -> Optional[SyncRun]:
        """查找指定时间之后开始且仍在运行的记录"""
        pass

    @abstractmethod
    def list_recent(self, config_id: int, limit: int = 20) -> List[SyncRun]:
        pass


class MySQLCredentialRepository(CredentialRepository):
    """基于 MySQL 的凭证存取"""

    TABLE = "connection_credential"

    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: str, provider: Provider) -> Optional[ConnectionCredential]:
        record = self.db.query_one(
            f"SELECT * FROM {self.TABLE} WHERE user_id = %s AND provider = %s",
            (user_id, provider.value)
        )
        return ConnectionCredential.from_db_record(record) if record else None

    def save(self, credential: ConnectionCredential) -> None:
        self.db.upsert(self.TABLE, credential.to_dict(), ['user_id', 'provider'])

    def delete(self, user_id: str, provider: Provider) -> bool:
        return self.db.delete(self.TABLE, {'user_id': user_id, 'provider': provider.value}) > 0


class MySQLSyncConfigRepository(SyncConfigRepository):
    """基于 MySQL 的同步配置存取"""

    TABLE = "sync_config"

    def __init__(self, db: Database, default_options: Optional[Dict[str, Any]] = None):
        self.db = db
        self.default_options = default_options or {}

    def get(self, config_id: int) -> Optional[SyncConfiguration]:
        record = self.db.query_one(f"SELECT * FROM {self.TABLE} WHERE id = %s", (config_id,))
        if not record:
            return None
        return SyncConfiguration.from_db_record(record, self.default_options)

    def list_active(self) -> List[SyncConfiguration]:
        records = self.db.query(f"SELECT * FROM {self.TABLE} WHERE active = 1 ORDER BY id")
        configs = []
        for record in records:
            try:
                configs.append(SyncConfiguration.from_db_record(record, self.default_options))
            except ConfigurationError as e:
                logger.warning(f"Skipping invalid sync config {record.get('id')}: {e}")
        return configs

    def update_last_run(self, config_id: int, run_at: datetime, status: RunStatus) -> None:
        self.db.update(
            self.TABLE,
            {'last_run_at': run_at, 'last_run_status': status.value},
            {'id': config_id}
        )


class MySQLSyncRunRepository(SyncRunRepository):
    """基于 MySQL 的运行记录存取"""

    TABLE = "sync_run"

    def __init__(self, db: Database):
        self.db = db

    def create(self, run: SyncRun) -> int:
        run.id = self.db.insert(self.TABLE, run.to_dict())
        return run.id

    def complete(self, run: SyncRun) -> None:
        data = run.to_dict()
        data.pop('sync_config_id')
        data.pop('started_at')
        affected = self.db.execute(
            f"UPDATE {self.TABLE} SET {', '.join(f'{k} = %s' for k in data)} "
            f"WHERE id = %s AND completed_at IS NULL",
            list(data.values()) + [run.id]
        )
        if not affected:
            logger.warning(f"Sync run {run.id} is already completed, result not stored")

    def find_running(self, config_id: int, since: datetime) -> Optional[SyncRun]:
        record = self.db.query_one(
            f"SELECT * FROM {self.TABLE} WHERE sync_config_id = %s AND status = %s "
            f"AND started_at >= %s ORDER BY started_at DESC LIMIT 1",
            (config_id, RunStatus.RUNNING.value, since)
        )
        return SyncRun.from_db_record(record) if record else None

    def list_recent(self, config_id: int, limit: int = 20) -> List[SyncRun]:
        records = self.db.query(
            f"SELECT * FROM {self.TABLE} WHERE sync_config_id = %s ORDER BY started_at DESC LIMIT %s",
            (config_id, limit)
        )
        return [SyncRun.from_db_record(record) for record in records]
