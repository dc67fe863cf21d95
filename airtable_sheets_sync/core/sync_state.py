"""
同步基线：每次运行结束时记录两端一致的字段值，用于判断哪一端发生了修改
"""
import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

import redis
from loguru import logger


@dataclass
class BaselineEntry:
    """单条记录的基线"""
    fields: Dict[str, str] = field(default_factory=dict)
    position: Optional[int] = None  # 在表格中的相对顺序

    def to_dict(self) -> Dict[str, Any]:
        return {'fields': self.fields, 'position': self.position}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'BaselineEntry':
        return BaselineEntry(dict(data.get('fields', {})), data.get('position'))


class SyncStateStore:
    """基线存储，优先使用 Redis，不可用时退化为进程内存"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl: int = 30 * 86400):
        self.redis = redis_client
        self.use_redis = redis_client is not None
        self.ttl = ttl

        # 内存快照缓存（当Redis不可用时使用）
        self.memory_snapshots: Dict[str, str] = {}

    def _get_snapshot_key(self, config_id: int) -> str:
        return f"sync_state:{config_id}"

    def load(self, config_id: int) -> Dict[str, BaselineEntry]:
        """读取基线，不存在时返回空字典"""
        key = self._get_snapshot_key(config_id)

        raw = None
        if self.use_redis:
            try:
                raw = self.redis.get(key)
            except redis.RedisError as e:
                logger.warning(f"Failed to load sync state for config {config_id}: {e}")
        else:
            raw = self.memory_snapshots.get(key)

        if not raw:
            return {}

        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding corrupt sync state for config {config_id}: {e}")
            return {}
        return {identity: BaselineEntry.from_dict(entry) for identity, entry in data.get('entries', {}).items()}

    def save(self, config_id: int, entries: Dict[str, BaselineEntry]) -> None:
        """保存基线"""
        key = self._get_snapshot_key(config_id)
        payload = json.dumps(
            {'entries': {identity: entry.to_dict() for identity, entry in entries.items()}},
            ensure_ascii=False
        )

        if self.use_redis:
            self.redis.set(key, payload, ex=self.ttl)
        else:
            self.memory_snapshots[key] = payload
        logger.debug(f"Saved sync state for config {config_id}: {len(entries)} records")

    def reset(self, config_id: int) -> None:
        """重置基线，下次双向同步时所有差异都按冲突处理"""
        key = self._get_snapshot_key(config_id)

        if self.use_redis:
            self.redis.delete(key)
        else:
            self.memory_snapshots.pop(key, None)

        logger.info(f"Reset sync state for config {config_id}")

    def get_info(self, config_id: int) -> Dict[str, Any]:
        """获取基线信息"""
        entries = self.load(config_id)
        return {
            'config_id': config_id,
            'record_count': len(entries),
            'storage': 'redis' if self.use_redis else 'memory',
        }
