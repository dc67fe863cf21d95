"""
同步配置级别的运行锁
"""
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional, Set

import redis
from loguru import logger

from ..db.repository import SyncRunRepository
from .errors import ConcurrencyError


# 只删除自己持有的锁
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RunLock:
    """同一配置同一时间只允许一次运行

    以 RUNNING 状态的 SyncRun 记录为准，进程内用线程锁保证检查和占用是一步完成的；
    Redis 可用时再加一层带令牌的 SET NX，防止多个进程并发启动。
    """

    def __init__(self, runs: SyncRunRepository, redis_client: Optional[redis.Redis] = None,
                 window_seconds: int = 300):
        self.runs = runs
        self.redis = redis_client
        self.window_seconds = window_seconds
        self._mutex = threading.Lock()
        self._held: Set[int] = set()
        self._tokens: Dict[int, str] = {}

    def _key(self, config_id: int) -> str:
        return f"sync_lock:{config_id}"

    def acquire(self, config_id: int) -> None:
        """获取锁，已有运行中的任务时抛出 ConcurrencyError"""
        with self._mutex:
            if config_id in self._held:
                raise ConcurrencyError(f"A sync is already in progress for config {config_id}")

            since = datetime.now() - timedelta(seconds=self.window_seconds)
            running = self.runs.find_running(config_id, since)
            if running is not None:
                raise ConcurrencyError(
                    f"A sync is already in progress for config {config_id} (run {running.id})"
                )

            if self.redis is not None:
                token = uuid.uuid4().hex
                try:
                    acquired = self.redis.set(self._key(config_id), token, nx=True, ex=self.window_seconds)
                except redis.RedisError as e:
                    logger.warning(f"Redis lock unavailable, relying on run records: {e}")
                else:
                    if not acquired:
                        raise ConcurrencyError(f"A sync is already in progress for config {config_id}")
                    self._tokens[config_id] = token

            self._held.add(config_id)

    def release(self, config_id: int) -> None:
        """释放锁，Redis 中的键已被他人持有时不删除"""
        with self._mutex:
            self._held.discard(config_id)
            token = self._tokens.pop(config_id, None)

        if self.redis is None or token is None:
            return
        try:
            released = self.redis.eval(RELEASE_SCRIPT, 1, self._key(config_id), token)
        except redis.RedisError as e:
            logger.warning(f"Failed to release sync lock for config {config_id}: {e}")
            return
        if not released:
            logger.warning(f"Sync lock for config {config_id} expired before release")
