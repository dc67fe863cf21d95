"""
MySQL 连接池与同步相关表
"""
from typing import Dict, List, Any, Optional, Sequence, Iterator, Tuple
from contextlib import contextmanager
import pymysql
from pymysql.cursors import DictCursor
from dbutils.pooled_db import PooledDB
from loguru import logger

from ..config.config import DatabaseConfig


SYNC_TABLES = {
    'sync_config': """
        CREATE TABLE IF NOT EXISTS sync_config (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            user_id VARCHAR(100) NOT NULL,
            name VARCHAR(255) NOT NULL DEFAULT '',
            airtable_base_id VARCHAR(64) NOT NULL,
            airtable_table_id VARCHAR(64) NOT NULL,
            airtable_view_id VARCHAR(64),
            spreadsheet_id VARCHAR(128) NOT NULL,
            sheet_id VARCHAR(128) NOT NULL,
            field_mappings JSON NOT NULL,
            direction VARCHAR(32) NOT NULL,
            conflict_policy VARCHAR(32) NOT NULL DEFAULT 'AIRTABLE_WINS',
            options JSON,
            active TINYINT(1) NOT NULL DEFAULT 1,
            last_run_at TIMESTAMP NULL,
            last_run_status VARCHAR(20),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            INDEX idx_user (user_id)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    'sync_run': """
        CREATE TABLE IF NOT EXISTS sync_run (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            sync_config_id BIGINT NOT NULL,
            started_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            completed_at TIMESTAMP NULL,
            status VARCHAR(20) NOT NULL,
            direction VARCHAR(32),
            triggered_by VARCHAR(50) DEFAULT 'manual',
            dry_run TINYINT(1) NOT NULL DEFAULT 0,
            added INT DEFAULT 0,
            updated INT DEFAULT 0,
            deleted INT DEFAULT 0,
            error_count INT DEFAULT 0,
            errors JSON,
            warnings JSON,
            conflicts JSON,
            INDEX idx_config_status (sync_config_id, status, started_at)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    # 每个用户每个平台一条
    'connection_credential': """
        CREATE TABLE IF NOT EXISTS connection_credential (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            user_id VARCHAR(100) NOT NULL,
            provider VARCHAR(20) NOT NULL,
            encrypted_access_token TEXT NOT NULL,
            encrypted_refresh_token TEXT,
            expires_at TIMESTAMP NULL,
            needs_reauth TINYINT(1) NOT NULL DEFAULT 0,
            last_refresh_error TEXT,
            last_refresh_attempt TIMESTAMP NULL,
            scope TEXT,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            UNIQUE KEY uk_user_provider (user_id, provider)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
}


def _conditions(where: Dict[str, Any]) -> Tuple[str, List[Any]]:
    return ' AND '.join(f"{key} = %s" for key in where), list(where.values())


class Database:
    """MySQL 访问，供各 Repository 使用"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        try:
            self._pool = PooledDB(
                creator=pymysql,
                maxconnections=config.pool_size,
                mincached=1,
                maxcached=config.pool_size,
                blocking=True,
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                database=config.database,
                charset=config.charset,
                cursorclass=DictCursor
            )
        except pymysql.MySQLError as e:
            logger.error(f"Failed to connect to MySQL {config.host}:{config.port}: {e}")
            raise
        logger.info(f"Database connection pool initialized: {config.host}:{config.port}/{config.database}")

    @contextmanager
    def _cursor(self, commit: bool = False) -> Iterator[DictCursor]:
        """从连接池取连接，出错回滚，结束后归还"""
        conn = self._pool.connection()
        try:
            with conn.cursor() as cursor:
                yield cursor
            if commit:
                conn.commit()
        except pymysql.MySQLError as e:
            conn.rollback()
            logger.error(f"Database operation error: {e}")
            raise
        finally:
            conn.close()

    def execute(self, sql: str, params: Optional[Sequence] = None) -> int:
        """执行写语句，返回影响行数"""
        with self._cursor(commit=True) as cursor:
            return cursor.execute(sql, params)

    def query(self, sql: str, params: Optional[Sequence] = None) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            return list(cursor.fetchall())

    def query_one(self, sql: str, params: Optional[Sequence] = None) -> Optional[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.fetchone()

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """插入一行，返回自增 ID"""
        placeholders = ', '.join(['%s'] * len(data))
        sql = f"INSERT INTO {table} ({', '.join(data)}) VALUES ({placeholders})"
        with self._cursor(commit=True) as cursor:
            cursor.execute(sql, list(data.values()))
            return cursor.lastrowid

    def update(self, table: str, data: Dict[str, Any], where: Dict[str, Any]) -> int:
        assignments = ', '.join(f"{key} = %s" for key in data)
        condition, params = _conditions(where)
        return self.execute(
            f"UPDATE {table} SET {assignments} WHERE {condition}",
            list(data.values()) + params
        )

    def upsert(self, table: str, data: Dict[str, Any], unique_keys: List[str]) -> int:
        """按唯一键插入或更新，唯一键列本身不更新"""
        placeholders = ', '.join(['%s'] * len(data))
        changes = ', '.join(f"{key} = VALUES({key})" for key in data if key not in unique_keys)
        sql = (
            f"INSERT INTO {table} ({', '.join(data)}) VALUES ({placeholders}) "
            f"ON DUPLICATE KEY UPDATE {changes}"
        )
        return self.execute(sql, list(data.values()))

    def delete(self, table: str, where: Dict[str, Any]) -> int:
        condition, params = _conditions(where)
        return self.execute(f"DELETE FROM {table} WHERE {condition}", params)

    def create_sync_tables(self) -> None:
        """创建同步配置、运行记录和连接凭证表"""
        for name, ddl in SYNC_TABLES.items():
            self.execute(ddl)
            logger.debug(f"Table {name} verified")
        logger.info("Sync tables created/verified")
