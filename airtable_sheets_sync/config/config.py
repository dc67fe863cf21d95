"""
配置管理模块
"""
import json
import os
import re
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, asdict
from pathlib import Path


@dataclass
class DatabaseConfig:
    """数据库配置"""
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    database: str = ""
    charset: str = "utf8mb4"
    pool_size: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'charset': self.charset
        }


@dataclass
class RedisConfig:
    """Redis 配置（运行锁和基线快照，可选）"""
    enabled: bool = True
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


@dataclass
class AirtableConfig:
    """Airtable 配置"""
    client_id: str = ""
    client_secret: str = ""
    base_url: str = "https://api.airtable.com/v0"
    token_url: str = "https://airtable.com/oauth2/v1/token"
    timeout: int = 30
    requests_per_second: float = 5.0


@dataclass
class GoogleConfig:
    """Google Sheets 配置"""
    client_id: str = ""
    client_secret: str = ""
    sheets_url: str = "https://sheets.googleapis.com/v4"
    drive_url: str = "https://www.googleapis.com/drive/v3"
    token_url: str = "https://oauth2.googleapis.com/token"
    timeout: int = 30
    requests_per_second: float = 1.0


@dataclass
class SecurityConfig:
    """加密配置"""
    encryption_key: str = ""  # 64 位十六进制（AES-256）

    def key_is_valid(self) -> bool:
        return bool(re.fullmatch(r"[0-9a-fA-F]{64}", self.encryption_key or ""))


@dataclass
class SyncConfig:
    """同步引擎配置"""
    max_retries: int = 3  # 重试次数
    retry_base_delay: float = 1.0  # 退避基数（秒）
    lock_window_seconds: int = 300  # 运行锁窗口（秒）
    token_expiry_buffer: int = 300  # 令牌提前刷新时间（秒）
    max_captured_errors: int = 50  # 单次运行保留的错误数
    enable_cache: bool = True  # 是否使用 Redis 保存基线
    cache_ttl: int = 30 * 86400  # 基线过期时间（秒）

    # 各同步配置的默认选项，可被 SyncConfiguration.options 覆盖
    default_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MonitorConfig:
    """监控配置"""
    alert_webhook: Optional[str] = None
    notify_on_partial: bool = False
    log_level: str = "INFO"
    log_file: str = "sync.log"
    log_max_size: str = "100MB"
    log_backup_count: int = 10


# 环境变量覆盖，避免把密钥写进配置文件
ENV_OVERRIDES = {
    "ENCRYPTION_KEY": "security.encryption_key",
    "AIRTABLE_CLIENT_ID": "airtable.client_id",
    "AIRTABLE_CLIENT_SECRET": "airtable.client_secret",
    "GOOGLE_CLIENT_ID": "google.client_id",
    "GOOGLE_CLIENT_SECRET": "google.client_secret",
    "SYNC_DB_PASSWORD": "database.password",
    "SYNC_ALERT_WEBHOOK": "monitor.alert_webhook",
}


class Config:
    """配置管理器"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config_file()
        self._data: Dict[str, Any] = {}

        # 配置对象
        self.database: Optional[DatabaseConfig] = None
        self.redis: Optional[RedisConfig] = None
        self.airtable: Optional[AirtableConfig] = None
        self.google: Optional[GoogleConfig] = None
        self.security: Optional[SecurityConfig] = None
        self.sync: Optional[SyncConfig] = None
        self.monitor: Optional[MonitorConfig] = None

        # 加载配置
        self.load()

    def _find_config_file(self) -> str:
        """查找配置文件"""
        search_paths = [
            Path.cwd() / "config.json",
            Path.cwd() / "config" / "config.json",
            Path.home() / ".airtable_sheets_sync" / "config.json",
            Path("/etc/airtable_sheets_sync/config.json")
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        # 默认配置文件路径
        return str(Path.cwd() / "config.json")

    def load(self) -> None:
        """加载配置文件"""
        if not os.path.exists(self.config_path):
            self._create_default_config()

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._data = json.load(f)

        self._apply_env_overrides()
        self._parse_config()

    def _apply_env_overrides(self) -> None:
        """使用环境变量覆盖配置"""
        for env_name, key in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                self._set_raw(key, value)

    def _parse_config(self) -> None:
        """解析配置"""
        self.database = DatabaseConfig(**self._data.get('database', {}))
        self.redis = RedisConfig(**self._data.get('redis', {}))
        self.airtable = AirtableConfig(**self._data.get('airtable', {}))
        self.google = GoogleConfig(**self._data.get('google', {}))
        self.security = SecurityConfig(**self._data.get('security', {}))
        self.sync = SyncConfig(**self._data.get('sync', {}))
        self.monitor = MonitorConfig(**self._data.get('monitor', {}))

    def _create_default_config(self) -> None:
        """创建默认配置文件"""
        default_config = {
            "database": {
                "host": "localhost",
                "port": 3306,
                "user": "root",
                "password": "",
                "database": "airtable_sheets_sync"
            },
            "redis": {
                "enabled": True,
                "host": "localhost",
                "port": 6379
            },
            "airtable": {
                "client_id": "your_airtable_client_id",
                "client_secret": "your_airtable_client_secret"
            },
            "google": {
                "client_id": "your_google_client_id",
                "client_secret": "your_google_client_secret"
            },
            "security": {
                "encryption_key": ""
            },
            "sync": {
                "max_retries": 3,
                "lock_window_seconds": 300,
                "default_options": {
                    "include_header": True,
                    "validation_mode": "lenient"
                }
            },
            "monitor": {
                "log_level": "INFO",
                "log_file": "sync.log"
            }
        }

        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(default_config, f, indent=4, ensure_ascii=False)

        self._data = default_config

    def save(self) -> None:
        """保存配置（不写入加密密钥）"""
        config_dict = {
            "database": asdict(self.database) if self.database else {},
            "redis": asdict(self.redis) if self.redis else {},
            "airtable": asdict(self.airtable) if self.airtable else {},
            "google": asdict(self.google) if self.google else {},
            "security": {"encryption_key": ""},
            "sync": asdict(self.sync) if self.sync else {},
            "monitor": asdict(self.monitor) if self.monitor else {}
        }

        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(config_dict, f, indent=4, ensure_ascii=False)

    def validate(self) -> bool:
        """验证配置是否有效"""
        if not self.security or not self.security.key_is_valid():
            raise ValueError("ENCRYPTION_KEY 必须是 64 位十六进制字符串（32 字节）")

        if not self.database or not self.database.host or not self.database.database:
            raise ValueError("数据库配置缺少必要信息")

        if not self.airtable or not self.airtable.client_id or not self.airtable.client_secret:
            raise ValueError("Airtable 配置缺少 client_id 或 client_secret")

        if not self.google or not self.google.client_id or not self.google.client_secret:
            raise ValueError("Google 配置缺少 client_id 或 client_secret")

        if self.sync.max_retries < 0 or self.sync.lock_window_seconds <= 0:
            raise ValueError("同步配置的重试次数或锁窗口无效")

        return True

    def get(self, key: str, default: Any = None) -> Any:
        """获取配置值"""
        keys = key.split('.')
        value = self._data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def _set_raw(self, key: str, value: Any) -> None:
        keys = key.split('.')
        data = self._data

        for k in keys[:-1]:
            if k not in data:
                data[k] = {}
            data = data[k]

        data[keys[-1]] = value

    def set(self, key: str, value: Any) -> None:
        """设置配置值"""
        self._set_raw(key, value)
        self._parse_config()

    def reload(self) -> None:
        """重新加载配置"""
        self.load()
