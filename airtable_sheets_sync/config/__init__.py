"""
配置模块
"""
from .config import (
    Config,
    DatabaseConfig,
    RedisConfig,
    AirtableConfig,
    GoogleConfig,
    SecurityConfig,
    SyncConfig,
    MonitorConfig,
)

__all__ = [
    "Config",
    "DatabaseConfig",
    "RedisConfig",
    "AirtableConfig",
    "GoogleConfig",
    "SecurityConfig",
    "SyncConfig",
    "MonitorConfig",
]
