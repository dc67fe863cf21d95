"""
数据库模型定义
"""
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from enum import Enum
import json

from ..core.errors import ConfigurationError


class SyncDirection(Enum):
    """同步方向枚举"""
    AIRTABLE_TO_SHEETS = "AIRTABLE_TO_SHEETS"
    SHEETS_TO_AIRTABLE = "SHEETS_TO_AIRTABLE"
    BIDIRECTIONAL = "BIDIRECTIONAL"

    @classmethod
    def _missing_(cls, value):
        # 兼容 A_TO_B / B_TO_A 写法
        return {"A_TO_B": cls.AIRTABLE_TO_SHEETS, "B_TO_A": cls.SHEETS_TO_AIRTABLE}.get(value)

    @property
    def writes_sheets(self) -> bool:
        return self in (SyncDirection.AIRTABLE_TO_SHEETS, SyncDirection.BIDIRECTIONAL)

    @property
    def writes_airtable(self) -> bool:
        return self in (SyncDirection.SHEETS_TO_AIRTABLE, SyncDirection.BIDIRECTIONAL)


class ConflictPolicy(Enum):
    """冲突策略枚举"""
    AIRTABLE_WINS = "AIRTABLE_WINS"
    SHEETS_WINS = "SHEETS_WINS"
    NEWEST_WINS = "NEWEST_WINS"

    @classmethod
    def _missing_(cls, value):
        return {"A_WINS": cls.AIRTABLE_WINS, "B_WINS": cls.SHEETS_WINS}.get(value)


class RunStatus(Enum):
    """运行状态枚举"""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class ValidationMode(Enum):
    """校验模式枚举"""
    STRICT = "strict"
    LENIENT = "lenient"


class Provider(Enum):
    """OAuth 提供方"""
    AIRTABLE = "AIRTABLE"
    GOOGLE = "GOOGLE"


# Google Sheets 的 AA 列（从 0 开始计数）
DEFAULT_ID_COLUMN_INDEX = 26

# 兼容驼峰写法的选项名
OPTION_ALIASES = {
    "batchSize": "batch_size",
    "maxRetries": "max_retries",
    "includeHeader": "include_header",
    "deleteExtraRows": "delete_extra_rows",
    "deleteExtraRecords": "delete_extra_records",
    "resolveLinkedRecords": "resolve_linked_records",
    "createMissingLinkedRecords": "create_missing_linked_records",
    "validationMode": "validation_mode",
    "idColumnIndex": "id_column_index",
    "revisionFieldId": "revision_field_id",
    "requiredFields": "required_fields",
}


@dataclass
class SyncOptions:
    """单个同步配置的运行选项"""
    batch_size: Dict[str, int] = field(default_factory=dict)  # {"airtable": 10, "sheets": 500}
    max_retries: int = 3
    include_header: bool = True
    delete_extra_rows: bool = False
    delete_extra_records: bool = False
    resolve_linked_records: bool = True
    create_missing_linked_records: bool = False
    validation_mode: ValidationMode = ValidationMode.LENIENT
    id_column_index: Optional[int] = None
    revision_field_id: Optional[str] = None
    required_fields: List[str] = field(default_factory=list)

    @property
    def identity_column(self) -> int:
        """ID 列索引，未配置时使用隐藏的 AA 列"""
        if self.id_column_index is None:
            return DEFAULT_ID_COLUMN_INDEX
        return self.id_column_index

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]],
                  defaults: Optional[Dict[str, Any]] = None) -> 'SyncOptions':
        """从字典创建，未知选项视为配置错误"""
        merged: Dict[str, Any] = {}
        known = {f.name for f in fields(cls)}
        for source in (defaults or {}, data or {}):
            for key, value in source.items():
                name = OPTION_ALIASES.get(key, key)
                if name not in known:
                    raise ConfigurationError(f"Unknown sync option: {key}")
                merged[name] = value

        mode = merged.get('validation_mode', ValidationMode.LENIENT)
        if not isinstance(mode, ValidationMode):
            try:
                merged['validation_mode'] = ValidationMode(str(mode).lower())
            except ValueError:
                raise ConfigurationError(f"Invalid validation mode: {mode}")

        batch_size = merged.get('batch_size', {})
        if isinstance(batch_size, int):
            batch_size = {"airtable": batch_size, "sheets": batch_size}
        if not isinstance(batch_size, dict):
            raise ConfigurationError("batch_size must be an integer or a per-side mapping")
        for side, size in batch_size.items():
            if side not in ("airtable", "sheets") or not isinstance(size, int) or size < 1:
                raise ConfigurationError(f"Invalid batch size for {side}: {size}")
        merged['batch_size'] = batch_size

        if merged.get('max_retries', 3) < 0:
            raise ConfigurationError("max_retries must not be negative")

        return cls(**merged)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['validation_mode'] = self.validation_mode.value
        return data


def _parse_json(value: Any, default: Any) -> Any:
    if value is None or value == '':
        return default
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


class SyncConfiguration:
    """同步配置模型"""

    def __init__(self, **kwargs):
        self.id = kwargs.get('id')
        self.user_id = kwargs.get('user_id')
        self.name = kwargs.get('name', '')
        self.airtable_base_id = kwargs.get('airtable_base_id')
        self.airtable_table_id = kwargs.get('airtable_table_id')
        self.airtable_view_id = kwargs.get('airtable_view_id')
        self.spreadsheet_id = kwargs.get('spreadsheet_id')
        self.sheet_id = kwargs.get('sheet_id')
        # {Airtable 字段 ID: 表格列索引(从 0 开始)}
        self.field_mappings: Dict[str, int] = kwargs.get('field_mappings') or {}
        self.direction = kwargs.get('direction', SyncDirection.AIRTABLE_TO_SHEETS)
        self.conflict_policy = kwargs.get('conflict_policy', ConflictPolicy.AIRTABLE_WINS)
        self.options: SyncOptions = kwargs.get('options') or SyncOptions()
        self.active = kwargs.get('active', True)
        self.last_run_at = kwargs.get('last_run_at')
        self.last_run_status = kwargs.get('last_run_status')
        self.created_at = kwargs.get('created_at', datetime.now())

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'airtable_base_id': self.airtable_base_id,
            'airtable_table_id': self.airtable_table_id,
            'airtable_view_id': self.airtable_view_id,
            'spreadsheet_id': self.spreadsheet_id,
            'sheet_id': self.sheet_id,
            'field_mappings': json.dumps(self.field_mappings),
            'direction': self.direction.value,
            'conflict_policy': self.conflict_policy.value,
            'options': json.dumps(self.options.to_dict()),
            'active': self.active,
        }

    @staticmethod
    def from_db_record(record: Dict[str, Any],
                       default_options: Optional[Dict[str, Any]] = None) -> 'SyncConfiguration':
        """从数据库记录创建对象，JSON 或枚举值非法时抛出 ConfigurationError"""
        record = dict(record)
        try:
            mappings = _parse_json(record.get('field_mappings'), {})
            record['field_mappings'] = {key: int(value) for key, value in mappings.items()}
            options = _parse_json(record.get('options'), {})
            record['direction'] = SyncDirection(record.get('direction'))
            record['conflict_policy'] = ConflictPolicy(
                record.get('conflict_policy') or ConflictPolicy.AIRTABLE_WINS.value
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid sync configuration {record.get('id')}: {e}")
        record['options'] = SyncOptions.from_dict(options, default_options)
        record['active'] = bool(record.get('active', True))
        return SyncConfiguration(**record)


class ConnectionCredential:
    """OAuth 连接凭证（令牌均为密文）"""

    def __init__(self, **kwargs):
        self.id = kwargs.get('id')
        self.user_id = kwargs.get('user_id')
        self.provider = kwargs.get('provider')
        self.encrypted_access_token = kwargs.get('encrypted_access_token')
        self.encrypted_refresh_token = kwargs.get('encrypted_refresh_token')
        self.expires_at: Optional[datetime] = kwargs.get('expires_at')
        self.needs_reauth = bool(kwargs.get('needs_reauth', False))
        self.last_refresh_error = kwargs.get('last_refresh_error')
        self.last_refresh_attempt = kwargs.get('last_refresh_attempt')
        self.scope = kwargs.get('scope')

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'user_id': self.user_id,
            'provider': self.provider.value,
            'encrypted_access_token': self.encrypted_access_token,
            'encrypted_refresh_token': self.encrypted_refresh_token,
            'expires_at': self.expires_at,
            'needs_reauth': int(self.needs_reauth),
            'last_refresh_error': self.last_refresh_error,
            'last_refresh_attempt': self.last_refresh_attempt,
            'scope': self.scope,
        }

    @staticmethod
    def from_db_record(record: Dict[str, Any]) -> 'ConnectionCredential':
        """从数据库记录创建对象"""
        record = dict(record)
        record['provider'] = Provider(record['provider'])
        return ConnectionCredential(**record)


class SyncRun:
    """同步运行记录"""

    def __init__(self, **kwargs):
        self.id = kwargs.get('id')
        self.sync_config_id = kwargs.get('sync_config_id')
        self.started_at = kwargs.get('started_at', datetime.now())
        self.completed_at = kwargs.get('completed_at')
        self.status = kwargs.get('status', RunStatus.RUNNING)
        self.direction = kwargs.get('direction')
        self.triggered_by = kwargs.get('triggered_by', 'manual')
        self.dry_run = bool(kwargs.get('dry_run', False))
        self.added = kwargs.get('added', 0)
        self.updated = kwargs.get('updated', 0)
        self.deleted = kwargs.get('deleted', 0)
        self.error_count = kwargs.get('error_count', 0)
        self.errors: List[Dict[str, Any]] = kwargs.get('errors') or []
        self.warnings: List[str] = kwargs.get('warnings') or []
        self.conflicts: Optional[Dict[str, int]] = kwargs.get('conflicts')

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'sync_config_id': self.sync_config_id,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'status': self.status.value,
            'direction': self.direction.value if self.direction else None,
            'triggered_by': self.triggered_by,
            'dry_run': int(self.dry_run),
            'added': self.added,
            'updated': self.updated,
            'deleted': self.deleted,
            'error_count': self.error_count,
            'errors': json.dumps(self.errors, ensure_ascii=False),
            'warnings': json.dumps(self.warnings, ensure_ascii=False),
            'conflicts': json.dumps(self.conflicts) if self.conflicts is not None else None,
        }

    @staticmethod
    def from_db_record(record: Dict[str, Any]) -> 'SyncRun':
        """从数据库记录创建对象"""
        record = dict(record)
        record['status'] = RunStatus(record['status'])
        if record.get('direction'):
            record['direction'] = SyncDirection(record['direction'])
        record['errors'] = _parse_json(record.get('errors'), [])
        record['warnings'] = _parse_json(record.get('warnings'), [])
        record['conflicts'] = _parse_json(record.get('conflicts'), None)
        return SyncRun(**record)
