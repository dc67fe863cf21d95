"""
测试用的内存存储和假客户端
"""
from datetime import datetime
from typing import Dict, List, Any, Optional, Callable
from unittest.mock import Mock

from airtable_sheets_sync.clients.airtable import AirtableTable, AirtableField
from airtable_sheets_sync.clients.base import WriteAction, WriteOp, OpResult, BatchResult
from airtable_sheets_sync.clients.sheets import SheetProperties, SheetRow, SheetSnapshot
from airtable_sheets_sync.config.config import (
    AirtableConfig, GoogleConfig, MonitorConfig, RedisConfig, SecurityConfig, SyncConfig
)
from airtable_sheets_sync.core.changes import ErrorCategory
from airtable_sheets_sync.core.errors import ConfigurationError
from airtable_sheets_sync.db.models import (
    SyncConfiguration, SyncOptions, SyncDirection, ConflictPolicy, SyncRun, RunStatus, Provider
)
from airtable_sheets_sync.db.repository import (
    CredentialRepository, SyncConfigRepository, SyncRunRepository
)


TEST_KEY = "0123456789abcdef" * 4


def make_config() -> Mock:
    """不读取文件的配置对象"""
    config = Mock()
    config.validate.return_value = True
    config.redis = RedisConfig(enabled=False)
    config.airtable = AirtableConfig(client_id="air-id", client_secret="air-secret")
    config.google = GoogleConfig(client_id="google-id", client_secret="google-secret")
    config.security = SecurityConfig(encryption_key=TEST_KEY)
    config.sync = SyncConfig(retry_base_delay=0.0)
    config.monitor = MonitorConfig(log_file="")
    return config


def people_table() -> AirtableTable:
    fields = {
        'fldName': AirtableField('fldName', 'Name', 'singleLineText'),
        'fldAge': AirtableField('fldAge', 'Age', 'number'),
        'fldActive': AirtableField('fldActive', 'Active', 'checkbox'),
        'fldCreated': AirtableField('fldCreated', 'Created', 'createdTime'),
    }
    return AirtableTable('tblPeople', 'People', 'fldName', fields)


def make_sync_config(direction=SyncDirection.AIRTABLE_TO_SHEETS,
                     policy=ConflictPolicy.AIRTABLE_WINS,
                     mappings: Optional[Dict[str, int]] = None, **options) -> SyncConfiguration:
    return SyncConfiguration(
        id=1,
        user_id="user-1",
        name="People",
        airtable_base_id="appBase",
        airtable_table_id="tblPeople",
        spreadsheet_id="spreadsheet-1",
        sheet_id=0,
        field_mappings=mappings or {'fldName': 0},
        direction=direction,
        conflict_policy=policy,
        options=SyncOptions(**options),
    )


class InMemoryCredentialRepository(CredentialRepository):

    def __init__(self):
        self.items = {}
        self.saves = 0

    def get(self, user_id, provider):
        return self.items.get((user_id, provider))

    def save(self, credential):
        self.saves += 1
        self.items[(credential.user_id, credential.provider)] = credential

    def delete(self, user_id, provider):
        return self.items.pop((user_id, provider), None) is not None


class InMemorySyncConfigRepository(SyncConfigRepository):

    def __init__(self, *configs: SyncConfiguration):
        self.configs = {config.id: config for config in configs}

    def get(self, config_id):
        return self.configs.get(config_id)

    def list_active(self):
        return [config for config in self.configs.values() if config.active]

    def update_last_run(self, config_id, run_at, status):
        config = self.configs[config_id]
        config.last_run_at = run_at
        config.last_run_status = status


class InMemorySyncRunRepository(SyncRunRepository):

    def __init__(self):
        self.runs: Dict[int, SyncRun] = {}
        self.completed: Dict[int, SyncRun] = {}

    def create(self, run):
        run.id = len(self.runs) + 1
        self.runs[run.id] = run
        return run.id

    def complete(self, run):
        if run.id in self.completed:
            return
        self.completed[run.id] = run
        self.runs[run.id] = run

    def find_running(self, config_id, since):
        for run in self.runs.values():
            if run.sync_config_id == config_id and run.status is RunStatus.RUNNING \
                    and run.completed_at is None and run.started_at >= since:
                return run
        return None

    def list_recent(self, config_id, limit=20):
        runs = [run for run in self.runs.values() if run.sync_config_id == config_id]
        return sorted(runs, key=lambda run: run.started_at, reverse=True)[:limit]


class StaticVault:
    """直接返回固定令牌，或抛出指定异常"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.requests = []

    def get_valid_token(self, user_id, provider: Provider) -> str:
        self.requests.append((user_id, provider))
        if self.error is not None:
            raise self.error
        return f"token-{provider.value.lower()}"


class FakeAirtableClient:
    """内存中的 Airtable 表"""

    def __init__(self, table: AirtableTable, records: Optional[List[Dict[str, Any]]] = None,
                 reject: Optional[Callable[[WriteOp], bool]] = None):
        self.table = table
        self.records: Dict[str, Dict[str, Any]] = {}
        for record in records or []:
            self.records[record['id']] = {
                'id': record['id'],
                'createdTime': record.get('createdTime', '2024-01-01T00:00:00.000Z'),
                'fields': dict(record.get('fields', {})),
            }
        self.reject = reject
        self.write_calls: List[List[WriteOp]] = []
        self._next_id = 1

    def get_table(self, table_id):
        if table_id in (self.table.id, self.table.name):
            return self.table
        raise ConfigurationError(f"Airtable table {table_id} not found")

    def fetch_all(self, table_id, view_id=None, fields=None):
        return [
            {'id': record['id'], 'createdTime': record['createdTime'], 'fields': dict(record['fields'])}
            for record in self.records.values()
        ]

    def write_batch(self, table_id, ops, batch_size=None):
        self.write_calls.append(list(ops))
        result = BatchResult(requests=1)
        for op in ops:
            if self.reject and self.reject(op):
                result.results.append(OpResult(
                    op, False, category=ErrorCategory.REMOTE_REJECTED, error="INVALID_VALUE_FOR_COLUMN"
                ))
                continue
            if op.action is WriteAction.CREATE:
                record_id = f"recNew{self._next_id}"
                self._next_id += 1
                self.records[record_id] = {
                    'id': record_id, 'createdTime': '2024-06-01T00:00:00.000Z', 'fields': dict(op.fields)
                }
                result.results.append(OpResult(op, True, new_identity=record_id))
            elif op.action is WriteAction.UPDATE:
                self.records[op.identity]['fields'].update(op.fields)
                result.results.append(OpResult(op, True, new_identity=op.identity))
            else:
                self.records.pop(op.identity)
                result.results.append(OpResult(op, True, new_identity=op.identity))
        return result

    def names(self) -> List[str]:
        return sorted(record['fields'].get('fldName', '') for record in self.records.values())


class FakeSheetsClient:
    """内存中的工作表，values 第一行为表头"""

    def __init__(self, values: Optional[List[List[Any]]] = None, revision: Optional[float] = None,
                 column_count: int = 26):
        self.values: List[List[Any]] = [list(row) for row in values or []]
        self.revision = revision
        self.properties = SheetProperties(0, "Sheet1", 1000, column_count)
        self.hidden: List[int] = []
        self.dropdowns: List[Dict[int, List[str]]] = []
        self.dropdown_error: Optional[Exception] = None
        self.write_calls: List[List[WriteOp]] = []

    def get_sheet_properties(self, sheet):
        return self.properties

    def fetch_all(self, properties, include_header=True):
        header: List[Any] = []
        start = 0
        if include_header and self.values:
            header = list(self.values[0])
            start = 1
        rows = [
            SheetRow(index + 1, list(row))
            for index, row in enumerate(self.values) if index >= start
        ]
        return SheetSnapshot(properties, header, rows, self.revision)

    def _set(self, row_number: int, column: int, value: Any) -> None:
        while len(self.values) < row_number:
            self.values.append([])
        row = self.values[row_number - 1]
        while len(row) <= column:
            row.append("")
        row[column] = value

    def write_batch(self, properties, ops, batch_size=None):
        self.write_calls.append(list(ops))
        result = BatchResult(requests=1)
        updates = [op for op in ops if op.action is WriteAction.UPDATE]
        deletes = sorted((op for op in ops if op.action is WriteAction.DELETE),
                         key=lambda op: op.row_number, reverse=True)
        creates = [op for op in ops if op.action is WriteAction.CREATE]

        for op in updates:
            for column, value in op.fields.items():
                self._set(op.row_number, column, value)
            result.results.append(OpResult(op, True, new_identity=op.identity))
        for op in deletes:
            del self.values[op.row_number - 1]
            result.results.append(OpResult(op, True, new_identity=op.identity))
        for op in creates:
            row_number = len(self.values) + 1
            for column, value in op.fields.items():
                self._set(row_number, column, value)
            result.results.append(OpResult(op, True, new_identity=op.identity))
        return result

    def ensure_columns(self, properties, column_count):
        if column_count <= properties.column_count:
            return False
        properties.column_count = column_count
        return True

    def hide_column(self, properties, column_index):
        self.hidden.append(column_index)

    def set_dropdown_validations(self, properties, choices, start_row=1):
        if self.dropdown_error is not None:
            raise self.dropdown_error
        self.dropdowns.append(dict(choices))

    def write_header(self, properties, header):
        for column, name in header.items():
            self._set(1, column, name)

    def cell(self, row_number: int, column: int) -> Any:
        row = self.values[row_number - 1]
        return row[column] if column < len(row) else ""


def started_run(config_id: int = 1) -> SyncRun:
    return SyncRun(sync_config_id=config_id, started_at=datetime.now(), status=RunStatus.RUNNING)
