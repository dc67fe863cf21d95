"""
同步服务主类：驱动一次同步运行的完整流程
"""
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional, Callable, Set, Tuple

import redis
from loguru import logger

from ..config.config import Config
from ..clients.airtable import AirtableClient
from ..clients.base import WriteAction, WriteOp, BatchResult
from ..clients.sheets import GoogleSheetsClient, SheetSnapshot
from ..credentials.encryption import TokenCipher
from ..credentials.oauth import OAuthTokenRefresher
from ..credentials.vault import CredentialVault
from ..db.database import Database
from ..db.models import SyncConfiguration, SyncDirection, SyncRun, RunStatus, ValidationMode, Provider
from ..db.repository import (
    CredentialRepository, SyncConfigRepository, SyncRunRepository,
    MySQLCredentialRepository, MySQLSyncConfigRepository, MySQLSyncRunRepository,
)
from ..monitor.notifier import Notifier, build_notifier
from .changes import ChangeSet, NormalizedRow, RecordError, RunReport, Side
from .conflict_resolver import ConflictResolver
from .diff_engine import DiffEngine
from .errors import SyncError, ConfigurationError, CredentialError, ConcurrencyError, ValidationError, ApiError
from .field_mapper import FieldMappingResolver
from .linked_records import LinkedRecordResolver
from .run_lock import RunLock
from .sync_state import SyncStateStore, BaselineEntry
from .validator import DataValidator


class RunState(Enum):
    """单次运行的状态"""
    IDLE = "IDLE"
    ACQUIRING_LOCK = "ACQUIRING_LOCK"
    FETCHING = "FETCHING"
    DIFFING = "DIFFING"
    RESOLVING = "RESOLVING"
    WRITING = "WRITING"
    FINALIZING = "FINALIZING"


@dataclass
class WriteOutcome:
    """写入阶段的结果，用于统计和生成新基线"""
    applied: Dict[str, Dict[str, str]] = field(default_factory=dict)  # identity -> 已写入的字段
    failed: Set[str] = field(default_factory=set)
    removed: Set[str] = field(default_factory=set)
    removed_rows: Set[int] = field(default_factory=set)
    appended: List[Tuple[str, Dict[str, str]]] = field(default_factory=list)
    linked_rows: Dict[int, Tuple[str, Dict[str, str]]] = field(default_factory=dict)  # 行号 -> (新 ID, 字段)
    sanitized: Dict[int, Dict[str, str]] = field(default_factory=dict)  # 行号 -> 清洗后的字段
    attempted: int = 0
    succeeded: int = 0


class SyncService:
    """Airtable 与 Google Sheets 同步服务"""

    def __init__(self, config: Config,
                 database: Optional[Database] = None,
                 config_repository: Optional[SyncConfigRepository] = None,
                 run_repository: Optional[SyncRunRepository] = None,
                 credential_repository: Optional[CredentialRepository] = None,
                 vault: Optional[CredentialVault] = None,
                 notifier: Optional[Notifier] = None,
                 redis_client: Optional[redis.Redis] = None,
                 airtable_factory: Optional[Callable[[str, SyncConfiguration], AirtableClient]] = None,
                 sheets_factory: Optional[Callable[[str, SyncConfiguration], GoogleSheetsClient]] = None):
        self.config = config
        self.database = database
        self.configs = config_repository
        self.runs = run_repository
        self.credentials = credential_repository
        self.vault = vault
        self.notifier = notifier
        self.redis_client = redis_client
        self.airtable_factory = airtable_factory or self._create_airtable_client
        self.sheets_factory = sheets_factory or self._create_sheets_client

        # 初始化组件
        self._init_components()

        # 同步统计
        self.stats = {
            'runs': 0,
            'success': 0,
            'partial': 0,
            'failed': 0,
            'start_time': datetime.now()
        }

    def _init_components(self) -> None:
        """初始化组件"""
        # 验证配置
        self.config.validate()

        # 未注入的存储使用 MySQL
        if self.configs is None or self.runs is None or (self.credentials is None and self.vault is None):
            if self.database is None:
                self.database = Database(self.config.database)
                self.database.create_sync_tables()
            self.configs = self.configs or MySQLSyncConfigRepository(
                self.database, self.config.sync.default_options
            )
            self.runs = self.runs or MySQLSyncRunRepository(self.database)
            self.credentials = self.credentials or MySQLCredentialRepository(self.database)

        # 初始化Redis（可选）
        if self.redis_client is None and self.config.redis.enabled and self.config.sync.enable_cache:
            try:
                self.redis_client = redis.Redis(
                    host=self.config.redis.host,
                    port=self.config.redis.port,
                    db=self.config.redis.db,
                    password=self.config.redis.password,
                    decode_responses=True
                )
                self.redis_client.ping()
                logger.info("Redis connected successfully")
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}, using memory cache")
                self.redis_client = None

        self.state_store = SyncStateStore(self.redis_client, self.config.sync.cache_ttl)
        self.run_lock = RunLock(self.runs, self.redis_client, self.config.sync.lock_window_seconds)

        if self.vault is None:
            self.vault = CredentialVault(
                self.credentials,
                TokenCipher(self.config.security.encryption_key),
                OAuthTokenRefresher(self.config.airtable, self.config.google),
                self.config.sync.token_expiry_buffer
            )

        if self.notifier is None:
            self.notifier = build_notifier(self.config.monitor)

        logger.info("All components initialized successfully")

    def _create_airtable_client(self, access_token: str, sync_config: SyncConfiguration) -> AirtableClient:
        return AirtableClient(
            access_token,
            sync_config.airtable_base_id,
            self.config.airtable,
            max_retries=sync_config.options.max_retries,
            retry_base_delay=self.config.sync.retry_base_delay
        )

    def _create_sheets_client(self, access_token: str, sync_config: SyncConfiguration) -> GoogleSheetsClient:
        return GoogleSheetsClient(
            access_token,
            sync_config.spreadsheet_id,
            self.config.google,
            max_retries=sync_config.options.max_retries,
            retry_base_delay=self.config.sync.retry_base_delay
        )

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    def run_sync(self, config_id: int, dry_run: bool = False, triggered_by: str = "manual") -> RunReport:
        """执行一次同步，任何结果都以 RunReport 返回"""
        started = time.monotonic()
        report = RunReport(None, config_id, RunStatus.RUNNING.value, dry_run=dry_run)
        report.state_history.append(RunState.IDLE.value)

        try:
            sync_config = self._load_config(config_id)
        except ConfigurationError as e:
            logger.error(f"Cannot start sync {config_id}: {e}")
            self._record_fatal(report, e)
            return self._close_report(report, RunStatus.FAILED, started)

        report.state_history.append(RunState.ACQUIRING_LOCK.value)
        try:
            self.run_lock.acquire(config_id)
        except ConcurrencyError as e:
            logger.warning(str(e))
            self._record_fatal(report, e)
            return self._close_report(report, RunStatus.FAILED, started)

        run = SyncRun(
            sync_config_id=config_id,
            direction=sync_config.direction,
            triggered_by=triggered_by,
            dry_run=dry_run
        )
        outcome = WriteOutcome()
        fatal = False

        try:
            report.run_id = self.runs.create(run)
            logger.info(
                f"Sync run {report.run_id} started for config {config_id} "
                f"({sync_config.direction.value}{', dry run' if dry_run else ''})"
            )
            self._execute(sync_config, report, outcome, dry_run)
        except SyncError as e:
            logger.error(f"Sync run for config {config_id} aborted: {e}")
            self._record_fatal(report, e)
            fatal = True
        except Exception as e:
            logger.exception(f"Unexpected error in sync run for config {config_id}: {e}")
            self._record_fatal(report, e)
            fatal = True

        status = self._final_status(report, outcome, fatal)
        try:
            self._finalize(sync_config, run, report, status, started)
        finally:
            self.run_lock.release(config_id)

        return report

    def run_all_active(self, dry_run: bool = False, triggered_by: str = "scheduler") -> List[RunReport]:
        """依次执行所有启用的同步配置"""
        return [
            self.run_sync(sync_config.id, dry_run=dry_run, triggered_by=triggered_by)
            for sync_config in self.configs.list_active()
        ]

    def reset_snapshot(self, config_id: int) -> None:
        """清除基线，下次双向同步时所有差异都按冲突处理"""
        self.state_store.reset(config_id)

    def get_snapshot_info(self, config_id: int) -> Dict[str, Any]:
        return self.state_store.get_info(config_id)

    def get_history(self, config_id: int, limit: int = 20) -> List[SyncRun]:
        """最近的运行记录"""
        return self.runs.list_recent(config_id, limit)

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        stats = dict(self.stats)
        if stats['start_time']:
            stats['uptime'] = str(datetime.now() - stats['start_time'])
        return stats

    # ------------------------------------------------------------------
    # 运行流程
    # ------------------------------------------------------------------

    def _load_config(self, config_id: int) -> SyncConfiguration:
        sync_config = self.configs.get(config_id)
        if sync_config is None:
            raise ConfigurationError(f"Sync configuration {config_id} not found")
        if not sync_config.active:
            raise ConfigurationError(f"Sync configuration {config_id} is not active")
        return sync_config

    @staticmethod
    def _check_locations(sync_config: SyncConfiguration) -> None:
        """访问外部接口之前检查配置是否完整"""
        missing = [
            name for name in ('airtable_base_id', 'airtable_table_id', 'spreadsheet_id', 'sheet_id')
            if getattr(sync_config, name) in (None, '')
        ]
        if missing:
            raise ConfigurationError(f"Sync configuration {sync_config.id} is missing {', '.join(missing)}")
        if not sync_config.field_mappings:
            raise ConfigurationError(f"Sync configuration {sync_config.id} has no field mappings")

    def _execute(self, sync_config: SyncConfiguration, report: RunReport,
                 outcome: WriteOutcome, dry_run: bool) -> None:
        options = sync_config.options
        direction = sync_config.direction
        self._check_locations(sync_config)

        # 获取令牌、读取两端数据
        report.state_history.append(RunState.FETCHING.value)
        airtable = self.airtable_factory(
            self.vault.get_valid_token(sync_config.user_id, Provider.AIRTABLE), sync_config
        )
        sheets = self.sheets_factory(
            self.vault.get_valid_token(sync_config.user_id, Provider.GOOGLE), sync_config
        )

        table = airtable.get_table(sync_config.airtable_table_id)
        properties = sheets.get_sheet_properties(sync_config.sheet_id)
        linked = LinkedRecordResolver(airtable, options.create_missing_linked_records)
        mapper = FieldMappingResolver(table, sync_config.field_mappings, options, linked)
        mapper.validate_mapping(properties.column_count)

        fields = list(sync_config.field_mappings)
        if mapper.revision_field_id and mapper.revision_field_id not in fields:
            fields.append(mapper.revision_field_id)
        records = airtable.fetch_all(table.id, sync_config.airtable_view_id, fields)
        snapshot = sheets.fetch_all(properties, options.include_header)
        rows_a, rows_b = mapper.normalize(records, snapshot)

        # 计算差异
        report.state_history.append(RunState.DIFFING.value)
        baseline = self.state_store.load(sync_config.id)
        engine = DiffEngine(sync_config.field_mappings, mapper.airtable_read_only)
        changes = engine.diff(rows_a, rows_b, direction, options, baseline)
        self._record_errors(report, changes.identity_errors)

        if direction is SyncDirection.BIDIRECTIONAL:
            report.state_history.append(RunState.RESOLVING.value)
            resolver = ConflictResolver(sync_config.conflict_policy, options)
            changes.merge(resolver.resolve_all(changes.conflicts))
            report.conflicts = dict(resolver.stats)
        report.change_summary = changes.summary()

        validated, invalid = self._validate(table, mapper, changes, options, report, outcome)
        outcome.failed.update(error.identity for error in invalid if error.identity)

        if dry_run:
            logger.info(f"Dry run for config {sync_config.id}: {report.change_summary}")
            return

        # 写入
        report.state_history.append(RunState.WRITING.value)
        sheet_ops: List[WriteOp] = []

        if direction.writes_airtable:
            sheet_ops.extend(self._write_airtable(airtable, table.id, mapper, validated, options, report, outcome))

        for changes_b, action in ((validated.to_update_in_b, WriteAction.UPDATE),
                                  (validated.to_delete_in_b, WriteAction.DELETE),
                                  (validated.to_create_in_b, WriteAction.CREATE)):
            ops, errors = mapper.denormalize(Side.SHEETS, changes_b, action)
            self._record_errors(report, errors)
            sheet_ops.extend(ops)

        if sheet_ops:
            self._prepare_sheet(sheets, properties, snapshot, mapper, options)
            result = sheets.write_batch(properties, sheet_ops, options.batch_size.get('sheets'))
            self._collect(result, Side.SHEETS, validated, report, outcome)

        self._save_baseline(sync_config.id, baseline, rows_a, rows_b, changes, outcome)

    def _validate(self, table, mapper: FieldMappingResolver, changes: ChangeSet, options,
                  report: RunReport, outcome: WriteOutcome) -> Tuple[ChangeSet, List[RecordError]]:
        """写入前校验，严格模式下有错误即中止写入"""
        strict = options.validation_mode is ValidationMode.STRICT
        writable = [fid for fid in mapper.field_mappings if fid not in mapper.airtable_read_only]
        # 只有来自表格的内容需要清洗
        to_airtable = DataValidator.from_table(table, writable, options.required_fields, strict, sanitize=True)
        to_sheets = DataValidator.from_table(table, list(mapper.field_mappings), None, strict, sanitize=False)

        validated = ChangeSet(unchanged=changes.unchanged)
        errors: List[RecordError] = []
        plan = (
            (to_sheets, changes.to_create_in_b, validated.to_create_in_b, WriteAction.CREATE),
            (to_sheets, changes.to_update_in_b, validated.to_update_in_b, WriteAction.UPDATE),
            (to_sheets, changes.to_delete_in_b, validated.to_delete_in_b, WriteAction.DELETE),
            (to_airtable, changes.to_create_in_a, validated.to_create_in_a, WriteAction.CREATE),
            (to_airtable, changes.to_update_in_a, validated.to_update_in_a, WriteAction.UPDATE),
            (to_airtable, changes.to_delete_in_a, validated.to_delete_in_a, WriteAction.DELETE),
        )
        for validator, rows, target, action in plan:
            if not rows:
                continue
            result = validator.validate(rows, action)
            errors.extend(result.errors)
            report.warnings.extend(result.warnings)
            target.extend(result.sanitized_rows)
            for change in result.rewritten:
                outcome.sanitized.setdefault(change.row_number, {}).update(change.fields)

        if errors and strict:
            raise ValidationError(f"Validation failed for {len(errors)} value(s), nothing was written", errors)
        self._record_errors(report, errors)
        return validated, errors

    def _write_airtable(self, airtable: AirtableClient, table_id: str, mapper: FieldMappingResolver,
                        validated: ChangeSet, options, report: RunReport,
                        outcome: WriteOutcome) -> List[WriteOp]:
        """写入 Airtable，返回需要回写到表格的新记录 ID"""
        ops: List[WriteOp] = []
        for changes_a, action in ((validated.to_create_in_a, WriteAction.CREATE),
                                  (validated.to_update_in_a, WriteAction.UPDATE),
                                  (validated.to_delete_in_a, WriteAction.DELETE)):
            action_ops, errors = mapper.denormalize(Side.AIRTABLE, changes_a, action)
            self._record_errors(report, errors)
            outcome.failed.update(error.identity for error in errors if error.identity)
            ops.extend(action_ops)

        if not ops:
            return []

        result = airtable.write_batch(table_id, ops, options.batch_size.get('airtable'))
        self._collect(result, Side.AIRTABLE, validated, report, outcome)

        # 新建记录的 ID 写回表格的 ID 列，清洗过的单元格同时改为写入 Airtable 的值
        created = {change.row_number: change for change in validated.to_create_in_a}
        write_back = []
        for item in result.succeeded:
            row_number = item.op.row_number
            if row_number is None or item.op.action is WriteAction.DELETE:
                continue
            cleaned = outcome.sanitized.get(row_number, {})
            if item.op.action is WriteAction.CREATE:
                write_back.append(WriteOp(
                    WriteAction.UPDATE,
                    key=f"link:{row_number}",
                    identity=item.new_identity,
                    fields=mapper.to_sheet_cells(cleaned, item.new_identity),
                    row_number=row_number,
                ))
                change = created.get(row_number)
                outcome.linked_rows[row_number] = (
                    item.new_identity, dict(change.fields) if change else {}
                )
            elif cleaned:
                write_back.append(WriteOp(
                    WriteAction.UPDATE,
                    key=f"clean:{row_number}",
                    identity=item.op.identity,
                    fields=mapper.to_sheet_cells(cleaned),
                    row_number=row_number,
                ))
        return write_back

    def _prepare_sheet(self, sheets: GoogleSheetsClient, properties, snapshot: SheetSnapshot,
                       mapper: FieldMappingResolver, options) -> None:
        """保证 ID 列存在并隐藏，按需补全表头，为选项列设置下拉列表"""
        needed = max(list(mapper.field_mappings.values()) + [mapper.identity_column]) + 1
        sheets.ensure_columns(properties, needed)

        def header_cell(column: int) -> str:
            return str(snapshot.header[column]).strip() if column < len(snapshot.header) else ""

        first_sync = not header_cell(mapper.identity_column)
        if first_sync and options.id_column_index is None:
            sheets.hide_column(properties, mapper.identity_column)

        if options.include_header:
            missing = {column: name for column, name in mapper.header_row().items() if not header_cell(column)}
            if missing:
                sheets.write_header(properties, missing)

        dropdowns = mapper.dropdown_choices()
        if dropdowns:
            try:
                sheets.set_dropdown_validations(properties, dropdowns, 1 if options.include_header else 0)
            except ApiError as e:
                logger.warning(f"Could not set dropdown validation on sheet {properties.title}: {e}")

    def _collect(self, result: BatchResult, side: Side, validated: ChangeSet,
                 report: RunReport, outcome: WriteOutcome) -> None:
        """统计写入结果"""
        if side is Side.SHEETS:
            updates = {change.identity: change for change in validated.to_update_in_b}
            creates = {change.identity: change for change in validated.to_create_in_b}
        else:
            updates = {change.identity: change for change in validated.to_update_in_a}
            creates = {}

        for item in result.results:
            op = item.op
            if op.key.startswith("link:"):
                if not item.success:
                    # 新记录已创建但 ID 没有写回，下次运行会重复创建
                    self._record_errors(report, [RecordError(
                        op.identity, item.category,
                        f"Created record {op.identity} but could not store its ID in row {op.row_number}: "
                        f"{item.error}", side=side, row_number=op.row_number,
                    )])
                    outcome.linked_rows.pop(op.row_number, None)
                continue
            if op.key.startswith("clean:"):
                if not item.success:
                    # 下次运行会再次写入清洗后的值
                    logger.warning(f"Could not write sanitized values back to row {op.row_number}: {item.error}")
                continue

            outcome.attempted += 1
            if not item.success:
                self._record_errors(report, [RecordError(
                    op.identity, item.category, item.error or "Write failed", side=side, row_number=op.row_number
                )])
                if op.identity:
                    outcome.failed.add(op.identity)
                continue

            outcome.succeeded += 1
            if op.action is WriteAction.CREATE:
                report.added += 1
                if side is Side.SHEETS:
                    change = creates.get(op.identity)
                    outcome.appended.append((op.identity, dict(change.fields) if change else {}))
            elif op.action is WriteAction.UPDATE:
                report.updated += 1
                change = updates.get(op.identity)
                if change is not None:
                    outcome.applied.setdefault(op.identity, {}).update(change.fields)
            else:
                report.deleted += 1
                if op.identity:
                    outcome.removed.add(op.identity)
                if side is Side.SHEETS and op.row_number is not None:
                    outcome.removed_rows.add(op.row_number)

    # ------------------------------------------------------------------
    # 基线
    # ------------------------------------------------------------------

    def _save_baseline(self, config_id: int, old: Dict[str, BaselineEntry],
                       rows_a: List[NormalizedRow], rows_b: List[NormalizedRow],
                       changes: ChangeSet, outcome: WriteOutcome) -> None:
        """按写入后的状态生成新基线，失败的记录保留旧基线"""
        present_a = {row.identity for row in rows_a}
        counts = Counter(row.identity for row in rows_b if row.identity)
        keep_old = outcome.failed | {error.identity for error in changes.identity_errors}
        entries: Dict[str, BaselineEntry] = {}
        order: List[str] = []

        for row in rows_b:
            if row.row_number in outcome.removed_rows:
                continue
            if row.row_number in outcome.linked_rows:
                identity, fields = outcome.linked_rows[row.row_number]
                entries[identity] = BaselineEntry(fields)
                order.append(identity)
                continue
            identity = row.identity
            if identity is None or identity in outcome.removed:
                continue

            if counts[identity] > 1:
                # 重复的 ID 没有可信的位置
                if identity in old:
                    entries[identity] = BaselineEntry(dict(old[identity].fields), old[identity].position)
                continue
            if identity in keep_old or identity not in present_a:
                if identity not in old:
                    continue
                entries[identity] = BaselineEntry(dict(old[identity].fields))
            else:
                fields = dict(row.fields)
                fields.update(outcome.applied.get(identity, {}))
                entries[identity] = BaselineEntry(fields)
            order.append(identity)

        for identity, fields in outcome.appended:
            entries[identity] = BaselineEntry(fields)
            order.append(identity)

        # 只存在于 Airtable 且本次未处理的记录保留旧基线
        for identity in present_a:
            if identity in old and identity not in entries and identity not in outcome.removed:
                entries[identity] = BaselineEntry(dict(old[identity].fields), old[identity].position)

        # 被移动的行按新顺序记录，下次运行不再报错
        for position, identity in enumerate(order):
            entries[identity].position = position

        try:
            self.state_store.save(config_id, entries)
        except redis.RedisError as e:
            logger.error(f"Failed to save sync state for config {config_id}: {e}")

    # ------------------------------------------------------------------
    # 结果汇总
    # ------------------------------------------------------------------

    def _record_errors(self, report: RunReport, errors: List[RecordError]) -> None:
        limit = self.config.sync.max_captured_errors
        for error in errors:
            report.error_count += 1
            if len(report.errors) < limit:
                report.errors.append(error.to_dict())

    @staticmethod
    def _error_category(error: Exception) -> str:
        if isinstance(error, ConfigurationError):
            return "CONFIGURATION"
        if isinstance(error, CredentialError):
            return "CREDENTIAL"
        if isinstance(error, ConcurrencyError):
            return "CONCURRENCY"
        if isinstance(error, ValidationError):
            return "VALIDATION"
        if isinstance(error, ApiError):
            return "API"
        return "INTERNAL"

    def _record_fatal(self, report: RunReport, error: Exception) -> None:
        if isinstance(error, ValidationError) and error.errors:
            self._record_errors(report, error.errors)
        report.error_count += 1
        report.errors.append({
            'identity': None,
            'category': self._error_category(error),
            'message': str(error),
            'field': None,
            'side': getattr(error, 'provider', None),
            'row_number': None,
        })

    @staticmethod
    def _final_status(report: RunReport, outcome: WriteOutcome, fatal: bool) -> RunStatus:
        """有写入成功但也有错误为 PARTIAL，没有任何有效工作完成为 FAILED"""
        if fatal:
            return RunStatus.PARTIAL if outcome.succeeded else RunStatus.FAILED
        if not report.error_count:
            return RunStatus.SUCCESS
        if outcome.attempted and not outcome.succeeded:
            return RunStatus.FAILED
        return RunStatus.PARTIAL

    def _close_report(self, report: RunReport, status: RunStatus, started: float) -> RunReport:
        report.status = status.value
        report.state_history.append(status.value)
        report.duration = time.monotonic() - started
        self.stats['runs'] += 1
        self.stats[status.value.lower()] += 1
        return report

    def _finalize(self, sync_config: SyncConfiguration, run: SyncRun, report: RunReport,
                  status: RunStatus, started: float) -> None:
        """保存运行记录、更新配置状态并发送通知，任何一步失败都只记录日志"""
        report.state_history.append(RunState.FINALIZING.value)
        self._close_report(report, status, started)

        if not report.dry_run:
            try:
                self.configs.update_last_run(sync_config.id, datetime.now(), status)
            except Exception as e:
                logger.error(f"Failed to update last run of config {sync_config.id}: {e}")

        if report.run_id is not None:
            run.id = report.run_id
            run.completed_at = datetime.now()
            run.status = status
            run.added = report.added
            run.updated = report.updated
            run.deleted = report.deleted
            run.error_count = report.error_count
            run.errors = report.errors[:self.config.sync.max_captured_errors]
            run.warnings = report.warnings[:self.config.sync.max_captured_errors]
            run.conflicts = report.conflicts
            try:
                self.runs.complete(run)
            except Exception as e:
                logger.error(f"Failed to store sync run {run.id}: {e}")

        try:
            if status is RunStatus.FAILED:
                self.notifier.notify_run_failed(sync_config, report)
            elif status is RunStatus.PARTIAL and self.config.monitor.notify_on_partial:
                self.notifier.notify_run_partial(sync_config, report)
        except Exception as e:
            logger.error(f"Failed to send notification for config {sync_config.id}: {e}")

        logger.info(
            f"Sync run {report.run_id} for config {sync_config.id} finished: {status.value} "
            f"(added={report.added}, updated={report.updated}, deleted={report.deleted}, "
            f"errors={report.error_count}, {report.duration:.1f}s)"
        )
