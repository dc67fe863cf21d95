"""
字段映射器
"""
from typing import Dict, Any, List, Optional, Tuple, Set

from loguru import logger

from ..clients.base import WriteAction, WriteOp
from .changes import NormalizedRow, RecordChange, RecordError, ErrorCategory, Side
from .errors import ConfigurationError, UnresolvedReferenceError
from .linked_records import LinkedRecordResolver
from .values import (
    NUMERIC_TYPES, DATE_TYPES, DATETIME_TYPES, LIST_TYPES, SELECT_TYPES, READ_ONLY_TYPES, UNWRITABLE_TYPES,
    format_number, parse_number, number_value, parse_bool, format_bool,
    parse_datetime, format_date, format_datetime, timestamp,
    split_list, join_list, scalar_text,
)


ID_COLUMN_HEADER = "Record ID"


class FieldMappingResolver:
    """字段映射器，处理 Airtable 字段和表格列之间的转换"""

    def __init__(self, table, field_mappings: Dict[str, int], options,
                 linked: Optional[LinkedRecordResolver] = None):
        """
        table: AirtableTable
        field_mappings: {Airtable 字段 ID: 列索引(从 0 开始)}
        options: SyncOptions
        """
        self.table = table
        self.field_mappings = dict(field_mappings)
        self.options = options
        self.linked = linked
        self.identity_column = options.identity_column
        self.revision_field_id = self._find_revision_field()
        self._warned: Set[str] = set()

    # ------------------------------------------------------------------
    # 映射校验
    # ------------------------------------------------------------------

    def validate_mapping(self, column_count: Optional[int] = None) -> None:
        """映射指向不存在的字段或列时抛出 ConfigurationError"""
        if not self.field_mappings:
            raise ConfigurationError("Sync configuration has no field mappings")

        errors = []
        seen: Dict[int, str] = {}
        for field_id, column in self.field_mappings.items():
            if field_id not in self.table.fields:
                errors.append(f"Field {field_id} does not exist in table {self.table.name}")
            if not isinstance(column, int) or column < 0:
                errors.append(f"Invalid column index {column} for field {field_id}")
                continue
            if column == self.identity_column:
                errors.append(f"Column {column} is reserved for record identities")
            if column in seen:
                errors.append(f"Column {column} is mapped to both {seen[column]} and {field_id}")
            seen[column] = field_id
            if column_count is not None and column >= column_count:
                errors.append(f"Column {column} mapped to field {field_id} does not exist in the sheet")

        if errors:
            raise ConfigurationError("; ".join(errors))

    def _find_revision_field(self) -> Optional[str]:
        """NEWEST_WINS 的修订标记：优先用配置的字段，否则用表中的 lastModifiedTime 字段

        createdTime 不代表修改时间，不作为修订标记；没有可用字段时修订时间为空，冲突按 Airtable 胜出处理。
        """
        if self.options.revision_field_id:
            return self.options.revision_field_id
        for field_id, item in self.table.fields.items():
            if item.type == 'lastModifiedTime':
                return field_id
        return None

    def field_type(self, field_id: str) -> str:
        item = self.table.fields.get(field_id)
        return item.type if item else ''

    def known_names(self, field_id: str) -> Optional[Set[str]]:
        """多值字段的已知完整名称：选项名或关联记录显示值"""
        item = self.table.fields.get(field_id)
        if item is None:
            return None
        if item.type == 'multipleSelects':
            return set(item.choices)
        if item.type == 'multipleRecordLinks' and self.options.resolve_linked_records and self.linked is not None:
            return self.linked.known_names(item.linked_table_id)
        return None

    def dropdown_choices(self) -> Dict[int, List[str]]:
        """选项字段对应列的下拉列表：{列索引: 选项名}"""
        choices = {}
        for field_id, column in self.field_mappings.items():
            item = self.table.fields.get(field_id)
            if item and item.type in SELECT_TYPES and item.choices:
                choices[column] = item.choices
        return choices

    @property
    def airtable_read_only(self) -> Set[str]:
        """不能从表格写回 Airtable 的已映射字段"""
        return {fid for fid in self.field_mappings if self.field_type(fid) in UNWRITABLE_TYPES}

    def header_row(self) -> Dict[int, str]:
        """表头：映射列写字段名，ID 列写固定标题"""
        header = {column: self.table.fields[fid].name for fid, column in self.field_mappings.items()}
        header[self.identity_column] = ID_COLUMN_HEADER
        return header

    # ------------------------------------------------------------------
    # 规范化
    # ------------------------------------------------------------------

    def normalize(self, records: List[Dict[str, Any]], snapshot) -> Tuple[List[NormalizedRow], List[NormalizedRow]]:
        """两端原始数据转换为 NormalizedRow"""
        rows_a = [self.normalize_airtable(record) for record in records]
        rows_b = []
        for row in snapshot.rows:
            normalized = self.normalize_sheet_row(row, snapshot.revision)
            if normalized is not None:
                rows_b.append(normalized)
        return rows_a, rows_b

    def normalize_airtable(self, record: Dict[str, Any]) -> NormalizedRow:
        values = record.get('fields', {})
        fields = {
            field_id: self.airtable_to_canonical(field_id, values.get(field_id))
            for field_id in self.field_mappings
        }

        revision = None
        if self.revision_field_id:
            revision = timestamp(values.get(self.revision_field_id))

        return NormalizedRow(record['id'], fields, revision, raw=record)

    def normalize_sheet_row(self, row, revision: Optional[float]) -> Optional[NormalizedRow]:
        """空行返回 None"""
        identity = str(row.cell(self.identity_column)).strip() or None
        fields = {
            field_id: self.sheet_to_canonical(field_id, row.cell(column))
            for field_id, column in self.field_mappings.items()
        }
        if identity is None and not any(str(row.cell(column)).strip() for column in self.field_mappings.values()):
            return None
        return NormalizedRow(identity, fields, revision, row_number=row.row_number, raw=row)

    def airtable_to_canonical(self, field_id: str, value: Any) -> str:
        """Airtable 字段值转规范字符串"""
        field_type = self.field_type(field_id)

        if field_type == 'checkbox':
            return format_bool(bool(value))
        if value is None or value == '' or value == []:
            return ""

        if field_type in NUMERIC_TYPES:
            return format_number(value) if parse_number(value) is not None else scalar_text(value)
        if field_type in DATE_TYPES:
            parsed = parse_datetime(value)
            return format_date(parsed) if parsed else str(value)
        if field_type in DATETIME_TYPES:
            parsed = parse_datetime(value)
            return format_datetime(parsed) if parsed else str(value)
        if field_type == 'multipleRecordLinks':
            ids = [item['id'] if isinstance(item, dict) else str(item) for item in value]
            if self.options.resolve_linked_records and self.linked is not None:
                linked_table = self.table.fields[field_id].linked_table_id
                return join_list(self.linked.names_for(linked_table, ids))
            return join_list(ids)
        if field_type == 'multipleAttachments':
            return join_list(item.get('url', '') for item in value)
        if field_type in ('singleCollaborator', 'createdBy', 'lastModifiedBy'):
            return str(value.get('name') or value.get('email') or '') if isinstance(value, dict) else str(value)
        if field_type == 'multipleCollaborators':
            return join_list(item.get('name') or item.get('email') or '' for item in value)
        if field_type == 'multipleSelects':
            return join_list(value)
        return scalar_text(value)

    def sheet_to_canonical(self, field_id: str, cell: Any) -> str:
        """表格单元格转规范字符串，无法转换时保留原文由校验器处理"""
        field_type = self.field_type(field_id)

        if field_type == 'checkbox':
            parsed = parse_bool(cell)
            return format_bool(parsed) if parsed is not None else str(cell).strip()
        if cell is None or cell == '':
            return ""
        if isinstance(cell, bool):
            return format_bool(cell)

        if field_type in NUMERIC_TYPES:
            number = parse_number(cell)
            return format_number(number) if number is not None else str(cell).strip()
        if field_type in DATE_TYPES:
            parsed = parse_datetime(cell)
            return format_date(parsed) if parsed else str(cell).strip()
        if field_type in DATETIME_TYPES:
            parsed = parse_datetime(cell)
            return format_datetime(parsed) if parsed else str(cell).strip()
        if field_type in LIST_TYPES:
            return join_list(split_list(cell, self.known_names(field_id)))
        if isinstance(cell, (int, float)):
            return format_number(cell)
        return str(cell)

    # ------------------------------------------------------------------
    # 反规范化
    # ------------------------------------------------------------------

    def _warn_once(self, field_id: str, message: str) -> None:
        if field_id not in self._warned:
            self._warned.add(field_id)
            logger.warning(message)

    def to_airtable_fields(self, fields: Dict[str, str], identity: Optional[str],
                           creating: bool) -> Tuple[Dict[str, Any], List[RecordError]]:
        """规范字符串转 Airtable 写入值，只读字段跳过"""
        result: Dict[str, Any] = {}
        errors: List[RecordError] = []

        for field_id, value in fields.items():
            field_type = self.field_type(field_id)
            if field_type in UNWRITABLE_TYPES:
                reason = "read-only" if field_type in READ_ONLY_TYPES else "not writable from text"
                self._warn_once(field_id, f"Skipping {reason} field {field_id} ({field_type})")
                continue
            if value == "" and creating and field_type != 'checkbox':
                continue

            try:
                converted = self._airtable_value(field_id, field_type, value)
            except ValueError as e:
                errors.append(RecordError(identity, ErrorCategory.VALIDATION, str(e), field_id, Side.AIRTABLE))
                continue
            except UnresolvedReferenceError as e:
                errors.append(RecordError(
                    identity, ErrorCategory.UNRESOLVED_REFERENCE,
                    f"Linked record(s) not found: {', '.join(e.names)}", field_id, Side.AIRTABLE
                ))
                continue
            result[field_id] = converted

        return result, errors

    def _airtable_value(self, field_id: str, field_type: str, value: str) -> Any:
        if field_type == 'checkbox':
            parsed = parse_bool(value)
            if parsed is None:
                raise ValueError(f"Cannot convert '{value}' to checkbox")
            return parsed
        if value == "":
            return None
        if field_type in NUMERIC_TYPES:
            return number_value(value)
        if field_type in DATE_TYPES:
            parsed = parse_datetime(value)
            if parsed is None:
                raise ValueError(f"Cannot parse '{value}' as date")
            return format_date(parsed)
        if field_type in DATETIME_TYPES:
            parsed = parse_datetime(value)
            if parsed is None:
                raise ValueError(f"Cannot parse '{value}' as date")
            return format_datetime(parsed)
        if field_type == 'multipleSelects':
            return split_list(value, self.known_names(field_id))
        if field_type == 'multipleRecordLinks':
            names = split_list(value, self.known_names(field_id))
            if not (self.options.resolve_linked_records and self.linked is not None):
                return names
            linked_table = self.table.fields[field_id].linked_table_id
            ids, unresolved = self.linked.ids_for(linked_table, names)
            if unresolved:
                raise UnresolvedReferenceError(linked_table, unresolved)
            return ids
        return value

    def to_sheet_cells(self, fields: Dict[str, str], identity: Optional[str] = None) -> Dict[int, Any]:
        """规范字符串转单元格值：数字和复选框写为原生类型"""
        cells: Dict[int, Any] = {}
        for field_id, value in fields.items():
            column = self.field_mappings.get(field_id)
            if column is None:
                continue
            field_type = self.field_type(field_id)
            if field_type == 'checkbox':
                parsed = parse_bool(value)
                cells[column] = parsed if parsed is not None else value
            elif field_type in NUMERIC_TYPES and parse_number(value) is not None:
                cells[column] = number_value(value)
            else:
                cells[column] = value
        if identity:
            cells[self.identity_column] = identity
        return cells

    def denormalize(self, target: Side, changes: List[RecordChange],
                    action: WriteAction) -> Tuple[List[WriteOp], List[RecordError]]:
        """变更转换为目标端写操作"""
        ops: List[WriteOp] = []
        errors: List[RecordError] = []

        for change in changes:
            key = change.identity or f"row:{change.row_number}"

            if action is WriteAction.DELETE:
                ops.append(WriteOp(action, key, change.identity, row_number=change.row_number))
                continue

            if target is Side.SHEETS:
                identity = change.identity if action is WriteAction.CREATE else None
                cells = self.to_sheet_cells(change.fields, identity)
                if cells:
                    ops.append(WriteOp(action, key, change.identity, cells, change.row_number))
                continue

            values, field_errors = self.to_airtable_fields(
                change.fields, change.identity, creating=action is WriteAction.CREATE
            )
            for error in field_errors:
                error.row_number = change.row_number
            errors.extend(field_errors)
            if values:
                ops.append(WriteOp(action, key, change.identity, values, change.row_number))

        return ops, errors

