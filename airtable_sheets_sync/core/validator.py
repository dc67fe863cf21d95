"""
写入前的数据校验与清洗
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from loguru import logger

from ..clients.base import WriteAction
from .changes import RecordChange, RecordError, ErrorCategory, Side
from .values import (
    NUMERIC_TYPES, DATE_TYPES, DATETIME_TYPES, UNWRITABLE_TYPES,
    parse_number, parse_bool, parse_datetime,
)


# Google Sheets 单元格上限 50,000 字符，比 Airtable 长文本（100,000）更严格
MAX_STRING_LENGTH = 50000

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
DANGEROUS_BLOCKS = re.compile(
    r"<\s*(script|style|iframe|object|embed)\b[^>]*>.*?<\s*/\s*\1\s*>|<\s*(script|style|iframe|object|embed)\b[^>]*/?>",
    re.IGNORECASE | re.DOTALL,
)
EVENT_HANDLERS = re.compile(r"\son[a-z]+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)
DANGEROUS_URIS = re.compile(r"(javascript|vbscript)\s*:|data\s*:\s*text/html", re.IGNORECASE)
HTML_TAG = re.compile(r"</?[a-zA-Z][a-zA-Z0-9-]*(\s[^<>]*)?/?>")


@dataclass
class FieldRule:
    """单个字段的约束"""
    field_id: str
    name: str
    type: str
    required: bool = False
    max_length: int = MAX_STRING_LENGTH


@dataclass
class ValidationResult:
    """校验结果"""
    valid: bool
    errors: List[RecordError] = field(default_factory=list)
    sanitized_rows: List[RecordChange] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # 被清洗过的表格单元格，写入 Airtable 后需回写清洗后的值
    rewritten: List[RecordChange] = field(default_factory=list)


def sanitize_text(value: str) -> str:
    """去掉控制字符、脚本类标签、事件属性和危险 URI，其余 HTML 标签只保留文本"""
    cleaned = CONTROL_CHARS.sub('', value)
    cleaned = DANGEROUS_BLOCKS.sub('', cleaned)
    cleaned = EVENT_HANDLERS.sub('', cleaned)
    cleaned = DANGEROUS_URIS.sub('', cleaned)
    cleaned = HTML_TAG.sub('', cleaned)
    return cleaned


class DataValidator:
    """数据校验器"""

    def __init__(self, rules: Dict[str, FieldRule], strict: bool = False, sanitize: bool = True):
        self.rules = rules
        self.strict = strict
        # 只清洗来自表格的不可信输入
        self.sanitize = sanitize

    @classmethod
    def from_table(cls, table, field_ids: List[str], required_fields: Optional[List[str]] = None,
                   strict: bool = False, sanitize: bool = True) -> 'DataValidator':
        """根据 Airtable 表结构生成规则"""
        required = set(required_fields or [])
        rules = {}
        for field_id in field_ids:
            item = table.fields.get(field_id)
            if item is None:
                continue
            rules[field_id] = FieldRule(field_id, item.name, item.type, field_id in required)
        return cls(rules, strict, sanitize)

    def check_value(self, rule: FieldRule, value: str) -> Tuple[str, Optional[str]]:
        """校验单个值，返回 (清洗后的值, 错误信息)"""
        if value == "":
            if rule.required:
                return value, f"Required field '{rule.name}' is empty"
            return value, None

        if len(value) > rule.max_length:
            return value, f"Value of '{rule.name}' is too long ({len(value)} > {rule.max_length} characters)"

        if rule.type in NUMERIC_TYPES and rule.type not in UNWRITABLE_TYPES:
            if parse_number(value) is None:
                return value, f"Invalid number for '{rule.name}': {value}"
        elif rule.type == 'checkbox':
            if parse_bool(value) is None:
                return value, f"Invalid checkbox value for '{rule.name}': {value} (use TRUE/FALSE)"
        elif rule.type in DATE_TYPES or (rule.type in DATETIME_TYPES and rule.type not in UNWRITABLE_TYPES):
            if parse_datetime(value) is None:
                return value, f"Invalid date for '{rule.name}': {value}"
        elif rule.type == 'email':
            if not EMAIL_PATTERN.match(value.strip()):
                return value, f"Invalid email for '{rule.name}': {value}"
        elif rule.type == 'url':
            parsed = urlparse(value.strip())
            if not parsed.scheme or not (parsed.netloc or parsed.scheme == 'mailto'):
                return value, f"Invalid URL for '{rule.name}': {value}"

        return (sanitize_text(value) if self.sanitize else value), None

    def validate(self, rows: List[RecordChange], action: WriteAction) -> ValidationResult:
        """校验一组写入变更

        严格模式下任一错误使 valid=False 且不返回任何行；
        宽松模式下丢弃出错字段，创建时缺少必填字段或无剩余字段则丢弃整行。
        """
        errors: List[RecordError] = []
        warnings: List[str] = []
        sanitized: List[RecordChange] = []
        rewritten: List[RecordChange] = []

        for change in rows:
            if action is WriteAction.DELETE:
                sanitized.append(change)
                continue

            fields: Dict[str, str] = {}
            drop_row = False
            cleaned_fields: Dict[str, str] = {}

            if action is WriteAction.CREATE:
                for rule in self.rules.values():
                    if rule.required and change.fields.get(rule.field_id, "") == "":
                        errors.append(self._error(change, rule.field_id, f"Required field '{rule.name}' is missing"))
                        drop_row = True

            for field_id, value in change.fields.items():
                rule = self.rules.get(field_id)
                if rule is None:
                    fields[field_id] = value
                    continue
                cleaned, message = self.check_value(rule, value)
                if message:
                    if not (drop_row and rule.required and value == ""):
                        errors.append(self._error(change, field_id, message))
                    if rule.required:
                        drop_row = True
                    continue
                if cleaned != value:
                    warnings.append(
                        f"Unsafe content removed from '{rule.name}' of {change.identity or f'row {change.row_number}'}"
                    )
                    cleaned_fields[field_id] = cleaned
                fields[field_id] = cleaned

            if drop_row or not fields:
                continue
            sanitized.append(RecordChange(change.target, change.identity, fields, change.row_number))
            if cleaned_fields and change.target is Side.AIRTABLE and change.row_number is not None:
                rewritten.append(RecordChange(Side.SHEETS, change.identity, cleaned_fields, change.row_number))

        if errors:
            logger.warning(f"Validation found {len(errors)} problem(s) in {len(rows)} {action.value.lower()}(s)")

        if self.strict and errors:
            return ValidationResult(False, errors, [], warnings)
        return ValidationResult(not errors, errors, sanitized, warnings, rewritten)

    @staticmethod
    def _error(change: RecordChange, field_id: str, message: str) -> RecordError:
        return RecordError(
            change.identity, ErrorCategory.VALIDATION, message, field_id, change.target, change.row_number
        )
