"""
字段值规范化工具

两端的值统一转换为字符串后再比较：数字去掉多余的小数位，
复选框为 TRUE/FALSE，日期为 ISO 格式，多值字段用 ", " 连接。
"""
import json
import math
from datetime import datetime, timezone, date
from typing import Any, Collection, List, Optional


LIST_SEPARATOR = ", "

NUMERIC_TYPES = {'number', 'currency', 'percent', 'duration', 'rating', 'autoNumber', 'count'}
DATE_TYPES = {'date'}
DATETIME_TYPES = {'dateTime', 'createdTime', 'lastModifiedTime'}
LIST_TYPES = {'multipleSelects', 'multipleRecordLinks', 'multipleCollaborators', 'multipleAttachments'}
SELECT_TYPES = {'singleSelect', 'multipleSelects'}
TEXT_TYPES = {
    'singleLineText', 'multilineText', 'richText', 'email', 'url', 'phoneNumber', 'singleSelect',
}

# 由 Airtable 计算得出的字段
READ_ONLY_TYPES = {
    'autoNumber', 'createdTime', 'lastModifiedTime', 'createdBy', 'lastModifiedBy',
    'formula', 'rollup', 'count', 'multipleLookupValues', 'button', 'externalSyncSource',
    'aiText',
}
# 无法从表格文本写回的字段
UNWRITABLE_TYPES = READ_ONLY_TYPES | {
    'multipleAttachments', 'singleCollaborator', 'multipleCollaborators', 'barcode',
}

TRUE_VALUES = {'true', 'yes', '1', 'y', 'checked'}
FALSE_VALUES = {'false', 'no', '0', 'n', 'unchecked', ''}

DATE_FORMATS = [
    '%Y-%m-%d',
    '%m/%d/%Y',
    '%Y/%m/%d',
    '%d.%m.%Y',
    '%b %d, %Y',
    '%B %d, %Y',
    '%d %b %Y',
]
DATETIME_FORMATS = [
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d %H:%M',
    '%m/%d/%Y %H:%M:%S',
    '%m/%d/%Y %H:%M',
]


def format_number(value: Any) -> str:
    """数字转规范字符串：整数不带小数点，最多保留 6 位小数"""
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"Not a finite number: {value}")
    if number.is_integer() and abs(number) < 1e15:
        return str(int(number))
    text = f"{number:.6f}".rstrip('0').rstrip('.')
    return "0" if text in ("-0", "") else text


def parse_number(value: Any) -> Optional[float]:
    """解析数字，允许千分位逗号，无法解析时返回 None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(',', '')
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def number_value(value: Any) -> Any:
    """规范字符串转 JSON 数字，整数保持 int"""
    number = parse_number(value)
    if number is None:
        raise ValueError(f"Cannot convert '{value}' to number")
    return int(number) if number.is_integer() and abs(number) < 1e15 else number


def parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value if value is not None else '').strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def format_bool(value: bool) -> str:
    return "TRUE" if value else "FALSE"


def parse_datetime(value: Any) -> Optional[datetime]:
    """解析常见日期格式，无时区的值按 UTC 处理"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value if value is not None else '').strip()
        if not text:
            return None
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            for fmt in DATE_FORMATS + DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: datetime) -> str:
    return value.strftime('%Y-%m-%d')


def format_datetime(value: datetime) -> str:
    """与 Airtable 返回的格式一致：2024-01-05T10:00:00.000Z"""
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def timestamp(value: Any) -> Optional[float]:
    """日期值转 epoch 秒，作为修订标记"""
    parsed = parse_datetime(value)
    return parsed.timestamp() if parsed else None


def split_list(value: Any, known: Optional[Collection[str]] = None) -> List[str]:
    """拆分逗号分隔的多值文本

    known 为已知的完整名称（选项名、关联记录显示值），名称本身含逗号时整体匹配，不再拆开。
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    text = str(value if value is not None else '')
    pieces = text.split(',')
    if not known:
        return [item.strip() for item in pieces if item.strip()]

    items = []
    start = 0
    while start < len(pieces):
        # 从最长的片段开始匹配
        end = next(
            (stop for stop in range(len(pieces), start + 1, -1)
             if ','.join(pieces[start:stop]).strip() in known),
            start + 1
        )
        item = ','.join(pieces[start:end]).strip()
        if item:
            items.append(item)
        start = end
    return items


def join_list(items: List[Any]) -> str:
    return LIST_SEPARATOR.join(str(item) for item in items)


def scalar_text(value: Any) -> str:
    """任意值转文本，用于公式、汇总等计算字段"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return format_bool(value)
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, list):
        return join_list(scalar_text(item) for item in value)
    if isinstance(value, dict):
        for key in ('name', 'text', 'label', 'url', 'email'):
            if value.get(key):
                return str(value[key])
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return str(value)
