"""
Google Sheets API 客户端
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Any, Optional, Union
from urllib.parse import quote

from loguru import logger

from ..config.config import GoogleConfig
from ..core.errors import ConfigurationError, ApiError, CredentialError
from .base import ApiClient, WriteAction, WriteOp, OpResult, BatchResult


def column_number_to_letter(column: int) -> str:
    """列号转字母（1=A, 27=AA）"""
    if column < 1:
        raise ValueError(f"Invalid column number: {column}")
    letters = ""
    while column > 0:
        column, remainder = divmod(column - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def column_letter_to_number(letters: str) -> int:
    """列字母转列号（A=1, AA=27）"""
    if not re.fullmatch(r"[A-Za-z]+", letters or ""):
        raise ValueError(f"Invalid column letters: {letters}")
    number = 0
    for char in letters.upper():
        number = number * 26 + (ord(char) - 64)
    return number


def quote_sheet_title(title: str) -> str:
    return "'" + title.replace("'", "''") + "'"


@dataclass
class SheetProperties:
    """工作表属性"""
    sheet_id: int
    title: str
    row_count: int = 1000
    column_count: int = 26

    def a1(self, column_index: int, row_number: int) -> str:
        """单元格 A1 地址，column_index 从 0 开始"""
        return f"{quote_sheet_title(self.title)}!{column_number_to_letter(column_index + 1)}{row_number}"


@dataclass
class SheetRow:
    """表格中的一行，row_number 从 1 开始"""
    row_number: int
    values: List[Any] = field(default_factory=list)

    def cell(self, column_index: int) -> Any:
        if column_index < len(self.values):
            return self.values[column_index]
        return ""


@dataclass
class SheetSnapshot:
    """一次读取得到的表格内容"""
    properties: SheetProperties
    header: List[Any]
    rows: List[SheetRow]
    revision: Optional[float] = None  # 文件最后修改时间（epoch 秒）


def parse_rfc3339(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()
    except ValueError:
        logger.warning(f"Unparseable timestamp: {value}")
        return None


class GoogleSheetsClient(ApiClient):
    """Google Sheets 客户端，单次写请求最多 500 行"""

    BATCH_CEILING = 500
    NAME = "Google Sheets"

    def __init__(self, access_token: str, spreadsheet_id: str, config: GoogleConfig, **kwargs):
        super().__init__(
            access_token,
            config.sheets_url,
            timeout=config.timeout,
            requests_per_second=config.requests_per_second,
            **kwargs
        )
        self.spreadsheet_id = spreadsheet_id
        self.drive_url = config.drive_url.rstrip('/')

    @property
    def _spreadsheet_url(self) -> str:
        return f"{self.base_url}/spreadsheets/{self.spreadsheet_id}"

    def _is_quota_error(self, response, message: str) -> bool:
        # 配额超限有时以 403 返回
        text = response.text or ''
        return super()._is_quota_error(response, message) or 'RESOURCE_EXHAUSTED' in text \
            or 'rateLimitExceeded' in text

    def _batch_update(self, requests_body: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._request('POST', f"{self._spreadsheet_url}:batchUpdate", json={'requests': requests_body})

    def get_sheet_properties(self, sheet: Union[int, str]) -> SheetProperties:
        """按 gid 或标题查找工作表"""
        data = self.call_with_retry(
            lambda: self._request('GET', self._spreadsheet_url, params={'fields': 'sheets.properties'}),
            "get spreadsheet"
        )
        for item in data.get('sheets', []):
            props = item.get('properties', {})
            grid = props.get('gridProperties', {})
            if str(props.get('sheetId')) == str(sheet) or props.get('title') == sheet:
                return SheetProperties(
                    sheet_id=props['sheetId'],
                    title=props['title'],
                    row_count=grid.get('rowCount', 1000),
                    column_count=grid.get('columnCount', 26),
                )
        raise ConfigurationError(f"Sheet {sheet} not found in spreadsheet {self.spreadsheet_id}")

    def get_revision(self) -> Optional[float]:
        """通过 Drive API 读取文件最后修改时间，作为整张表的修订标记"""
        try:
            data = self.call_with_retry(
                lambda: self._request(
                    'GET', f"{self.drive_url}/files/{self.spreadsheet_id}",
                    params={'fields': 'modifiedTime', 'supportsAllDrives': 'true'}
                ),
                "get modified time"
            )
        except (ApiError, CredentialError) as e:
            # 缺少 Drive 权限时退化为无修订标记
            logger.warning(f"Could not read spreadsheet modified time: {e}")
            return None
        return parse_rfc3339(data.get('modifiedTime'))

    def fetch_all(self, properties: SheetProperties, include_header: bool = True) -> SheetSnapshot:
        """读取整张工作表"""
        data = self.call_with_retry(
            lambda: self._request(
                'GET',
                f"{self._spreadsheet_url}/values/{quote(quote_sheet_title(properties.title), safe='')}",
                params={
                    'majorDimension': 'ROWS',
                    'valueRenderOption': 'UNFORMATTED_VALUE',
                    'dateTimeRenderOption': 'FORMATTED_STRING',
                }
            ),
            "read values"
        )
        values = data.get('values', [])

        header: List[Any] = []
        start = 0
        if include_header and values:
            header = values[0]
            start = 1

        rows = [
            SheetRow(row_number=index + 1, values=list(row))
            for index, row in enumerate(values)
            if index >= start
        ]
        snapshot = SheetSnapshot(properties, header, rows, self.get_revision())
        logger.info(f"Fetched {len(rows)} rows from sheet '{properties.title}'")
        return snapshot

    def write_batch(self, properties: SheetProperties, ops: List[WriteOp],
                    batch_size: Optional[int] = None) -> BatchResult:
        """先更新，再自下而上删除，最后追加新行，保证行号在操作期间有效"""
        result = BatchResult()

        updates = [op for op in ops if op.action is WriteAction.UPDATE]
        deletes = sorted(
            (op for op in ops if op.action is WriteAction.DELETE),
            key=lambda op: op.row_number, reverse=True
        )
        creates = [op for op in ops if op.action is WriteAction.CREATE]

        if updates:
            result.extend(self._write_chunks(
                updates, batch_size, lambda chunk: self._update(properties, chunk), "update rows"
            ))
        if deletes:
            result.extend(self._write_chunks(
                deletes, batch_size, lambda chunk: self._delete(properties, chunk), "delete rows"
            ))
        if creates:
            result.extend(self._write_chunks(
                creates, batch_size, lambda chunk: self._append(properties, chunk), "append rows"
            ))
        return result

    def _update(self, properties: SheetProperties, chunk: List[WriteOp]) -> List[OpResult]:
        # 按单元格写入，未映射的单元格保持不变
        data = [
            {'range': properties.a1(column, op.row_number), 'values': [[value]]}
            for op in chunk
            for column, value in sorted(op.fields.items())
        ]
        if data:
            self._request(
                'POST', f"{self._spreadsheet_url}/values:batchUpdate",
                json={'valueInputOption': 'RAW', 'data': data}
            )
        return [OpResult(op, True, new_identity=op.identity) for op in chunk]

    def _delete(self, properties: SheetProperties, chunk: List[WriteOp]) -> List[OpResult]:
        # chunk 已按行号降序排列
        self._batch_update([
            {
                'deleteDimension': {
                    'range': {
                        'sheetId': properties.sheet_id,
                        'dimension': 'ROWS',
                        'startIndex': op.row_number - 1,
                        'endIndex': op.row_number,
                    }
                }
            }
            for op in chunk
        ])
        return [OpResult(op, True, new_identity=op.identity) for op in chunk]

    def _append(self, properties: SheetProperties, chunk: List[WriteOp]) -> List[OpResult]:
        width = max((column + 1 for op in chunk for column in op.fields), default=1)
        rows = []
        for op in chunk:
            row: List[Any] = [""] * width
            for column, value in op.fields.items():
                row[column] = value
            rows.append(row)

        last_column = column_number_to_letter(width)
        target = quote(f"{quote_sheet_title(properties.title)}!A1:{last_column}1", safe='')
        self._request(
            'POST', f"{self._spreadsheet_url}/values/{target}:append",
            params={'valueInputOption': 'RAW', 'insertDataOption': 'INSERT_ROWS'},
            json={'majorDimension': 'ROWS', 'values': rows}
        )
        return [OpResult(op, True, new_identity=op.identity) for op in chunk]

    def ensure_columns(self, properties: SheetProperties, column_count: int) -> bool:
        """列数不足时追加列，返回是否有修改"""
        missing = column_count - properties.column_count
        if missing <= 0:
            return False

        self.call_with_retry(
            lambda: self._batch_update([{
                'appendDimension': {
                    'sheetId': properties.sheet_id,
                    'dimension': 'COLUMNS',
                    'length': missing,
                }
            }]),
            "append columns"
        )
        properties.column_count = column_count
        logger.info(f"Added {missing} columns to sheet '{properties.title}'")
        return True

    def hide_column(self, properties: SheetProperties, column_index: int) -> None:
        """隐藏指定列（从 0 开始）"""
        self.call_with_retry(
            lambda: self._batch_update([{
                'updateDimensionProperties': {
                    'range': {
                        'sheetId': properties.sheet_id,
                        'dimension': 'COLUMNS',
                        'startIndex': column_index,
                        'endIndex': column_index + 1,
                    },
                    'properties': {'hiddenByUser': True},
                    'fields': 'hiddenByUser',
                }
            }]),
            "hide column"
        )

    def set_dropdown_validations(self, properties: SheetProperties, choices: Dict[int, List[str]],
                                 start_row: int = 1) -> None:
        """为选项列设置下拉列表校验

        choices: {列索引: 选项名列表}，start_row 为开始的行索引（从 0 开始，默认跳过表头）。
        不限制输入，表格中仍可填写列表外的值。
        """
        requests_body = [
            {
                'setDataValidation': {
                    'range': {
                        'sheetId': properties.sheet_id,
                        'startRowIndex': start_row,
                        'startColumnIndex': column,
                        'endColumnIndex': column + 1,
                    },
                    'rule': {
                        'condition': {
                            'type': 'ONE_OF_LIST',
                            'values': [{'userEnteredValue': name} for name in names],
                        },
                        'showCustomUi': True,
                        'strict': False,
                    },
                }
            }
            for column, names in sorted(choices.items()) if names
        ]
        if not requests_body:
            return
        self.call_with_retry(lambda: self._batch_update(requests_body), "set dropdown validation")
        logger.debug(f"Dropdown validation set on {len(requests_body)} column(s) of {properties.title}")

    def write_header(self, properties: SheetProperties, header: Dict[int, str]) -> None:
        """写入表头行（第 1 行）中的指定列"""
        data = [
            {'range': properties.a1(column, 1), 'values': [[name]]}
            for column, name in sorted(header.items())
        ]
        if not data:
            return
        self.call_with_retry(
            lambda: self._request(
                'POST', f"{self._spreadsheet_url}/values:batchUpdate",
                json={'valueInputOption': 'RAW', 'data': data}
            ),
            "write header"
        )

