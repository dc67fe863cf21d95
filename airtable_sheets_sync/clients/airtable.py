"""
Airtable REST API 客户端
"""
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from urllib.parse import quote

from loguru import logger

from ..config.config import AirtableConfig
from ..core.changes import ErrorCategory
from ..core.errors import ConfigurationError, RemoteValidationError
from .base import ApiClient, WriteAction, WriteOp, OpResult, BatchResult


PAGE_SIZE = 100


@dataclass
class AirtableField:
    """表字段定义"""
    id: str
    name: str
    type: str
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def linked_table_id(self) -> Optional[str]:
        return self.options.get('linkedTableId')

    @property
    def choices(self) -> List[str]:
        return [choice.get('name') for choice in self.options.get('choices', [])]


@dataclass
class AirtableTable:
    """表结构"""
    id: str
    name: str
    primary_field_id: str
    fields: Dict[str, AirtableField] = field(default_factory=dict)

    @property
    def primary_field(self) -> Optional[AirtableField]:
        return self.fields.get(self.primary_field_id)

    def field_by_name(self, name: str) -> Optional[AirtableField]:
        for item in self.fields.values():
            if item.name == name:
                return item
        return None


class AirtableClient(ApiClient):
    """Airtable 客户端，单次写请求最多 10 条记录"""

    BATCH_CEILING = 10
    NAME = "Airtable"

    def __init__(self, access_token: str, base_id: str, config: AirtableConfig, **kwargs):
        super().__init__(
            access_token,
            config.base_url,
            timeout=config.timeout,
            requests_per_second=config.requests_per_second,
            **kwargs
        )
        self.base_id = base_id
        self._schema: Optional[Dict[str, AirtableTable]] = None

    def _table_url(self, table_id: str) -> str:
        return f"{self.base_url}/{self.base_id}/{quote(table_id, safe='')}"

    def fetch_schema(self, refresh: bool = False) -> Dict[str, AirtableTable]:
        """读取 base 下所有表的结构"""
        if self._schema is not None and not refresh:
            return self._schema

        data = self.call_with_retry(
            lambda: self._request('GET', f"{self.base_url}/meta/bases/{self.base_id}/tables"),
            "fetch schema"
        )
        tables = {}
        for item in data.get('tables', []):
            fields = {
                f['id']: AirtableField(f['id'], f.get('name', ''), f.get('type', ''), f.get('options') or {})
                for f in item.get('fields', [])
            }
            tables[item['id']] = AirtableTable(item['id'], item.get('name', ''), item.get('primaryFieldId'), fields)

        self._schema = tables
        logger.debug(f"Loaded Airtable schema for base {self.base_id}: {len(tables)} tables")
        return tables

    def get_table(self, table_id: str) -> AirtableTable:
        """按 ID 或名称获取表结构"""
        schema = self.fetch_schema()
        if table_id in schema:
            return schema[table_id]
        for table in schema.values():
            if table.name == table_id:
                return table
        raise ConfigurationError(f"Airtable table {table_id} not found in base {self.base_id}")

    def fetch_all(self, table_id: str, view_id: Optional[str] = None,
                  fields: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """分页读取整张表，字段以字段 ID 为键"""
        records: List[Dict[str, Any]] = []
        offset: Optional[str] = None

        while True:
            params: List[Any] = [('pageSize', PAGE_SIZE), ('returnFieldsByFieldId', 'true')]
            if view_id:
                params.append(('view', view_id))
            for field_id in fields or []:
                params.append(('fields[]', field_id))
            if offset:
                params.append(('offset', offset))

            page = self.call_with_retry(
                lambda: self._request('GET', self._table_url(table_id), params=params),
                "list records"
            )
            records.extend(page.get('records', []))
            offset = page.get('offset')
            if not offset:
                break

        logger.info(f"Fetched {len(records)} records from Airtable table {table_id}")
        return records

    def write_batch(self, table_id: str, ops: List[WriteOp],
                    batch_size: Optional[int] = None) -> BatchResult:
        """按创建、更新、删除分组分批写入"""
        result = BatchResult()
        url = self._table_url(table_id)

        creates = [op for op in ops if op.action is WriteAction.CREATE]
        updates = [op for op in ops if op.action is WriteAction.UPDATE]
        deletes = [op for op in ops if op.action is WriteAction.DELETE]

        if creates:
            result.extend(self._write_chunks(
                creates, batch_size, lambda chunk: self._create(url, chunk), "create records"
            ))
        if updates:
            result.extend(self._write_chunks(
                updates, batch_size, lambda chunk: self._update(url, chunk), "update records"
            ))
        if deletes:
            result.extend(self._write_chunks(
                deletes, batch_size, lambda chunk: self._delete(url, chunk), "delete records"
            ))
        return result

    def _create(self, url: str, chunk: List[WriteOp]) -> List[OpResult]:
        body = {'records': [{'fields': op.fields} for op in chunk], 'typecast': True}
        data = self._request('POST', url, json=body, params={'returnFieldsByFieldId': 'true'})
        created = data.get('records', [])
        if len(created) != len(chunk):
            raise RemoteValidationError(
                f"Airtable returned {len(created)} records for {len(chunk)} creates"
            )
        return [OpResult(op, True, new_identity=record['id']) for op, record in zip(chunk, created)]

    def _update(self, url: str, chunk: List[WriteOp]) -> List[OpResult]:
        body = {
            'records': [{'id': op.identity, 'fields': op.fields} for op in chunk],
            'typecast': True,
        }
        self._request('PATCH', url, json=body, params={'returnFieldsByFieldId': 'true'})
        return [OpResult(op, True, new_identity=op.identity) for op in chunk]

    def _delete(self, url: str, chunk: List[WriteOp]) -> List[OpResult]:
        params = [('records[]', op.identity) for op in chunk]
        data = self._request('DELETE', url, params=params)
        deleted = {item['id'] for item in data.get('records', []) if item.get('deleted')}
        return [
            OpResult(op, True, new_identity=op.identity) if op.identity in deleted
            else OpResult(op, False, category=ErrorCategory.REMOTE_REJECTED, error="Record was not deleted")
            for op in chunk
        ]

    def create_records(self, table_id: str, records: List[Dict[str, Any]]) -> List[Optional[str]]:
        """创建记录并返回新 ID（失败的位置为 None），用于补建关联记录"""
        ops = [
            WriteOp(WriteAction.CREATE, key=str(index), fields=fields)
            for index, fields in enumerate(records)
        ]
        result = self.write_batch(table_id, ops)
        ids: List[Optional[str]] = [None] * len(records)
        for item in result.results:
            if item.success:
                ids[int(item.op.key)] = item.new_identity
        return ids
