"""
关联记录解析：记录 ID 与主字段显示值互相转换，每次运行缓存一次
"""
from typing import Dict, List, Set, Tuple

from loguru import logger

from .values import scalar_text


class LinkedRecordResolver:
    """关联记录解析器"""

    def __init__(self, client, create_missing: bool = False):
        """
        client: AirtableClient，需提供 get_table / fetch_all / create_records
        """
        self.client = client
        self.create_missing = create_missing
        self._names: Dict[str, Dict[str, str]] = {}   # table_id -> {record_id: name}
        self._ids: Dict[str, Dict[str, str]] = {}     # table_id -> {name: record_id}
        self.created = 0

    def _load(self, table_id: str) -> None:
        if table_id in self._names:
            return

        table = self.client.get_table(table_id)
        primary = table.primary_field_id
        records = self.client.fetch_all(table.id, fields=[primary])

        names: Dict[str, str] = {}
        ids: Dict[str, str] = {}
        for record in records:
            name = scalar_text(record.get('fields', {}).get(primary))
            names[record['id']] = name
            if name and name not in ids:
                ids[name] = record['id']
            elif name:
                logger.debug(f"Duplicate display value '{name}' in linked table {table_id}, using first match")

        self._names[table_id] = names
        self._ids[table_id] = ids
        logger.debug(f"Cached {len(names)} linked records from table {table_id}")

    def names_for(self, table_id: str, record_ids: List[str]) -> List[str]:
        """记录 ID 转显示值，未知 ID 原样返回"""
        self._load(table_id)
        names = self._names[table_id]
        return [names.get(record_id) or record_id for record_id in record_ids]

    def known_names(self, table_id: str) -> Set[str]:
        """关联表中的全部显示值"""
        self._load(table_id)
        return set(self._ids[table_id])

    def ids_for(
self, table_id: str, names: List[str]) -> Tuple[List[str], List[str]]:
        """显示值转记录 ID

        返回 (ids, unresolved)。开启 create_missing 时先在关联表中创建缺失记录。
        """
        self._load(table_id)
        index = self._ids[table_id]

        missing = []
        for name in names:
            if name not in index and name not in missing:
                missing.append(name)

        if missing and self.create_missing:
            self._create(table_id, missing)
            missing = [name for name in missing if name not in index]

        ids = [index[name] for name in names if name in index]
        return ids, missing

    def _create(self, table_id: str, names: List[str]) -> None:
        table = self.client.get_table(table_id)
        new_ids = self.client.create_records(table.id, [{table.primary_field_id: name} for name in names])
        for name, record_id in zip(names, new_ids):
            if record_id:
                self._ids[table_id][name] = record_id
                self._names[table_id][record_id] = name
                self.created += 1
                logger.info(f"Created linked record '{name}' in table {table_id}: {record_id}")
            else:
                logger.warning(f"Failed to create linked record '{name}' in table {table_id}")

    def clear(self) -> None:
        self._names.clear()
        self._ids.clear()
