"""
差异计算：比较两端规范化快照，得到各方向的创建、更新、删除集合
"""
from bisect import bisect_left
from typing import Dict, List, Optional, Set, Iterable

from loguru import logger

from ..db.models import SyncDirection, SyncOptions
from .changes import (
    ChangeSet, NormalizedRow, RecordChange, RecordError, UpdateCandidate,
    ConflictKind, ErrorCategory, Side,
)
from .sync_state import BaselineEntry


class DiffEngine:
    """差异计算器

    双向同步依赖上次运行保存的基线判断哪一端发生了修改：
    只有一端改动的字段直接同步到另一端，两端都改动（或没有基线）的字段交给冲突处理。
    """

    def __init__(self, field_ids: Iterable[str], airtable_read_only: Optional[Set[str]] = None):
        self.field_ids = list(field_ids)
        # 只读字段只能从 Airtable 流向表格
        self.airtable_read_only = set(airtable_read_only or ())

    def diff(self, rows_a: List[NormalizedRow], rows_b: List[NormalizedRow],
             direction: SyncDirection, options: SyncOptions,
             baseline: Optional[Dict[str, BaselineEntry]] = None) -> ChangeSet:
        """计算变更集"""
        baseline = baseline or {}
        changes = ChangeSet()

        blocked = self._check_identities(rows_b, baseline, changes)

        index_a = {row.identity: row for row in rows_a if row.identity not in blocked}
        index_b: Dict[str, NormalizedRow] = {}
        unidentified: List[NormalizedRow] = []
        for row in rows_b:
            if row.identity is None:
                unidentified.append(row)
            elif row.identity not in blocked:
                index_b[row.identity] = row

        for identity, row_a in index_a.items():
            row_b = index_b.get(identity)
            if row_b is None:
                self._airtable_only(row_a, direction, options, baseline.get(identity), changes)
            else:
                self._compare(row_a, row_b, direction, baseline.get(identity), changes)

        for identity, row_b in index_b.items():
            if identity not in index_a:
                self._sheet_only(row_b, direction, options, baseline.get(identity), changes)
        for row_b in unidentified:
            self._sheet_only(row_b, direction, options, None, changes)

        logger.info(f"Diff computed ({direction.value}): {changes.summary()}")
        return changes

    # ------------------------------------------------------------------
    # ID 检查
    # ------------------------------------------------------------------

    def _check_identities(self, rows_b: List[NormalizedRow], baseline: Dict[str, BaselineEntry],
                          changes: ChangeSet) -> Set[str]:
        """找出重复或被移动过的 ID，这些记录本次两端都不处理"""
        counts: Dict[str, int] = {}
        for row in rows_b:
            if row.identity is not None:
                counts[row.identity] = counts.get(row.identity, 0) + 1

        blocked = {identity for identity, count in counts.items() if count > 1}
        for row in rows_b:
            if row.identity in blocked:
                changes.identity_errors.append(RecordError(
                    row.identity, ErrorCategory.IDENTITY_MISMATCH,
                    f"Record {row.identity} appears in more than one sheet row",
                    side=Side.SHEETS, row_number=row.row_number,
                ))

        tracked = [
            row for row in rows_b
            if row.identity is not None and row.identity not in blocked
            and row.identity in baseline and baseline[row.identity].position is not None
        ]
        for row in self._out_of_order(tracked, baseline):
            blocked.add(row.identity)
            changes.identity_errors.append(RecordError(
                row.identity, ErrorCategory.IDENTITY_MISMATCH,
                f"Row {row.row_number} holding record {row.identity} was moved since the last sync",
                side=Side.SHEETS, row_number=row.row_number,
            ))

        if blocked:
            logger.warning(f"{len(blocked)} record(s) skipped because of identity mismatches")
        return blocked

    @staticmethod
    def _out_of_order(rows: List[NormalizedRow], baseline: Dict[str, BaselineEntry]) -> List[NormalizedRow]:
        """不在基线顺序最长递增子序列中的行视为被移动"""
        positions = [baseline[row.identity].position for row in rows]
        tails: List[int] = []
        tail_index: List[int] = []
        parent = [-1] * len(positions)

        for i, position in enumerate(positions):
            k = bisect_left(tails, position)
            if k == len(tails):
                tails.append(position)
                tail_index.append(i)
            else:
                tails[k] = position
                tail_index[k] = i
            parent[i] = tail_index[k - 1] if k > 0 else -1

        keep = set()
        i = tail_index[-1] if tail_index else -1
        while i >= 0:
            keep.add(i)
            i = parent[i]
        return [row for i, row in enumerate(rows) if i not in keep]

    # ------------------------------------------------------------------
    # 单端记录
    # ------------------------------------------------------------------

    def _writable(self, fields: Dict[str, str]) -> Dict[str, str]:
        return {key: value for key, value in fields.items() if key not in self.airtable_read_only}

    def _modified(self, fields: Dict[str, str], entry: BaselineEntry, skip: Set[str] = frozenset()) -> bool:
        """与基线相比是否有改动，基线中没有的字段不参与比较"""
        return any(
            fields.get(key, "") != value
            for key, value in entry.fields.items()
            if key in self.field_ids and key not in skip
        )

    def _airtable_only(self, row_a: NormalizedRow, direction: SyncDirection, options: SyncOptions,
                       entry: Optional[BaselineEntry], changes: ChangeSet) -> None:
        create = RecordChange(Side.SHEETS, row_a.identity, dict(row_a.fields))

        if direction is SyncDirection.AIRTABLE_TO_SHEETS:
            changes.to_create_in_b.append(create)
        elif direction is SyncDirection.SHEETS_TO_AIRTABLE:
            if options.delete_extra_records:
                changes.to_delete_in_a.append(RecordChange(Side.AIRTABLE, row_a.identity))
        elif entry is None:
            changes.to_create_in_b.append(create)
        elif self._modified(row_a.fields, entry):
            # 表格中删除了行，但 Airtable 记录在上次同步后被修改
            changes.conflicts.append(UpdateCandidate(row_a.identity, ConflictKind.DELETED_IN_SHEETS, row_a, None))
        elif options.delete_extra_records:
            changes.to_delete_in_a.append(RecordChange(Side.AIRTABLE, row_a.identity))
        else:
            changes.to_create_in_b.append(create)

    def _sheet_only(self, row_b: NormalizedRow, direction: SyncDirection, options: SyncOptions,
                    entry: Optional[BaselineEntry], changes: ChangeSet) -> None:
        # 新建的 Airtable 记录会得到新 ID，由调用方回写到表格
        create = RecordChange(Side.AIRTABLE, None, self._writable(row_b.fields), row_b.row_number)
        delete = RecordChange(Side.SHEETS, row_b.identity, row_number=row_b.row_number)

        if direction is SyncDirection.SHEETS_TO_AIRTABLE:
            changes.to_create_in_a.append(create)
        elif direction is SyncDirection.AIRTABLE_TO_SHEETS:
            if options.delete_extra_rows:
                changes.to_delete_in_b.append(delete)
        elif entry is None:
            changes.to_create_in_a.append(create)
        elif self._modified(row_b.fields, entry, skip=self.airtable_read_only):
            changes.conflicts.append(UpdateCandidate(row_b.identity, ConflictKind.DELETED_IN_AIRTABLE, None, row_b))
        elif options.delete_extra_rows:
            changes.to_delete_in_b.append(delete)
        else:
            changes.to_create_in_a.append(create)

    # ------------------------------------------------------------------
    # 两端都存在
    # ------------------------------------------------------------------

    def _compare(self, row_a: NormalizedRow, row_b: NormalizedRow, direction: SyncDirection,
                 entry: Optional[BaselineEntry], changes: ChangeSet) -> None:
        identity = row_a.identity
        differing = [
            key for key in self.field_ids
            if row_a.fields.get(key, "") != row_b.fields.get(key, "")
        ]
        if direction is SyncDirection.SHEETS_TO_AIRTABLE:
            differing = [key for key in differing if key not in self.airtable_read_only]

        if not differing:
            changes.unchanged += 1
            return

        if direction is SyncDirection.AIRTABLE_TO_SHEETS:
            changes.to_update_in_b.append(RecordChange(
                Side.SHEETS, identity, {key: row_a.fields.get(key, "") for key in differing}, row_b.row_number
            ))
            return
        if direction is SyncDirection.SHEETS_TO_AIRTABLE:
            changes.to_update_in_a.append(RecordChange(
                Side.AIRTABLE, identity, {key: row_b.fields.get(key, "") for key in differing}, row_b.row_number
            ))
            return

        base = entry.fields if entry else {}
        a_changes: Dict[str, str] = {}
        b_changes: Dict[str, str] = {}
        conflict_fields: List[str] = []

        for key in differing:
            value_a = row_a.fields.get(key, "")
            value_b = row_b.fields.get(key, "")
            if key in self.airtable_read_only:
                a_changes[key] = value_a
            elif key not in base:
                conflict_fields.append(key)
            elif value_a == base[key]:
                b_changes[key] = value_b
            elif value_b == base[key]:
                a_changes[key] = value_a
            else:
                conflict_fields.append(key)

        if conflict_fields:
            changes.conflicts.append(UpdateCandidate(
                identity, ConflictKind.BOTH_MODIFIED, row_a, row_b, conflict_fields, a_changes, b_changes
            ))
            return

        if a_changes:
            changes.to_update_in_b.append(RecordChange(Side.SHEETS, identity, a_changes, row_b.row_number))
        if b_changes:
            changes.to_update_in_a.append(RecordChange(Side.AIRTABLE, identity, b_changes, row_b.row_number))
