"""
双向同步冲突处理
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from loguru import logger

from ..db.models import ConflictPolicy, SyncOptions
from .changes import ChangeSet, ConflictKind, RecordChange, Side, UpdateCandidate


class ResolutionAction(Enum):
    """冲突处理结果"""
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    SKIP = "SKIP"


@dataclass
class Resolution:
    """单个冲突的处理决定"""
    identity: str
    winning_side: Optional[Side]
    applied_fields: List[str]
    action: ResolutionAction
    changes: ChangeSet = field(default_factory=ChangeSet)


class ConflictResolver:
    """按配置的策略处理冲突

    AIRTABLE_WINS / SHEETS_WINS 对冲突字段无条件采用指定一端的值；
    NEWEST_WINS 比较两端修订标记，相等或缺失时 Airtable 胜出。
    """

    def __init__(self, policy: ConflictPolicy, options: SyncOptions):
        self.policy = policy
        self.options = options
        self.stats: Dict[str, int] = {
            'total': 0,
            'airtable_wins': 0,
            'sheets_wins': 0,
            'deleted': 0,
            'skipped': 0,
        }

    def _policy_side(self) -> Optional[Side]:
        if self.policy is ConflictPolicy.AIRTABLE_WINS:
            return Side.AIRTABLE
        if self.policy is ConflictPolicy.SHEETS_WINS:
            return Side.SHEETS
        if self.policy is ConflictPolicy.NEWEST_WINS:
            return None
        raise ValueError(f"Unsupported conflict policy: {self.policy}")

    def winner(self, candidate: UpdateCandidate) -> Side:
        """两端都修改时的胜出方"""
        side = self._policy_side()
        if side is not None:
            return side

        revision_a = candidate.row_a.source_revision if candidate.row_a else None
        revision_b = candidate.row_b.source_revision if candidate.row_b else None
        if revision_a is not None and revision_b is not None and revision_b > revision_a:
            return Side.SHEETS
        return Side.AIRTABLE

    def resolve(self, candidate: UpdateCandidate) -> Resolution:
        """处理单个冲突，返回需要写入两端的变更"""
        self.stats['total'] += 1

        if candidate.kind is ConflictKind.BOTH_MODIFIED:
            resolution = self._resolve_update(candidate)
        elif candidate.kind is ConflictKind.DELETED_IN_SHEETS:
            resolution = self._resolve_deletion(candidate, Side.SHEETS)
        elif candidate.kind is ConflictKind.DELETED_IN_AIRTABLE:
            resolution = self._resolve_deletion(candidate, Side.AIRTABLE)
        else:
            raise ValueError(f"Unsupported conflict kind: {candidate.kind}")

        logger.debug(
            f"Conflict on {candidate.identity} ({candidate.kind.value}): {resolution.action.value}, "
            f"winner={resolution.winning_side.value if resolution.winning_side else None}"
        )
        return resolution

    def resolve_all(self, candidates: List[UpdateCandidate]) -> ChangeSet:
        """处理全部冲突并合并结果"""
        merged = ChangeSet()
        for candidate in candidates:
            merged.merge(self.resolve(candidate).changes)
        if candidates:
            logger.info(f"Resolved {len(candidates)} conflict(s) with {self.policy.value}: {self.stats}")
        return merged

    def _resolve_update(self, candidate: UpdateCandidate) -> Resolution:
        winner = self.winner(candidate)
        row_a, row_b = candidate.row_a, candidate.row_b
        changes = ChangeSet()

        # 败方的非冲突修改照常同步到胜方
        if winner is Side.AIRTABLE:
            to_b = {key: row_a.fields.get(key, "") for key in candidate.conflict_fields}
            to_b.update(candidate.a_changes)
            to_a = dict(candidate.b_changes)
            self.stats['airtable_wins'] += 1
        else:
            to_a = {key: row_b.fields.get(key, "") for key in candidate.conflict_fields}
            to_a.update(candidate.b_changes)
            to_b = dict(candidate.a_changes)
            self.stats['sheets_wins'] += 1

        if to_b:
            changes.to_update_in_b.append(RecordChange(Side.SHEETS, candidate.identity, to_b, row_b.row_number))
        if to_a:
            changes.to_update_in_a.append(RecordChange(Side.AIRTABLE, candidate.identity, to_a, row_b.row_number))

        return Resolution(
            candidate.identity, winner, sorted(candidate.conflict_fields), ResolutionAction.UPDATE, changes
        )

    def _resolve_deletion(self, candidate: UpdateCandidate, deleted_in: Side) -> Resolution:
        """一端删除、另一端修改：删除方按策略胜出时传播删除，否则在删除方恢复"""
        survivor = deleted_in.other
        changes = ChangeSet()

        if self._policy_side() in (None, deleted_in):
            if survivor is Side.AIRTABLE:
                allowed = self.options.delete_extra_records
            else:
                allowed = self.options.delete_extra_rows

            if not allowed:
                self.stats['skipped'] += 1
                logger.info(
                    f"Deletion of {candidate.identity} in {deleted_in.value} not propagated: deletes are disabled"
                )
                return Resolution(candidate.identity, None, [], ResolutionAction.SKIP, changes)

            if survivor is Side.AIRTABLE:
                changes.to_delete_in_a.append(RecordChange(Side.AIRTABLE, candidate.identity))
            else:
                changes.to_delete_in_b.append(RecordChange(
                    Side.SHEETS, candidate.identity, row_number=candidate.row_b.row_number
                ))
            self.stats['deleted'] += 1
            return Resolution(candidate.identity, deleted_in, [], ResolutionAction.DELETE, changes)

        if survivor is Side.AIRTABLE:
            row = candidate.row_a
            changes.to_create_in_b.append(RecordChange(Side.SHEETS, candidate.identity, dict(row.fields)))
            self.stats['airtable_wins'] += 1
        else:
            row = candidate.row_b
            changes.to_create_in_a.append(RecordChange(Side.AIRTABLE, None, dict(row.fields), row.row_number))
            self.stats['sheets_wins'] += 1
        return Resolution(candidate.identity, survivor, sorted(row.fields), ResolutionAction.RESTORE, changes)
