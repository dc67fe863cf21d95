"""
同步过程中使用的内存数据结构（不落库）
"""
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from enum import Enum


class Side(Enum):
    """数据源"""
    AIRTABLE = "airtable"
    SHEETS = "sheets"

    @property
    def other(self) -> 'Side':
        return Side.SHEETS if self is Side.AIRTABLE else Side.AIRTABLE


class ErrorCategory(Enum):
    """单条记录错误类别"""
    TRANSIENT = "TRANSIENT"
    REMOTE_REJECTED = "REMOTE_REJECTED"
    VALIDATION = "VALIDATION"
    UNRESOLVED_REFERENCE = "UNRESOLVED_REFERENCE"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"


class ConflictKind(Enum):
    """冲突类型"""
    BOTH_MODIFIED = "BOTH_MODIFIED"
    DELETED_IN_AIRTABLE = "DELETED_IN_AIRTABLE"
    DELETED_IN_SHEETS = "DELETED_IN_SHEETS"


@dataclass
class NormalizedRow:
    """两端统一后的记录，字段值均为规范化字符串"""
    identity: Optional[str]
    fields: Dict[str, str]
    source_revision: Optional[float] = None
    row_number: Optional[int] = None  # 表格端的行号（从 1 开始）
    raw: Any = None


@dataclass
class RecordError:
    """单条记录（或单个字段）的错误"""
    identity: Optional[str]
    category: ErrorCategory
    message: str
    field: Optional[str] = None
    side: Optional[Side] = None
    row_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identity': self.identity,
            'category': self.category.value,
            'message': self.message,
            'field': self.field,
            'side': self.side.value if self.side else None,
            'row_number': self.row_number,
        }


@dataclass
class RecordChange:
    """待写入目标端的变更：创建、更新（仅变化字段）或删除"""
    target: Side
    identity: Optional[str]
    fields: Dict[str, str] = field(default_factory=dict)
    row_number: Optional[int] = None

    @property
    def changed_fields(self) -> List[str]:
        return sorted(self.fields)


@dataclass
class UpdateCandidate:
    """双向同步中两端都有待处理变更的记录"""
    identity: str
    kind: ConflictKind
    row_a: Optional[NormalizedRow]
    row_b: Optional[NormalizedRow]
    conflict_fields: List[str] = field(default_factory=list)
    a_changes: Dict[str, str] = field(default_factory=dict)  # 仅 Airtable 端修改的字段
    b_changes: Dict[str, str] = field(default_factory=dict)  # 仅表格端修改的字段


@dataclass
class ChangeSet:
    """一次同步计算出的全部变更"""
    to_create_in_b: List[RecordChange] = field(default_factory=list)
    to_update_in_b: List[RecordChange] = field(default_factory=list)
    to_delete_in_b: List[RecordChange] = field(default_factory=list)
    to_create_in_a: List[RecordChange] = field(default_factory=list)
    to_update_in_a: List[RecordChange] = field(default_factory=list)
    to_delete_in_a: List[RecordChange] = field(default_factory=list)
    conflicts: List[UpdateCandidate] = field(default_factory=list)
    identity_errors: List[RecordError] = field(default_factory=list)
    unchanged: int = 0

    def merge(self, other: 'ChangeSet') -> None:
        """合并另一组变更（冲突处理结果）"""
        self.to_create_in_b.extend(other.to_create_in_b)
        self.to_update_in_b.extend(other.to_update_in_b)
        self.to_delete_in_b.extend(other.to_delete_in_b)
        self.to_create_in_a.extend(other.to_create_in_a)
        self.to_update_in_a.extend(other.to_update_in_a)
        self.to_delete_in_a.extend(other.to_delete_in_a)

    @property
    def is_empty(self) -> bool:
        return not any((
            self.to_create_in_b, self.to_update_in_b, self.to_delete_in_b,
            self.to_create_in_a, self.to_update_in_a, self.to_delete_in_a,
            self.conflicts,
        ))

    def summary(self) -> Dict[str, int]:
        """变更数量汇总"""
        return {
            'create_in_sheets': len(self.to_create_in_b),
            'update_in_sheets': len(self.to_update_in_b),
            'delete_in_sheets': len(self.to_delete_in_b),
            'create_in_airtable': len(self.to_create_in_a),
            'update_in_airtable': len(self.to_update_in_a),
            'delete_in_airtable': len(self.to_delete_in_a),
            'conflicts': len(self.conflicts),
            'identity_errors': len(self.identity_errors),
            'unchanged': self.unchanged,
        }


@dataclass
class RunReport:
    """一次同步运行的结果"""
    run_id: Optional[int]
    config_id: int
    status: str
    added: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    conflicts: Optional[Dict[str, int]] = None
    change_summary: Optional[Dict[str, int]] = None
    dry_run: bool = False
    duration: float = 0.0
    state_history: List[str] = field(default_factory=list)
    error_count: int = 0

    @property
    def counts(self) -> Dict[str, int]:
        return {
            'added': self.added,
            'updated': self.updated,
            'deleted': self.deleted,
            'errors': self.error_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'config_id': self.config_id,
            'status': self.status,
            'counts': self.counts,
            'errors': self.errors,
            'warnings': self.warnings,
            'conflicts': self.conflicts,
            'change_summary': self.change_summary,
            'dry_run': self.dry_run,
            'duration': round(self.duration, 3),
        }
