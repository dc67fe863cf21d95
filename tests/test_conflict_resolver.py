"""
冲突处理测试
"""
import random
import unittest

from airtable_sheets_sync.core.changes import NormalizedRow, UpdateCandidate, ConflictKind, Side
from airtable_sheets_sync.core.conflict_resolver import ConflictResolver, ResolutionAction
from airtable_sheets_sync.db.models import ConflictPolicy, SyncOptions


def both_modified(revision_a=None, revision_b=None, a_changes=None, b_changes=None):
    row_a = NormalizedRow('rec1', {'fldName': 'Alice', 'fldAge': '31'}, revision_a)
    row_b = NormalizedRow('rec1', {'fldName': 'Alicia', 'fldAge': '30'}, revision_b, row_number=5)
    return UpdateCandidate(
        'rec1', ConflictKind.BOTH_MODIFIED, row_a, row_b, ['fldName'], a_changes or {}, b_changes or {}
    )


class TestBothModified(unittest.TestCase):
    """两端修改同一字段"""

    def test_airtable_wins(self):
        """测试 AIRTABLE_WINS：冲突字段写入表格，表格的其他修改写回 Airtable"""
        resolver = ConflictResolver(ConflictPolicy.AIRTABLE_WINS, SyncOptions())
        candidate = both_modified(10.0, 20.0, b_changes={'fldAge': '30'})

        resolution = resolver.resolve(candidate)

        self.assertEqual(resolution.winning_side, Side.AIRTABLE)
        self.assertEqual(resolution.action, ResolutionAction.UPDATE)
        self.assertEqual(resolution.applied_fields, ['fldName'])
        self.assertEqual(resolution.changes.to_update_in_b[0].fields, {'fldName': 'Alice'})
        self.assertEqual(resolution.changes.to_update_in_b[0].row_number, 5)
        self.assertEqual(resolution.changes.to_update_in_a[0].fields, {'fldAge': '30'})
        self.assertEqual(resolver.stats['airtable_wins'], 1)

    def test_sheets_wins(self):
        """测试 SHEETS_WINS"""
        resolver = ConflictResolver(ConflictPolicy.SHEETS_WINS, SyncOptions())
        candidate = both_modified(20.0, 10.0, a_changes={'fldAge': '31'})

        resolution = resolver.resolve(candidate)

        self.assertEqual(resolution.winning_side, Side.SHEETS)
        self.assertEqual(resolution.changes.to_update_in_a[0].fields, {'fldName': 'Alicia'})
        self.assertEqual(resolution.changes.to_update_in_b[0].fields, {'fldAge': '31'})

    def test_newest_wins(self):
        """测试 NEWEST_WINS 按修订时间选择"""
        resolver = ConflictResolver(ConflictPolicy.NEWEST_WINS, SyncOptions())

        self.assertEqual(resolver.winner(both_modified(5.0, 7.0)), Side.SHEETS)
        self.assertEqual(resolver.winner(both_modified(7.0, 5.0)), Side.AIRTABLE)

    def test_newest_wins_tie_and_missing(self):
        """测试修订时间相同或缺失时 Airtable 胜出"""
        resolver = ConflictResolver(ConflictPolicy.NEWEST_WINS, SyncOptions())

        self.assertEqual(resolver.winner(both_modified(5.0, 5.0)), Side.AIRTABLE)
        self.assertEqual(resolver.winner(both_modified(None, 7.0)), Side.AIRTABLE)
        self.assertEqual(resolver.winner(both_modified(5.0, None)), Side.AIRTABLE)

    def test_newest_wins_is_deterministic(self):
        """测试相同输入总是得到相同结果"""
        rng = random.Random(42)
        for _ in range(200):
            revision_a = rng.choice([None, rng.uniform(0, 100)])
            revision_b = rng.choice([None, rng.uniform(0, 100), revision_a])
            candidate = both_modified(revision_a, revision_b)

            first = ConflictResolver(ConflictPolicy.NEWEST_WINS, SyncOptions()).resolve(candidate)
            second = ConflictResolver(ConflictPolicy.NEWEST_WINS, SyncOptions()).resolve(candidate)

            self.assertEqual(first.winning_side, second.winning_side)
            self.assertEqual(first.changes, second.changes)
            expected = Side.SHEETS if (
                revision_a is not None and revision_b is not None and revision_b > revision_a
            ) else Side.AIRTABLE
            self.assertEqual(first.winning_side, expected)


class TestDeletion(unittest.TestCase):
    """一端删除、另一端修改"""

    def deleted_in_sheets(self):
        row_a = NormalizedRow('rec1', {'fldName': 'Alice'}, 10.0)
        return UpdateCandidate('rec1', ConflictKind.DELETED_IN_SHEETS, row_a, None)

    def deleted_in_airtable(self):
        row_b = NormalizedRow('rec1', {'fldName': 'Alicia'}, 10.0, row_number=4)
        return UpdateCandidate('rec1', ConflictKind.DELETED_IN_AIRTABLE, None, row_b)

    def test_modified_side_wins_restores(self):
        """测试修改方按策略胜出时在删除方恢复记录"""
        resolver = ConflictResolver(ConflictPolicy.AIRTABLE_WINS, SyncOptions())

        resolution = resolver.resolve(self.deleted_in_sheets())

        self.assertEqual(resolution.action, ResolutionAction.RESTORE)
        self.assertEqual(resolution.changes.to_create_in_b[0].fields, {'fldName': 'Alice'})
        self.assertEqual(resolution.changes.to_create_in_b[0].identity, 'rec1')

        resolver = ConflictResolver(ConflictPolicy.SHEETS_WINS, SyncOptions())
        resolution = resolver.resolve(self.deleted_in_airtable())

        created = resolution.changes.to_create_in_a[0]
        self.assertEqual((created.identity, created.row_number), (None, 4))
        self.assertEqual(resolver.stats['sheets_wins'], 1)

    def test_deletion_needs_delete_option(self):
        """测试删除方胜出但未开启删除选项时跳过"""
        resolver = ConflictResolver(ConflictPolicy.SHEETS_WINS, SyncOptions())

        resolution = resolver.resolve(self.deleted_in_sheets())

        self.assertEqual(resolution.action, ResolutionAction.SKIP)
        self.assertTrue(resolution.changes.is_empty)
        self.assertEqual(resolver.stats['skipped'], 1)

    def test_deletion_propagated(self):
        """测试删除方胜出且允许删除时传播删除"""
        resolver = ConflictResolver(ConflictPolicy.SHEETS_WINS, SyncOptions(delete_extra_records=True))
        resolution = resolver.resolve(self.deleted_in_sheets())
        self.assertEqual([c.identity for c in resolution.changes.to_delete_in_a], ['rec1'])

        resolver = ConflictResolver(ConflictPolicy.NEWEST_WINS, SyncOptions(delete_extra_rows=True))
        resolution = resolver.resolve(self.deleted_in_airtable())
        self.assertEqual(resolution.changes.to_delete_in_b[0].row_number, 4)
        self.assertEqual(resolver.stats['deleted'], 1)

    def test_resolve_all_merges(self):
        """测试批量处理合并所有结果"""
        resolver = ConflictResolver(ConflictPolicy.AIRTABLE_WINS, SyncOptions())

        merged = resolver.resolve_all([both_modified(), self.deleted_in_sheets(), self.deleted_in_airtable()])

        self.assertEqual(len(merged.to_update_in_b), 1)
        self.assertEqual(len(merged.to_create_in_b), 1)
        self.assertEqual(merged.to_delete_in_b, [])
        self.assertEqual(resolver.stats['total'], 3)
        self.assertEqual(resolver.stats['skipped'], 1)


if __name__ == '__main__':
    unittest.main()
