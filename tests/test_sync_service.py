"""
同步服务测试
"""
import time
import unittest
from unittest.mock import Mock

from fakes import (
    make_config, make_sync_config, people_table,
    InMemorySyncConfigRepository, InMemorySyncRunRepository, StaticVault,
    FakeAirtableClient, FakeSheetsClient, started_run,
)
from airtable_sheets_sync.clients.airtable import AirtableField
from airtable_sheets_sync.core.errors import ApiError, NeedsReauthError
from airtable_sheets_sync.core.sync_service import SyncService
from airtable_sheets_sync.db.models import SyncDirection, ConflictPolicy, RunStatus, ValidationMode


def sheet_row(*values, identity=""):
    """映射列之后补齐到 AA 列"""
    row = list(values) + [""] * (26 - len(values))
    row.append(identity)
    return row


HEADER = sheet_row("Name", identity="Record ID")


class SyncServiceTestCase(unittest.TestCase):
    """公共的服务构造"""

    def build(self, sync_config, airtable, sheets, vault=None):
        self.configs = InMemorySyncConfigRepository(sync_config)
        self.runs = InMemorySyncRunRepository()
        self.notifier = Mock()
        self.airtable = airtable
        self.sheets = sheets
        self.service = SyncService(
            make_config(),
            config_repository=self.configs,
            run_repository=self.runs,
            vault=vault or StaticVault(),
            notifier=self.notifier,
            airtable_factory=lambda token, cfg: airtable,
            sheets_factory=lambda token, cfg: sheets,
        )
        return self.service

    @staticmethod
    def categories(report):
        return [error['category'] for error in report.errors]


class TestAirtableToSheets(SyncServiceTestCase):
    """Airtable 到表格的单向同步"""

    def setUp(self):
        airtable = FakeAirtableClient(people_table(), [
            {'id': 'rec1', 'fields': {'fldName': 'Alice'}},
            {'id': 'rec2', 'fields': {'fldName': 'Bob'}},
        ])
        self.build(make_sync_config(), airtable, FakeSheetsClient())

    def test_first_run_fills_empty_sheet(self):
        """测试首次同步写入表头、数据和隐藏的 ID 列"""
        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(report.added, 2)
        self.assertEqual(self.sheets.cell(1, 0), "Name")
        self.assertEqual(self.sheets.cell(1, 26), "Record ID")
        self.assertEqual(
            {(self.sheets.cell(2, 0), self.sheets.cell(2, 26)), (self.sheets.cell(3, 0), self.sheets.cell(3, 26))},
            {("Alice", "rec1"), ("Bob", "rec2")}
        )
        self.assertEqual(self.sheets.hidden, [26])
        self.assertEqual(self.configs.configs[1].last_run_status, RunStatus.SUCCESS)
        self.assertEqual(self.runs.completed[report.run_id].added, 2)

    def test_second_run_is_idempotent(self):
        """测试两端一致时再次同步不产生任何写入"""
        self.service.run_sync(1)
        writes = len(self.sheets.write_calls)

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(report.counts, {'added': 0, 'updated': 0, 'deleted': 0, 'errors': 0})
        self.assertEqual(report.change_summary['unchanged'], 2)
        self.assertEqual(len(self.sheets.write_calls), writes)

    def test_airtable_edit_updates_sheet(self):
        """测试 Airtable 修改后只更新对应单元格"""
        self.service.run_sync(1)
        self.airtable.records['rec1']['fields']['fldName'] = 'Alicia'

        report = self.service.run_sync(1)

        self.assertEqual(report.updated, 1)
        self.assertIn(["Alicia", "rec1"], [[row[0], row[26]] for row in self.sheets.values[1:]])

    def test_dry_run_writes_nothing(self):
        """测试试运行只计算变更"""
        report = self.service.run_sync(1, dry_run=True)

        self.assertEqual(report.status, "SUCCESS")
        self.assertTrue(report.dry_run)
        self.assertEqual(report.change_summary['create_in_sheets'], 2)
        self.assertEqual(report.added, 0)
        self.assertEqual(self.sheets.write_calls, [])
        self.assertEqual(self.sheets.values, [])
        self.assertIsNone(self.configs.configs[1].last_run_at)
        self.assertTrue(self.runs.completed[report.run_id].dry_run)

    def test_state_history(self):
        """测试运行状态按顺序推进"""
        report = self.service.run_sync(1)

        self.assertEqual(
            report.state_history,
            ["IDLE", "ACQUIRING_LOCK", "FETCHING", "DIFFING", "WRITING", "FINALIZING", "SUCCESS"]
        )


class TestNonDestructiveDefaults(SyncServiceTestCase):
    """多余的行默认保留"""

    def make(self, **options):
        airtable = FakeAirtableClient(people_table(), [{'id': 'rec1', 'fields': {'fldName': 'Alice'}}])
        sheets = FakeSheetsClient([
            HEADER,
            sheet_row("Alice", identity="rec1"),
            sheet_row("Ghost", identity="recGhost"),
        ])
        self.build(make_sync_config(**options), airtable, sheets)

    def test_extra_row_kept_by_default(self):
        """测试未开启 delete_extra_rows 时不删除表格行"""
        self.make()

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(report.deleted, 0)
        self.assertEqual(len(self.sheets.values), 3)

    def test_extra_row_deleted_when_enabled(self):
        """测试开启 delete_extra_rows 后删除多余的行"""
        self.make(delete_extra_rows=True)

        report = self.service.run_sync(1)

        self.assertEqual(report.deleted, 1)
        self.assertEqual([row[0] for row in self.sheets.values], ["Name", "Alice"])


class TestSanitizedWriteBack(SyncServiceTestCase):
    """清洗后的值写回表格"""

    def test_sanitized_value_converges(self):
        """测试清洗掉 HTML 的值同时写回表格，之后的运行不再更新"""
        airtable = FakeAirtableClient(people_table(), [{'id': 'rec1', 'fields': {'fldName': 'Alice'}}])
        sheets = FakeSheetsClient([HEADER, sheet_row("<b>Alicia</b>", identity="rec1")])
        self.build(make_sync_config(SyncDirection.SHEETS_TO_AIRTABLE), airtable, sheets)

        counts = [self.service.run_sync(1).counts for _ in range(3)]

        self.assertEqual(counts[0]['updated'], 1)
        self.assertEqual(airtable.records['rec1']['fields']['fldName'], "Alicia")
        self.assertEqual(sheets.cell(2, 0), "Alicia")
        self.assertEqual(counts[1]['updated'], 0)
        self.assertEqual(counts[2]['updated'], 0)

    def test_sanitized_value_on_new_row(self):
        """测试新增行写回 ID 时一并写回清洗后的值"""
        airtable = FakeAirtableClient(people_table())
        sheets = FakeSheetsClient([HEADER, sheet_row("<i>Dave</i>")])
        self.build(make_sync_config(SyncDirection.SHEETS_TO_AIRTABLE), airtable, sheets)

        first = self.service.run_sync(1)
        second = self.service.run_sync(1)

        self.assertEqual(first.added, 1)
        self.assertEqual(airtable.names(), ["Dave"])
        self.assertEqual(sheets.cell(2, 0), "Dave")
        self.assertEqual(sheets.cell(2, 26), "recNew1")
        self.assertEqual(second.counts, {'added': 0, 'updated': 0, 'deleted': 0, 'errors': 0})


class TestDropdownColumns(SyncServiceTestCase):
    """选项字段的下拉列表"""

    def make(self):
        table = people_table()
        table.fields['fldStatus'] = AirtableField(
            'fldStatus', 'Status', 'singleSelect', {'choices': [{'name': 'Open'}, {'name': 'Done'}]}
        )
        airtable = FakeAirtableClient(table, [{'id': 'rec1', 'fields': {'fldName': 'Alice', 'fldStatus': 'Open'}}])
        self.build(make_sync_config(mappings={'fldName': 0, 'fldStatus': 1}), airtable, FakeSheetsClient())

    def test_dropdown_set_for_select_column(self):
        """测试写入表格时为单选列设置下拉列表"""
        self.make()

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(self.sheets.dropdowns, [{1: ['Open', 'Done']}])
        self.assertEqual(self.sheets.cell(2, 1), "Open")

    def test_dropdown_failure_does_not_fail_run(self):
        """测试下拉列表设置失败只记录日志，同步照常完成"""
        self.make()
        self.sheets.dropdown_error = ApiError("The caller does not have permission", 403)

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(report.added, 1)
        self.assertEqual(self.sheets.cell(2, 0), "Alice")


class TestBidirectional(SyncServiceTestCase):
    """双向同步与冲突处理"""

    def make(self, policy, airtable_name="Alice", sheet_name="Alicia", sheet_revision=7.0):
        table = people_table()
        table.fields['fldModified'] = AirtableField('fldModified', 'Modified', 'lastModifiedTime')
        airtable = FakeAirtableClient(table, [{
            'id': 'rec1',
            'fields': {'fldName': airtable_name, 'fldModified': '1970-01-01T00:00:05.000Z'},
        }])
        sheets = FakeSheetsClient([HEADER, sheet_row(sheet_name, identity="rec1")], revision=sheet_revision)
        self.build(make_sync_config(SyncDirection.BIDIRECTIONAL, policy), airtable, sheets)

    def test_newest_wins_picks_sheet(self):
        """测试表格修订时间更新时表格的值胜出"""
        self.make(ConflictPolicy.NEWEST_WINS)

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(self.airtable.records['rec1']['fields']['fldName'], "Alicia")
        self.assertEqual(report.conflicts['sheets_wins'], 1)
        self.assertEqual(report.conflicts['airtable_wins'], 0)
        self.assertEqual(report.updated, 1)
        self.assertEqual(report.state_history[4], "RESOLVING")

    def test_newest_wins_tie_goes_to_airtable(self):
        """测试修订时间相同时 Airtable 胜出"""
        self.make(ConflictPolicy.NEWEST_WINS, sheet_revision=5.0)

        report = self.service.run_sync(1)

        self.assertEqual(self.sheets.cell(2, 0), "Alice")
        self.assertEqual(report.conflicts['airtable_wins'], 1)

    def test_newest_wins_without_modified_field(self):
        """测试表中没有最后修改时间字段时不拿创建时间比较，Airtable 胜出"""
        airtable = FakeAirtableClient(people_table(), [{
            'id': 'rec1',
            'createdTime': '2020-01-01T00:00:00.000Z',
            'fields': {'fldName': 'Alice'},
        }])
        sheets = FakeSheetsClient([HEADER, sheet_row("Alice", identity="rec1")], revision=time.time() - 3600)
        self.build(make_sync_config(SyncDirection.BIDIRECTIONAL, ConflictPolicy.NEWEST_WINS), airtable, sheets)
        self.service.run_sync(1)

        airtable.records['rec1']['fields']['fldName'] = "Alison"
        sheets.values[1][0] = "Alicia"
        report = self.service.run_sync(1)

        self.assertEqual(report.conflicts['airtable_wins'], 1)
        self.assertEqual(report.conflicts['sheets_wins'], 0)
        self.assertEqual(airtable.records['rec1']['fields']['fldName'], "Alison")
        self.assertEqual(sheets.cell(2, 0), "Alison")

    def test_airtable_wins(self):
        """测试 AIRTABLE_WINS 无视修订时间"""
        self.make(ConflictPolicy.AIRTABLE_WINS)

        report = self.service.run_sync(1)

        self.assertEqual(self.sheets.cell(2, 0), "Alice")
        self.assertEqual(self.airtable.records['rec1']['fields']['fldName'], "Alice")
        self.assertEqual(report.conflicts['airtable_wins'], 1)

    def test_one_sided_edit_after_baseline(self):
        """测试有基线后只有一端修改时不算冲突"""
        self.make(ConflictPolicy.AIRTABLE_WINS, sheet_name="Alice")
        self.service.run_sync(1)

        self.sheets.values[1][0] = "Alicia"
        report = self.service.run_sync(1)

        self.assertEqual(report.conflicts['total'], 0)
        self.assertEqual(self.airtable.records['rec1']['fields']['fldName'], "Alicia")

        self.airtable.records['rec1']['fields']['fldName'] = "Alison"
        report = self.service.run_sync(1)

        self.assertEqual(report.conflicts['total'], 0)
        self.assertEqual(self.sheets.cell(2, 0), "Alison")

    def test_reset_snapshot(self):
        """测试重置基线后差异重新按冲突处理"""
        self.make(ConflictPolicy.AIRTABLE_WINS, sheet_name="Alice")
        self.service.run_sync(1)
        self.assertEqual(self.service.get_snapshot_info(1)['record_count'], 1)

        self.service.reset_snapshot(1)

        self.assertEqual(self.service.get_snapshot_info(1)['record_count'], 0)


class TestPartialFailure(SyncServiceTestCase):
    """部分写入失败"""

    def setUp(self):
        airtable = FakeAirtableClient(
            people_table(), reject=lambda op: op.fields.get('fldName') == "BadRow"
        )
        sheets = FakeSheetsClient([["Name"], ["Carol"], ["BadRow"]])
        self.build(make_sync_config(SyncDirection.SHEETS_TO_AIRTABLE), airtable, sheets)

    def test_partial_with_id_write_back(self):
        """测试一条记录被拒绝时其余记录照常写入并回写 ID"""
        report = self.service.run_sync(1)

        self.assertEqual(report.status, "PARTIAL")
        self.assertEqual(report.added, 1)
        self.assertEqual(report.error_count, 1)
        self.assertEqual(self.categories(report), ["REMOTE_REJECTED"])
        self.assertEqual(self.airtable.names(), ["Carol"])
        self.assertEqual(self.sheets.cell(2, 26), "recNew1")
        self.assertEqual(self.sheets.cell(3, 26), "")
        self.assertEqual(self.sheets.cell(1, 26), "Record ID")
        self.notifier.notify_run_failed.assert_not_called()

    def test_rerun_does_not_duplicate(self):
        """测试回写 ID 后再次同步不会重复创建"""
        self.service.run_sync(1)

        report = self.service.run_sync(1)

        self.assertEqual(report.added, 0)
        self.assertEqual(self.airtable.names(), ["Carol"])

    def test_all_rejected_is_failed(self):
        """测试所有写入都失败时状态为 FAILED"""
        self.airtable.reject = lambda op: True

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "FAILED")
        self.notifier.notify_run_failed.assert_called_once()


class TestRunFailures(SyncServiceTestCase):
    """无法完成的运行"""

    def default_clients(self):
        airtable = FakeAirtableClient(people_table(), [{'id': 'rec1', 'fields': {'fldName': 'Alice'}}])
        return airtable, FakeSheetsClient()

    def test_concurrent_run_rejected(self):
        """测试已有运行中的任务时拒绝启动"""
        self.build(make_sync_config(), *self.default_clients())
        self.runs.create(started_run())

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "FAILED")
        self.assertEqual(self.categories(report), ["CONCURRENCY"])
        self.assertEqual(len(self.runs.runs), 1)
        self.assertEqual(self.sheets.write_calls, [])

    def test_unknown_config(self):
        """测试同步配置不存在"""
        self.build(make_sync_config(), *self.default_clients())

        report = self.service.run_sync(99)

        self.assertEqual(report.status, "FAILED")
        self.assertEqual(self.categories(report), ["CONFIGURATION"])
        self.assertEqual(self.runs.runs, {})

    def test_reauth_required(self):
        """测试刷新令牌失效时运行失败并发送通知"""
        vault = StaticVault(NeedsReauthError("AIRTABLE", "invalid_grant"))
        self.build(make_sync_config(), *self.default_clients(), vault=vault)

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "FAILED")
        self.assertEqual(self.categories(report), ["CREDENTIAL"])
        self.assertIn("re-authorized", report.errors[0]['message'])
        self.assertEqual(self.runs.completed[report.run_id].status, RunStatus.FAILED)
        self.assertEqual(self.configs.configs[1].last_run_status, RunStatus.FAILED)
        self.notifier.notify_run_failed.assert_called_once()

    def test_invalid_mapping(self):
        """测试映射到不存在的字段时不访问数据"""
        self.build(make_sync_config(mappings={'fldMissing': 0}), *self.default_clients())

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "FAILED")
        self.assertEqual(self.categories(report), ["CONFIGURATION"])
        self.assertEqual(self.sheets.write_calls, [])

    def test_strict_validation_aborts_writes(self):
        """测试严格模式下有校验错误时不写入"""
        sheets = FakeSheetsClient([["Name", "Age"], ["Dave", "abc"], ["Erin", "30"]])
        airtable = FakeAirtableClient(people_table())
        sync_config = make_sync_config(
            SyncDirection.SHEETS_TO_AIRTABLE, mappings={'fldName': 0, 'fldAge': 1},
            validation_mode=ValidationMode.STRICT,
        )
        self.build(sync_config, airtable, sheets)

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "FAILED")
        self.assertIn("VALIDATION", self.categories(report))
        self.assertEqual(airtable.write_calls, [])
        self.assertEqual(airtable.records, {})

    def test_lenient_validation_skips_bad_field(self):
        """测试宽松模式下只丢弃出错的字段"""
        sheets = FakeSheetsClient([["Name", "Age"], ["Dave", "abc"], ["Erin", "30"]])
        airtable = FakeAirtableClient(people_table())
        sync_config = make_sync_config(SyncDirection.SHEETS_TO_AIRTABLE, mappings={'fldName': 0, 'fldAge': 1})
        self.build(sync_config, airtable, sheets)

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "PARTIAL")
        self.assertEqual(report.added, 2)
        self.assertEqual(airtable.names(), ["Dave", "Erin"])
        ages = {record['fields']['fldName']: record['fields'].get('fldAge') for record in airtable.records.values()}
        self.assertEqual(ages, {"Dave": None, "Erin": 30})

    def test_metadata_failure_keeps_status(self):
        """测试运行记录保存失败不影响同步结果"""
        self.build(make_sync_config(), *self.default_clients())
        self.runs.complete = Mock(side_effect=RuntimeError("database unavailable"))
        self.configs.update_last_run = Mock(side_effect=RuntimeError("database unavailable"))

        report = self.service.run_sync(1)

        self.assertEqual(report.status, "SUCCESS")
        self.assertEqual(report.added, 1)

    def test_lock_released_after_run(self):
        """测试运行结束后可以再次运行"""
        self.build(make_sync_config(), *self.default_clients())

        first = self.service.run_sync(1)
        second = self.service.run_sync(1)

        self.assertEqual(first.status, "SUCCESS")
        self.assertEqual(second.status, "SUCCESS")
        self.assertEqual(self.service.get_stats()['success'], 2)
        self.assertEqual(sorted(run.id for run in self.service.get_history(1)), [1, 2])


if __name__ == '__main__':
    unittest.main()
