"""
模型与 MySQL 存储测试
"""
import json
import unittest
from datetime import datetime
from unittest.mock import MagicMock, Mock, patch

import pymysql

from airtable_sheets_sync.config.config import DatabaseConfig
from airtable_sheets_sync.core.errors import ConfigurationError
from airtable_sheets_sync.db.database import Database
from airtable_sheets_sync.db.models import (
    SyncOptions, SyncConfiguration, SyncDirection, ConflictPolicy, ValidationMode,
    ConnectionCredential, SyncRun, RunStatus, Provider,
)
from airtable_sheets_sync.db.repository import (
    MySQLCredentialRepository, MySQLSyncConfigRepository, MySQLSyncRunRepository
)


def config_record(**overrides):
    record = {
        'id': 3,
        'user_id': 'user-1',
        'name': 'Tasks',
        'airtable_base_id': 'appBase',
        'airtable_table_id': 'tblTasks',
        'airtable_view_id': None,
        'spreadsheet_id': 'sheet-1',
        'sheet_id': 0,
        'field_mappings': '{"fldName": "0", "fldDue": 2}',
        'direction': 'BIDIRECTIONAL',
        'conflict_policy': 'NEWEST_WINS',
        'options': '{"deleteExtraRows": true, "batchSize": 5}',
        'active': 1,
        'last_run_at': None,
        'last_run_status': None,
        'created_at': datetime(2024, 1, 1),
    }
    record.update(overrides)
    return record


class TestSyncOptions(unittest.TestCase):
    """同步选项测试"""

    def test_defaults(self):
        options = SyncOptions()

        self.assertFalse(options.delete_extra_rows)
        self.assertFalse(options.delete_extra_records)
        self.assertTrue(options.include_header)
        self.assertEqual(options.validation_mode, ValidationMode.LENIENT)
        self.assertEqual(options.identity_column, 26)

    def test_from_dict_with_aliases_and_defaults(self):
        """测试驼峰写法和全局默认值"""
        options = SyncOptions.from_dict(
            {'validationMode': 'STRICT', 'batchSize': {'airtable': 5}},
            {'include_header': False, 'max_retries': 5}
        )

        self.assertEqual(options.validation_mode, ValidationMode.STRICT)
        self.assertEqual(options.batch_size, {'airtable': 5})
        self.assertFalse(options.include_header)
        self.assertEqual(options.max_retries, 5)

    def test_invalid_options(self):
        for data in ({'unknown': 1}, {'validation_mode': 'loose'}, {'batch_size': 0},
                     {'batch_size': {'excel': 5}}, {'max_retries': -1}):
            with self.assertRaises(ConfigurationError):
                SyncOptions.from_dict(data)


class TestSyncConfiguration(unittest.TestCase):
    """同步配置模型测试"""

    def test_from_db_record(self):
        config = SyncConfiguration.from_db_record(config_record())

        self.assertEqual(config.field_mappings, {'fldName': 0, 'fldDue': 2})
        self.assertEqual(config.direction, SyncDirection.BIDIRECTIONAL)
        self.assertEqual(config.conflict_policy, ConflictPolicy.NEWEST_WINS)
        self.assertTrue(config.options.delete_extra_rows)
        self.assertEqual(config.options.batch_size, {'airtable': 5, 'sheets': 5})
        self.assertTrue(config.active)

    def test_short_direction_names(self):
        config = SyncConfiguration.from_db_record(config_record(direction='B_TO_A', conflict_policy='A_WINS'))

        self.assertEqual(config.direction, SyncDirection.SHEETS_TO_AIRTABLE)
        self.assertEqual(config.conflict_policy, ConflictPolicy.AIRTABLE_WINS)

    def test_invalid_direction(self):
        with self.assertRaises(ConfigurationError):
            SyncConfiguration.from_db_record(config_record(direction='SIDEWAYS'))

    def test_malformed_json(self):
        """测试映射或选项 JSON 损坏时报配置错误"""
        for overrides in ({'field_mappings': '{broken'}, {'options': '[1,'},
                          {'field_mappings': '{"fldName": "A"}'}):
            with self.assertRaises(ConfigurationError):
                SyncConfiguration.from_db_record(config_record(**overrides))

    def test_to_dict_round_trip(self):
        config = SyncConfiguration.from_db_record(config_record())

        again = SyncConfiguration.from_db_record(dict(config.to_dict(), id=3))

        self.assertEqual(again.field_mappings, config.field_mappings)
        self.assertEqual(again.options, config.options)

    def test_direction_helpers(self):
        self.assertTrue(SyncDirection.BIDIRECTIONAL.writes_airtable)
        self.assertTrue(SyncDirection.BIDIRECTIONAL.writes_sheets)
        self.assertFalse(SyncDirection.AIRTABLE_TO_SHEETS.writes_airtable)
        self.assertFalse(SyncDirection.SHEETS_TO_AIRTABLE.writes_sheets)


class TestRepositories(unittest.TestCase):
    """MySQL 存储测试"""

    def setUp(self):
        self.db = Mock(spec=Database)

    def test_credential_repository(self):
        self.db.query_one.return_value = {
            'id': 1, 'user_id': 'user-1', 'provider': 'GOOGLE', 'encrypted_access_token': 'a:b:c',
            'encrypted_refresh_token': None, 'expires_at': None, 'needs_reauth': 0,
            'last_refresh_error': None, 'last_refresh_attempt': None, 'scope': None,
        }
        repository = MySQLCredentialRepository(self.db)

        credential = repository.get('user-1', Provider.GOOGLE)

        self.assertEqual(credential.provider, Provider.GOOGLE)
        self.assertFalse(credential.needs_reauth)
        self.assertEqual(self.db.query_one.call_args.args[1], ('user-1', 'GOOGLE'))

        repository.save(credential)
        table, data, keys = self.db.upsert.call_args.args
        self.assertEqual((table, data['provider'], keys), ('connection_credential', 'GOOGLE', ['user_id', 'provider']))

    def test_config_repository_skips_invalid(self):
        """测试无效的同步配置被跳过"""
        self.db.query.return_value = [config_record(), config_record(id=4, direction='SIDEWAYS')]
        repository = MySQLSyncConfigRepository(self.db, {'include_header': False})

        configs = repository.list_active()

        self.assertEqual([config.id for config in configs], [3])
        self.assertFalse(configs[0].options.include_header)

    def test_config_repository_update_last_run(self):
        repository = MySQLSyncConfigRepository(self.db)
        run_at = datetime(2024, 5, 1)

        repository.update_last_run(3, run_at, RunStatus.PARTIAL)

        self.db.update.assert_called_once_with(
            'sync_config', {'last_run_at': run_at, 'last_run_status': 'PARTIAL'}, {'id': 3}
        )

    def test_run_repository_create_and_complete(self):
        """测试已完成的运行记录不会被覆盖"""
        self.db.insert.return_value = 12
        repository = MySQLSyncRunRepository(self.db)
        run = SyncRun(sync_config_id=3, direction=SyncDirection.AIRTABLE_TO_SHEETS)

        self.assertEqual(repository.create(run), 12)
        self.assertEqual(run.id, 12)
        self.assertEqual(self.db.insert.call_args.args[1]['status'], 'RUNNING')

        run.status = RunStatus.SUCCESS
        run.completed_at = datetime.now()
        run.errors = [{'message': 'x'}]
        repository.complete(run)

        sql, params = self.db.execute.call_args.args
        self.assertIn('completed_at IS NULL', sql)
        self.assertEqual(params[-1], 12)
        self.assertIn('SUCCESS', params)
        self.assertIn(json.dumps([{'message': 'x'}]), params)

    def test_run_repository_find_running(self):
        self.db.query_one.return_value = {
            'id': 5, 'sync_config_id': 3, 'started_at': datetime.now(), 'completed_at': None,
            'status': 'RUNNING', 'direction': 'BIDIRECTIONAL', 'errors': None, 'warnings': '[]',
            'conflicts': '{"total": 1}',
        }
        repository = MySQLSyncRunRepository(self.db)

        run = repository.find_running(3, datetime(2024, 1, 1))

        self.assertEqual(run.id, 5)
        self.assertEqual(run.status, RunStatus.RUNNING)
        self.assertEqual(run.errors, [])
        self.assertEqual(run.conflicts, {'total': 1})
        self.assertFalse(run.is_completed)


class TestConnectionCredential(unittest.TestCase):

    def test_to_dict(self):
        credential = ConnectionCredential(user_id='u', provider=Provider.AIRTABLE, needs_reauth=True)

        data = credential.to_dict()

        self.assertEqual(data['provider'], 'AIRTABLE')
        self.assertEqual(data['needs_reauth'], 1)


class TestDatabase(unittest.TestCase):
    """连接池封装测试"""

    def setUp(self):
        patcher = patch('airtable_sheets_sync.db.database.PooledDB')
        self.pool = patcher.start()
        self.addCleanup(patcher.stop)
        self.conn = self.pool.return_value.connection.return_value
        self.cursor = MagicMock()
        self.conn.cursor.return_value.__enter__.return_value = self.cursor
        self.db = Database(DatabaseConfig(database='sync'))

    def test_insert_commits(self):
        self.cursor.lastrowid = 42

        self.assertEqual(self.db.insert('sync_run', {'status': 'RUNNING', 'dry_run': 0}), 42)

        sql, params = self.cursor.execute.call_args.args
        self.assertEqual(sql, "INSERT INTO sync_run (status, dry_run) VALUES (%s, %s)")
        self.assertEqual(params, ['RUNNING', 0])
        self.conn.commit.assert_called_once()
        self.conn.close.assert_called_once()

    def test_upsert_skips_unique_keys(self):
        """测试唯一键列不出现在更新子句中"""
        self.db.upsert('connection_credential', {'user_id': 'u', 'provider': 'GOOGLE', 'scope': 's'},
                       ['user_id', 'provider'])

        sql = self.cursor.execute.call_args.args[0]
        self.assertTrue(sql.endswith("ON DUPLICATE KEY UPDATE scope = VALUES(scope)"))

    def test_error_rolls_back(self):
        self.cursor.execute.side_effect = pymysql.OperationalError(2013, "Lost connection")

        with self.assertRaises(pymysql.MySQLError):
            self.db.update('sync_config', {'active': 0}, {'id': 3})
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()
        self.conn.close.assert_called_once()

    def test_query_does_not_commit(self):
        self.cursor.fetchall.return_value = ({'id': 1},)

        self.assertEqual(self.db.query("SELECT id FROM sync_config"), [{'id': 1}])
        self.conn.commit.assert_not_called()


if __name__ == '__main__':
    unittest.main()
