"""基本使用示例：登记连接和同步配置，先试运行再正式同步"""

import json
import os
import sys
from datetime import datetime, timedelta

from airtable_sheets_sync import Config, SyncService
from airtable_sheets_sync.credentials.oauth import TokenPair
from airtable_sheets_sync.db.models import (
    SyncConfiguration, SyncDirection, ConflictPolicy, SyncOptions, Provider
)


def main():
    """主函数"""
    # OAuth 授权完成后得到的令牌，这里从环境变量读取
    airtable_token = os.getenv("AIRTABLE_ACCESS_TOKEN")
    google_token = os.getenv("GOOGLE_ACCESS_TOKEN")
    if not airtable_token or not google_token:
        print("请设置环境变量 AIRTABLE_ACCESS_TOKEN 和 GOOGLE_ACCESS_TOKEN")
        return 1

    config = Config()
    service = SyncService(config)
    user_id = "demo-user"

    # 保存加密后的连接凭证
    expires_at = datetime.now() + timedelta(hours=1)
    service.vault.store_tokens(user_id, Provider.AIRTABLE, TokenPair(
        airtable_token, os.getenv("AIRTABLE_REFRESH_TOKEN"), expires_at
    ))
    service.vault.store_tokens(user_id, Provider.GOOGLE, TokenPair(
        google_token, os.getenv("GOOGLE_REFRESH_TOKEN"), expires_at
    ))
    for provider in (Provider.AIRTABLE, Provider.GOOGLE):
        print(f"{provider.value}: {service.vault.get_connection_health(user_id, provider)['status']}")

    # 登记同步配置：Name 写到 A 列，Status 写到 B 列
    sync_config = SyncConfiguration(
        user_id=user_id,
        name="Tasks",
        airtable_base_id=os.getenv("AIRTABLE_BASE_ID", "appXXXXXXXXXXXXXX"),
        airtable_table_id=os.getenv("AIRTABLE_TABLE_ID", "tblXXXXXXXXXXXXXX"),
        spreadsheet_id=os.getenv("SPREADSHEET_ID", ""),
        sheet_id=os.getenv("SHEET_ID", "0"),
        field_mappings={"fldName": 0, "fldStatus": 1},
        direction=SyncDirection.BIDIRECTIONAL,
        conflict_policy=ConflictPolicy.NEWEST_WINS,
        options=SyncOptions(include_header=True),
    )
    record = sync_config.to_dict()
    record.pop('id')
    config_id = service.database.insert('sync_config', record)
    print(f"同步配置 ID: {config_id}")

    # 试运行只计算变更
    preview = service.run_sync(config_id, dry_run=True)
    print("\n试运行结果:")
    print(json.dumps(preview.change_summary, indent=2, ensure_ascii=False))

    # 正式同步
    report = service.run_sync(config_id)
    print(f"\n同步状态: {report.status}")
    print(f"新增 {report.counts['added']}，更新 {report.counts['updated']}，"
          f"删除 {report.counts['deleted']}，错误 {report.counts['errors']}")
    for error in report.errors[:10]:
        print(f"  - {error}")

    # 再次运行应当没有变更
    again = service.run_sync(config_id)
    print(f"\n再次同步: {again.status} {again.counts}")

    for run in service.get_history(config_id, limit=5):
        print(f"  运行 #{run.id}: {run.status.value} {run.started_at}")

    return 0 if report.status != "FAILED" else 1


if __name__ == "__main__":
    sys.exit(main())
