#!/usr/bin/env python3
"""
Airtable 与 Google Sheets 记录同步服务
主程序入口
"""
import sys
import json
import signal
import argparse
from typing import Optional

from loguru import logger

from airtable_sheets_sync.config.config import Config
from airtable_sheets_sync.core.sync_service import SyncService
from airtable_sheets_sync.credentials.encryption import validate_key, generate_key
from airtable_sheets_sync.core.errors import ConfigurationError
from airtable_sheets_sync.monitor.logger import setup_logger


class SyncApplication:
    """同步应用主类"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config: Optional[Config] = None
        self.sync_service: Optional[SyncService] = None
        self.running = False

        # 注册信号处理
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """信号处理器：当前运行结束后退出"""
        logger.info(f"Received signal {signum}, stopping after the current run...")
        self.running = False

    def initialize(self):
        """初始化应用"""
        try:
            self.config = Config(self.config_path)
            setup_logger(self.config.monitor)

            logger.info("=" * 60)
            logger.info("Airtable / Google Sheets Sync Service")
            logger.info("=" * 60)
            logger.info(f"Config file: {self.config.config_path}")
            logger.info(f"Log level: {self.config.monitor.log_level}")

            self.sync_service = SyncService(self.config)

            logger.info("Application initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize application: {e}")
            raise

    def run_once(self, config_id: int, dry_run: bool = False) -> int:
        """执行一次同步并输出报告，返回进程退出码"""
        report = self.sync_service.run_sync(config_id, dry_run=dry_run, triggered_by="cli")
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return 0 if report.status != "FAILED" else 1

    def run_all(self, dry_run: bool = False) -> int:
        """依次执行所有启用的同步配置"""
        self.running = True
        exit_code = 0
        for sync_config in self.sync_service.configs.list_active():
            if not self.running:
                break
            report = self.sync_service.run_sync(sync_config.id, dry_run=dry_run, triggered_by="cli")
            logger.info(f"Config {sync_config.id} ({sync_config.name}): {report.status} {report.counts}")
            if report.status == "FAILED":
                exit_code = 1
        self.running = False
        return exit_code

    def print_history(self, config_id: int, limit: int = 20) -> None:
        """打印最近的运行记录"""
        logger.info("-" * 50)
        logger.info(f"Recent runs of config {config_id}")
        logger.info("-" * 50)
        for run in self.sync_service.get_history(config_id, limit):
            logger.info(
                f"#{run.id} {run.started_at} {run.status.value:<8} "
                f"added={run.added} updated={run.updated} deleted={run.deleted} errors={run.error_count}"
                f"{' (dry run)' if run.dry_run else ''}"
            )
        logger.info("-" * 50)


def check_key(config_path: Optional[str]) -> int:
    """启动前检查加密密钥"""
    config = Config(config_path)
    try:
        validate_key(config.security.encryption_key)
    except ConfigurationError as e:
        print(f"Invalid encryption key: {e}")
        return 1
    print("Encryption key is valid")
    return 0


def main():
    """主函数"""
    parser = argparse.ArgumentParser(
        description='Airtable / Google Sheets Record Sync Service'
    )
    parser.add_argument(
        '-c', '--config',
        help='Path to configuration file',
        default=None
    )
    parser.add_argument(
        '--init',
        action='store_true',
        help='Initialize configuration file'
    )
    parser.add_argument(
        '--check-key',
        action='store_true',
        help='Validate the encryption key and exit'
    )
    parser.add_argument(
        '--generate-key',
        action='store_true',
        help='Print a new random encryption key'
    )
    parser.add_argument(
        '--run',
        type=int,
        metavar='CONFIG_ID',
        help='Run the sync configuration once'
    )
    parser.add_argument(
        '--run-all',
        action='store_true',
        help='Run every active sync configuration once'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Compute changes without writing'
    )
    parser.add_argument(
        '--reset-snapshot',
        type=int,
        metavar='CONFIG_ID',
        help='Reset the sync baseline of a configuration'
    )
    parser.add_argument(
        '--history',
        type=int,
        metavar='CONFIG_ID',
        help='Show recent runs of a configuration'
    )

    args = parser.parse_args()

    # 初始化配置文件
    if args.init:
        config = Config(args.config)
        config.save()
        print(f"Configuration file created: {config.config_path}")
        print("Please edit the configuration file and set ENCRYPTION_KEY before running the service")
        return

    if args.generate_key:
        print(generate_key())
        return

    if args.check_key:
        sys.exit(check_key(args.config))

    if args.run is None and not args.run_all and args.reset_snapshot is None and args.history is None:
        parser.print_help()
        return

    app = SyncApplication(args.config)
    app.initialize()

    if args.reset_snapshot is not None:
        app.sync_service.reset_snapshot(args.reset_snapshot)
        logger.info(f"Snapshot reset for config {args.reset_snapshot}")
        return

    if args.history is not None:
        app.print_history(args.history)
        return

    try:
        if args.run_all:
            exit_code = app.run_all(args.dry_run)
        else:
            exit_code = app.run_once(args.run, args.dry_run)
    except Exception as e:
        logger.error(f"Service failed: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
