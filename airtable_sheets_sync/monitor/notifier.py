"""
运行结果通知
"""
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional

import requests
from loguru import logger

from ..config.config import MonitorConfig
from ..core.changes import RunReport
from ..db.models import SyncConfiguration


class Notifier(ABC):
    """通知接口，由调用方注入"""

    @abstractmethod
    def notify_run_failed(self, config: SyncConfiguration, report: RunReport) -> None:
        """同步失败"""

    @abstractmethod
    def notify_run_partial(self, config: SyncConfiguration, report: RunReport) -> None:
        """同步部分成功"""


class LogNotifier(Notifier):
    """只写日志"""

    def notify_run_failed(self, config: SyncConfiguration, report: RunReport) -> None:
        logger.error(f"Sync '{config.name}' ({config.id}) failed: {report.error_count} error(s)")

    def notify_run_partial(self, config: SyncConfiguration, report: RunReport) -> None:
        logger.warning(
            f"Sync '{config.name}' ({config.id}) completed with errors: "
            f"{report.counts}"
        )


class WebhookNotifier(Notifier):
    """通过 Webhook 发送通知（飞书机器人或通用 JSON）"""

    def __init__(self, webhook_url: str, timeout: int = 5, session: Optional[requests.Session] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify_run_failed(self, config: SyncConfiguration, report: RunReport) -> None:
        self.send("SYNC_FAILED", f"Sync '{config.name}' failed", self._details(config, report))

    def notify_run_partial(self, config: SyncConfiguration, report: RunReport) -> None:
        self.send("SYNC_PARTIAL", f"Sync '{config.name}' completed with errors", self._details(config, report))

    @staticmethod
    def _details(config: SyncConfiguration, report: RunReport) -> Dict[str, Any]:
        return {
            'config_id': config.id,
            'run_id': report.run_id,
            'direction': config.direction.value,
            'counts': report.counts,
            'errors': [error.get('message') for error in report.errors[:5]],
        }

    def _is_feishu(self) -> bool:
        return 'feishu.cn' in self.webhook_url or 'larksuite.com' in self.webhook_url

    def send(self, alert_type: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """发送告警，失败只记录日志"""
        if self._is_feishu():
            # 飞书机器人格式
            payload = {
                "msg_type": "text",
                "content": {
                    "text": f"【{alert_type}】{message}\n{json.dumps(details, ensure_ascii=False, indent=2)}"
                }
            }
        else:
            payload = {
                'type': alert_type,
                'message': message,
                'details': details or {},
                'timestamp': datetime.now().isoformat(),
                'service': 'airtable_sheets_sync'
            }

        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            if response.status_code != 200:
                logger.error(f"Failed to send alert: {response.text}")
        except requests.RequestException as e:
            logger.error(f"Error sending alert: {e}")


def build_notifier(config: MonitorConfig) -> Notifier:
    """根据监控配置创建通知器"""
    if config.alert_webhook:
        return WebhookNotifier(config.alert_webhook)
    return LogNotifier()
