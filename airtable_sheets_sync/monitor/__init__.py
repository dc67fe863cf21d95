"""监控模块"""

from .logger import setup_logger
from .notifier import Notifier, LogNotifier, WebhookNotifier, build_notifier

__all__ = ["setup_logger", "Notifier", "LogNotifier", "WebhookNotifier", "build_notifier"]
