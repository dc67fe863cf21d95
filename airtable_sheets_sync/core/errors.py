"""
同步引擎异常定义
"""
from typing import Optional


class SyncError(Exception):
    """同步引擎异常基类"""


class ConfigurationError(SyncError):
    """同步配置无效（映射缺失、选项非法等），不可重试"""


class CredentialError(SyncError):
    """凭证不可用"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class NeedsReauthError(CredentialError):
    """刷新令牌失效，需要用户重新授权"""

    def __init__(self, provider: str, reason: str = ""):
        message = f"{provider} connection needs to be re-authorized, please reconnect the account"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, provider)
        self.reason = reason


class DecryptionError(CredentialError):
    """密文格式错误或认证标签校验失败"""


class RemoteAuthError(CredentialError):
    """远端返回 401/403"""


class ApiError(SyncError):
    """远端 API 调用失败"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientApiError(ApiError):
    """可重试的错误：限流、5xx、超时、连接失败"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None, quota: bool = False):
        super().__init__(message, status_code)
        self.retry_after = retry_after
        self.quota = quota


class RemoteValidationError(ApiError):
    """远端拒绝了请求内容（400/404/422）"""


class ValidationError(SyncError):
    """严格校验模式下的数据校验失败"""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []


class UnresolvedReferenceError(SyncError):
    """关联记录名称无法解析为记录 ID"""

    def __init__(self, table_id: str, names):
        super().__init__(f"Unresolved linked record(s) in {table_id}: {', '.join(names)}")
        self.table_id = table_id
        self.names = list(names)


class ConcurrencyError(SyncError):
    """同一同步配置已有运行中的任务"""
