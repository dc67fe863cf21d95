"""
API 客户端基础设施：限流、重试、分批写入
"""
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Callable, Iterator, Sequence, TypeVar

import requests
from loguru import logger

from ..core.changes import ErrorCategory
from ..core.errors import (
    ApiError, TransientApiError, RemoteValidationError, RemoteAuthError
)


T = TypeVar('T')

MAX_BACKOFF = 60.0
QUOTA_MULTIPLIER = 3


class WriteAction(Enum):
    """写操作类型"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class WriteOp:
    """单条写操作

    key 用于把结果对应回调用方的记录（通常是记录 ID 或 "row:N"）。
    Airtable 端 fields 以字段 ID 为键；表格端 fields 以列索引为键。
    """
    action: WriteAction
    key: str
    identity: Optional[str] = None
    fields: Dict[Any, Any] = field(default_factory=dict)
    row_number: Optional[int] = None


@dataclass
class OpResult:
    """单条写操作的结果"""
    op: WriteOp
    success: bool
    new_identity: Optional[str] = None
    category: Optional[ErrorCategory] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    """一次分批写入的结果"""
    results: List[OpResult] = field(default_factory=list)
    requests: int = 0  # 实际发出的写请求数

    @property
    def succeeded(self) -> List[OpResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[OpResult]:
        return [r for r in self.results if not r.success]

    def extend(self, other: 'BatchResult') -> None:
        self.results.extend(other.results)
        self.requests += other.requests


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """按固定大小切分"""
    if size < 1:
        raise ValueError("Chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class RateLimiter:
    """按每秒请求数限流（线程安全）"""

    def __init__(self, requests_per_second: float,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> None:
        if not self.interval:
            return
        with self._lock:
            now = self._clock()
            delay = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.interval
        if delay > 0:
            self._sleep(delay)


class ApiClient:
    """基于 requests 的 REST 客户端基类"""

    # 子类覆盖：单次写请求的最大记录数
    BATCH_CEILING = 10
    NAME = "api"

    def __init__(self, access_token: str, base_url: str, timeout: int = 30,
                 requests_per_second: float = 5.0, max_retries: int = 3,
                 retry_base_delay: float = 1.0,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self.rate_limiter = RateLimiter(requests_per_second, sleep=sleep)

        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f"Bearer {access_token}",
            'Content-Type': 'application/json',
        })

    # ------------------------------------------------------------------
    # 请求与错误分类
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """发送一次请求并把失败归类为 Transient / Auth / Validation"""
        if not url.startswith('http'):
            url = f"{self.base_url}/{url.lstrip('/')}"

        self.rate_limiter.wait()
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientApiError(f"{self.NAME} request timed out: {e}")
        except requests.ConnectionError as e:
            raise TransientApiError(f"{self.NAME} connection failed: {e}")
        except requests.RequestException as e:
            raise TransientApiError(f"{self.NAME} request failed: {e}")

        if response.status_code < 400:
            if not response.content:
                return {}
            return response.json()

        self._raise_for_status(response)
        return {}

    def _error_message(self, response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:300]
        error = body.get('error', body) if isinstance(body, dict) else body
        if isinstance(error, dict):
            return str(error.get('message') or error.get('type') or error)
        return str(error)

    def _is_quota_error(self, response: requests.Response, message: str) -> bool:
        return response.status_code == 429 or 'RESOURCE_EXHAUSTED' in message

    def _raise_for_status(self, response: requests.Response) -> None:
        status = response.status_code
        message = self._error_message(response)

        if self._is_quota_error(response, message):
            retry_after = response.headers.get('Retry-After')
            raise TransientApiError(
                f"{self.NAME} rate limit exceeded: {message}", status,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                quota=True,
            )
        if status >= 500:
            raise TransientApiError(f"{self.NAME} server error {status}: {message}", status)
        if status in (401, 403):
            raise RemoteAuthError(f"{self.NAME} rejected the access token ({status}): {message}", self.NAME)
        if status in (400, 404, 409, 413, 422):
            raise RemoteValidationError(f"{self.NAME} rejected the request ({status}): {message}", status)
        raise ApiError(f"{self.NAME} request failed ({status}): {message}", status)

    # ------------------------------------------------------------------
    # 重试
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int, error: TransientApiError) -> float:
        """第 attempt 次重试前的等待时间"""
        if error.retry_after is not None:
            return min(error.retry_after, MAX_BACKOFF)
        delay = self.retry_base_delay * (2 ** attempt)
        if error.quota:
            delay *= QUOTA_MULTIPLIER
        delay += random.uniform(0, self.retry_base_delay)
        return min(delay, MAX_BACKOFF)

    def call_with_retry(self, func: Callable[[], T], description: str) -> T:
        """执行 func，仅对可重试错误做指数退避重试"""
        attempt = 0
        while True:
            try:
                return func()
            except TransientApiError as e:
                if attempt >= self.max_retries:
                    logger.error(f"{self.NAME} {description} failed after {attempt + 1} attempts: {e}")
                    raise
                delay = self.backoff_delay(attempt, e)
                attempt += 1
                logger.warning(
                    f"{self.NAME} {description} failed ({e}), retrying in {delay:.1f}s "
                    f"({attempt}/{self.max_retries})"
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # 分批写入
    # ------------------------------------------------------------------

    def effective_batch_size(self, requested: Optional[int]) -> int:
        """调用方设置的批大小不能超过 API 上限"""
        if not requested:
            return self.BATCH_CEILING
        return max(1, min(requested, self.BATCH_CEILING))

    def _write_chunks(self, ops: List[WriteOp], batch_size: Optional[int],
                      send: Callable[[List[WriteOp]], List[OpResult]],
                      description: str) -> BatchResult:
        """分批发送写操作

        整批被远端拒绝时逐条重发，只有出错的记录失败；
        重试耗尽的批次中每条记录记为 TRANSIENT 失败；认证错误直接抛出。
        """
        result = BatchResult()
        size = self.effective_batch_size(batch_size)

        for chunk in chunked(ops, size):
            result.extend(self._send_chunk(chunk, send, description, isolate=len(chunk) > 1))

        if result.failed:
            logger.warning(
                f"{self.NAME} {description}: {len(result.succeeded)} succeeded, {len(result.failed)} failed"
            )
        return result

    def _send_chunk(self, chunk: List[WriteOp], send: Callable[[List[WriteOp]], List[OpResult]],
                    description: str, isolate: bool) -> BatchResult:
        result = BatchResult()
        calls = [0]

        def attempt() -> List[OpResult]:
            calls[0] += 1
            return send(chunk)

        try:
            result.results.extend(self.call_with_retry(attempt, description))
        except TransientApiError as e:
            result.results.extend(
                OpResult(op, False, category=ErrorCategory.TRANSIENT, error=str(e)) for op in chunk
            )
        except RemoteValidationError as e:
            if isolate:
                logger.info(f"{self.NAME} {description} rejected, retrying {len(chunk)} records one by one")
                result.requests += calls[0]
                for op in chunk:
                    result.extend(self._send_chunk([op], send, description, isolate=False))
                return result
            result.results.append(
                OpResult(chunk[0], False, category=ErrorCategory.REMOTE_REJECTED, error=str(e))
            )
        except ApiError as e:
            result.results.extend(
                OpResult(op, False, category=ErrorCategory.REMOTE_REJECTED, error=str(e)) for op in chunk
            )
        result.requests += calls[0]
        return result
