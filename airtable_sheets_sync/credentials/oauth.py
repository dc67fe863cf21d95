"""
OAuth 令牌刷新
"""
import base64
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Callable, Dict, Any

import requests
from loguru import logger

from ..config.config import AirtableConfig, GoogleConfig
from ..core.errors import CredentialError
from ..db.models import Provider


# 这些错误码说明刷新令牌已失效，只能由用户重新授权
REAUTH_ERROR_CODES = {"invalid_grant", "invalid_client", "unauthorized_client", "access_denied"}
REAUTH_PATTERNS = ("invalid_grant", "refresh token", "revoked", "expired", "unauthorized", "invalid_client")


@dataclass
class TokenPair:
    """刷新得到的令牌"""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scope: Optional[str] = None


class ReauthRequired(Exception):
    """令牌端点拒绝刷新请求"""


def is_reauth_error(message: str) -> bool:
    """根据错误信息判断是否需要重新授权"""
    lowered = (message or '').lower()
    return any(pattern in lowered for pattern in REAUTH_PATTERNS)


class OAuthTokenRefresher:
    """使用 refresh_token 换取新令牌"""

    def __init__(self, airtable: AirtableConfig, google: GoogleConfig,
                 session: Optional[requests.Session] = None,
                 max_attempts: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self.airtable = airtable
        self.google = google
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _build_request(self, provider: Provider, refresh_token: str):
        data = {'grant_type': 'refresh_token', 'refresh_token': refresh_token}
        headers = {'Content-Type': 'application/x-www-form-urlencoded'}

        if provider is Provider.AIRTABLE:
            # Airtable 要求在 Basic 头中传递客户端凭证
            raw = f"{self.airtable.client_id}:{self.airtable.client_secret}".encode('utf-8')
            headers['Authorization'] = f"Basic {base64.b64encode(raw).decode('ascii')}"
            return self.airtable.token_url, data, headers, self.airtable.timeout

        data['client_id'] = self.google.client_id
        data['client_secret'] = self.google.client_secret
        return self.google.token_url, data, headers, self.google.timeout

    def refresh(self, provider: Provider, refresh_token: str) -> TokenPair:
        """刷新令牌

        授权错误抛出 ReauthRequired；网络错误和 5xx 重试后抛出 CredentialError。
        """
        if not refresh_token:
            raise ReauthRequired("No refresh token available")

        url, data, headers, timeout = self._build_request(provider, refresh_token)
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.session.post(url, data=data, headers=headers, timeout=timeout)
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning(f"Token refresh for {provider.value} failed (attempt {attempt}): {e}")
            else:
                if response.status_code == 200:
                    return self._parse_tokens(response.json())

                body = self._error_body(response)
                error_code = str(body.get('error', ''))
                last_error = f"{response.status_code} {error_code} {body.get('error_description', '')}".strip()

                if response.status_code in (400, 401, 403) or error_code in REAUTH_ERROR_CODES:
                    if response.status_code in (401, 403) or error_code in REAUTH_ERROR_CODES \
                            or is_reauth_error(last_error):
                        logger.error(f"Token refresh for {provider.value} rejected: {last_error}")
                        raise ReauthRequired(last_error)
                    # 其他 400 错误不会因重试而改变
                    raise CredentialError(f"Token refresh failed: {last_error}", provider.value)

                logger.warning(f"Token refresh for {provider.value} failed (attempt {attempt}): {last_error}")

            if attempt < self.max_attempts:
                self._sleep(1.0 * attempt)

        raise CredentialError(
            f"Token refresh failed after {self.max_attempts} attempts: {last_error}", provider.value
        )

    @staticmethod
    def _error_body(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {'error_description': response.text[:200]}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _parse_tokens(payload: Dict[str, Any]) -> TokenPair:
        expires_in = payload.get('expires_in')
        expires_at = datetime.now() + timedelta(seconds=int(expires_in)) if expires_in else None
        return TokenPair(
            access_token=payload['access_token'],
            refresh_token=payload.get('refresh_token'),
            expires_at=expires_at,
            scope=payload.get('scope'),
        )
