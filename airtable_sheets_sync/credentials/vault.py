"""
凭证保险库：加密存储 OAuth 令牌，过期前自动刷新
"""
import threading
from datetime import datetime, timedelta
from typing import Dict, Tuple, Optional, Any

from loguru import logger

from ..core.errors import CredentialError, NeedsReauthError
from ..db.models import ConnectionCredential, Provider
from ..db.repository import CredentialRepository
from .encryption import TokenCipher
from .oauth import OAuthTokenRefresher, ReauthRequired, TokenPair


class CredentialVault:
    """凭证保险库"""

    def __init__(self, repository: CredentialRepository, cipher: TokenCipher,
                 refresher: OAuthTokenRefresher, expiry_buffer: int = 300):
        self.repository = repository
        self.cipher = cipher
        self.refresher = refresher
        self.expiry_buffer = timedelta(seconds=expiry_buffer)

        # 每个凭证一把锁，保证同一凭证同时只有一个刷新请求
        self._locks: Dict[Tuple[str, Provider], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str, provider: Provider) -> threading.Lock:
        key = (user_id, provider)
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _load(self, user_id: str, provider: Provider) -> ConnectionCredential:
        credential = self.repository.get(user_id, provider)
        if credential is None:
            raise CredentialError(
                f"No {provider.value} connection found, please connect the account", provider.value
            )
        if credential.needs_reauth:
            raise NeedsReauthError(provider.value, credential.last_refresh_error or "")
        return credential

    def is_expired(self, credential: ConnectionCredential, now: Optional[datetime] = None) -> bool:
        """在缓冲时间内过期的令牌也视为已过期"""
        if credential.expires_at is None:
            return True
        now = now or datetime.now()
        return credential.expires_at <= now + self.expiry_buffer

    def get_valid_token(self, user_id: str, provider: Provider) -> str:
        """获取可用的访问令牌，必要时刷新"""
        credential = self._load(user_id, provider)
        if not self.is_expired(credential):
            return self.cipher.decrypt(credential.encrypted_access_token)

        with self._lock_for(user_id, provider):
            # 等锁期间其他线程可能已经刷新
            credential = self._load(user_id, provider)
            if not self.is_expired(credential):
                return self.cipher.decrypt(credential.encrypted_access_token)
            return self._refresh(credential)

    def force_refresh(self, user_id: str, provider: Provider) -> str:
        """无论是否过期都刷新令牌"""
        with self._lock_for(user_id, provider):
            return self._refresh(self._load(user_id, provider))

    def _refresh(self, credential: ConnectionCredential) -> str:
        provider = credential.provider
        logger.info(f"Refreshing {provider.value} token for user {credential.user_id}")
        refresh_token = (
            self.cipher.decrypt(credential.encrypted_refresh_token)
            if credential.encrypted_refresh_token else ""
        )
        credential.last_refresh_attempt = datetime.now()

        try:
            tokens = self.refresher.refresh(provider, refresh_token)
        except ReauthRequired as e:
            credential.needs_reauth = True
            credential.last_refresh_error = str(e)[:500]
            self.repository.save(credential)
            logger.error(f"{provider.value} connection of user {credential.user_id} needs re-authorization: {e}")
            raise NeedsReauthError(provider.value, str(e))
        except CredentialError as e:
            credential.last_refresh_error = str(e)[:500]
            self.repository.save(credential)
            raise

        self._apply_tokens(credential, tokens)
        self.repository.save(credential)
        logger.info(f"{provider.value} token refreshed, expires at {credential.expires_at}")
        return tokens.access_token

    def _apply_tokens(self, credential: ConnectionCredential, tokens: TokenPair) -> None:
        credential.encrypted_access_token = self.cipher.encrypt(tokens.access_token)
        # 提供方未轮换刷新令牌时保留原值
        if tokens.refresh_token:
            credential.encrypted_refresh_token = self.cipher.encrypt(tokens.refresh_token)
        credential.expires_at = tokens.expires_at
        if tokens.scope:
            credential.scope = tokens.scope
        credential.needs_reauth = False
        credential.last_refresh_error = None

    def store_tokens(self, user_id: str, provider: Provider, tokens: TokenPair) -> ConnectionCredential:
        """OAuth 授权完成后保存令牌"""
        credential = self.repository.get(user_id, provider) or ConnectionCredential(
            user_id=user_id, provider=provider
        )
        self._apply_tokens(credential, tokens)
        self.repository.save(credential)
        logger.info(f"Stored {provider.value} connection for user {user_id}")
        return credential

    def disconnect(self, user_id: str, provider: Provider) -> bool:
        """断开连接并删除凭证"""
        deleted = self.repository.delete(user_id, provider)
        if deleted:
            logger.info(f"Disconnected {provider.value} for user {user_id}")
        return deleted

    def clear_needs_reauth(self, user_id: str, provider: Provider) -> None:
        """清除重新授权标记"""
        credential = self.repository.get(user_id, provider)
        if credential and credential.needs_reauth:
            credential.needs_reauth = False
            credential.last_refresh_error = None
            self.repository.save(credential)

    def get_connection_health(self, user_id: str, provider: Provider) -> Dict[str, Any]:
        """连接健康状态"""
        credential = self.repository.get(user_id, provider)
        if credential is None:
            return {'provider': provider.value, 'status': 'disconnected'}

        if credential.needs_reauth:
            status = 'needs_reauth'
        elif self.is_expired(credential):
            status = 'expired'
        else:
            status = 'active'

        return {
            'provider': provider.value,
            'status': status,
            'expires_at': credential.expires_at.isoformat() if credential.expires_at else None,
            'last_refresh_error': credential.last_refresh_error,
            'last_refresh_attempt': (
                credential.last_refresh_attempt.isoformat() if credential.last_refresh_attempt else None
            ),
        }
