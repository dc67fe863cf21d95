"""凭证管理模块"""

from .encryption import TokenCipher, validate_key, generate_key
from .oauth import OAuthTokenRefresher, TokenPair
from .vault import CredentialVault

__all__ = ["TokenCipher", "validate_key", "generate_key", "OAuthTokenRefresher", "TokenPair", "CredentialVault"]
