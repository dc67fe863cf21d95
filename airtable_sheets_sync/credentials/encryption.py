"""
令牌加解密（AES-256-GCM）

密文格式为 ``nonce:authTag:ciphertext``，三段均为十六进制。
"""
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from ..core.errors import ConfigurationError, DecryptionError


KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
NONCE_LENGTH = 16
TAG_LENGTH = 16


def validate_key(key_hex: str) -> bytes:
    """校验 64 位十六进制密钥并返回 32 字节密钥"""
    if not key_hex or not KEY_PATTERN.match(key_hex):
        raise ConfigurationError(
            "ENCRYPTION_KEY must be a 64-character hex string (32 bytes)"
        )
    return bytes.fromhex(key_hex)


def generate_key() -> str:
    """生成新的随机密钥（十六进制）"""
    return os.urandom(32).hex()


class TokenCipher:
    """令牌加解密器，密钥在构造时校验"""

    def __init__(self, key_hex: str):
        self._aead = AESGCM(validate_key(key_hex))

    def encrypt(self, plaintext: str) -> str:
        """加密字符串"""
        if plaintext is None:
            raise ValueError("Cannot encrypt None")
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode('utf-8'), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """解密字符串，格式错误或被篡改时抛出 DecryptionError"""
        parts = (token or '').split(':')
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted token format")

        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise DecryptionError("Encrypted token is not valid hex")

        if len(tag) != TAG_LENGTH or len(nonce) < 8:
            raise DecryptionError("Encrypted token has invalid nonce or tag length")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            logger.error("Token authentication failed, ciphertext was modified or key changed")
            raise DecryptionError("Token authentication failed")

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted token is not valid UTF-8")

    def is_encrypted(self, value: str) -> bool:
        """判断字符串是否为本模块生成的密文格式"""
        parts = (value or '').split(':')
        if len(parts) != 3:
            return False
        try:
            for part in parts:
                binascii.unhexlify(part)
        except (binascii.Error, ValueError):
            return False
        return len(parts[1]) == TAG_LENGTH * 2
