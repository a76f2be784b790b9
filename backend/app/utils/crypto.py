"""账号凭据加解密（AES-256-GCM）

说明：
- 这是唯一接触明文密码的代码路径：入库前 encrypt，登录前 decrypt，明文只活在一次 login 调用里。
- key 由服务端 secret（ENCRYPTION_KEY）经 PBKDF2-SHA256 + 固定 salt 派生，进程内只派生一次。
- 每次加密都使用新的随机 nonce：同一明文加密两次得到不同密文。
- 密文格式：base64( nonce(12B) || ciphertext || tag(16B) )。
- 任何被篡改/格式不对/非本 key 产生的密文，解密都会失败并抛出 DecryptionFailed，绝不返回错误明文。
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import settings
from .errors import DecryptionFailed

_KEY_LENGTH = 32
_NONCE_LENGTH = 12
_TAG_LENGTH = 16


def derive_key(secret: str, *, salt: str, iterations: int) -> bytes:
    if not secret:
        raise ValueError("secret 不能为空")
    return hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode("utf-8"),
        hashlib.sha256(salt.encode("utf-8")).digest(),
        iterations,
        dklen=_KEY_LENGTH,
    )


class CredentialCipher:
    """持有派生好的 key，只读、无锁，可在进程内共享。"""

    def __init__(self, secret: str, *, salt: str, iterations: int):
        self._aead = AESGCM(derive_key(secret, salt=salt, iterations=iterations))

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise TypeError("plaintext 必须是 str")
        nonce = os.urandom(_NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or not ciphertext.strip():
            raise DecryptionFailed("密文为空")
        try:
            blob = base64.b64decode(ciphertext.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("密文不是合法的 base64") from e

        if len(blob) < _NONCE_LENGTH + _TAG_LENGTH:
            raise DecryptionFailed("密文长度不足")

        nonce, sealed = blob[:_NONCE_LENGTH], blob[_NONCE_LENGTH:]
        try:
            data = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionFailed("密文校验失败（已被篡改或 key 不匹配）") from e

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("解密结果不是合法的 UTF-8") from e

    def verify(self, ciphertext: str) -> bool:
        try:
            self.decrypt(ciphertext)
            return True
        except DecryptionFailed:
            return False


@lru_cache(maxsize=1)
def get_credential_cipher() -> CredentialCipher:
    """按当前配置构造（并缓存）进程级 cipher。"""
    secret = settings.encryption_key
    if not secret:
        raise DecryptionFailed("未配置 ENCRYPTION_KEY，无法加解密账号凭据")
    return CredentialCipher(
        secret,
        salt=settings.encryption_salt,
        iterations=int(settings.encryption_iterations),
    )


def encrypt_secret(plaintext: str) -> str:
    return get_credential_cipher().encrypt(plaintext)


def decrypt_secret(ciphertext: str) -> str:
    return get_credential_cipher().decrypt(ciphertext)


def verify_ciphertext(ciphertext: str) -> bool:
    return get_credential_cipher().verify(ciphertext)
