"""
Field encryption at rest
Fernet (AES-128-CBC + HMAC) for surface access tokens and identity payloads.
Values are decrypted only when loaded inside this process.
"""
import json
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.types import Text, TypeDecorator

from core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class FieldCipher:
    """Symmetric cipher for individual column values"""

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("ENCRYPTION_KEY is not a valid Fernet key") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("Failed to decrypt column value (wrong key or tampered data)")
            raise ConfigurationError("Unable to decrypt stored value") from exc


_cipher: Optional[FieldCipher] = None


def configure_cipher(key: str) -> FieldCipher:
    """Install the process-wide cipher used by encrypted columns"""
    global _cipher
    _cipher = FieldCipher(key)
    return _cipher


def get_cipher() -> FieldCipher:
    if _cipher is None:
        raise ConfigurationError("Encryption key not configured (TRACKING_ENCRYPTION_KEY)")
    return _cipher


class EncryptedString(TypeDecorator):
    """String column stored as a Fernet token"""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        return get_cipher().encrypt(str(value))

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        return get_cipher().decrypt(value)


class EncryptedJSON(TypeDecorator):
    """JSON document stored as a Fernet token"""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        return get_cipher().encrypt(json.dumps(value, sort_keys=True, separators=(",", ":")))

    def process_result_value(self, value: Optional[str], dialect) -> Any:
        if value is None:
            return None
        return json.loads(get_cipher().decrypt(value))
