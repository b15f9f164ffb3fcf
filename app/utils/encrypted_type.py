"""SQLAlchemy TypeDecorator for transparent Fernet encryption of text columns."""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import Text, TypeDecorator

log = logging.getLogger(__name__)

_SALT = b"procuredesk-settings-encryption-v1"
_fernet_cache: dict[str, Fernet] = {}


def _get_fernet() -> Fernet:
    """Derive a Fernet key from the app secret key (memoized per secret)."""
    from ..config import settings

    secret = settings.secret_key
    if secret not in _fernet_cache:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_SALT,
            iterations=100_000,
        )
        _fernet_cache[secret] = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))
    return _fernet_cache[secret]


class EncryptedText(TypeDecorator):
    """Transparently encrypts/decrypts text values stored in the database."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return _get_fernet().encrypt(str(value).encode()).decode()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return _get_fernet().decrypt(value.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled are plaintext
            log.debug("Stored value is not a Fernet token, returning as-is")
            return value
