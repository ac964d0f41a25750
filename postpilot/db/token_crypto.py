import logging

from cryptography.fernet import Fernet, InvalidToken

from postpilot.config import settings
from postpilot.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _fernet() -> Fernet:
    if not settings.fernet_key:
        raise ConfigurationError("FERNET_KEY is missing in .env")
    return Fernet(settings.fernet_key.encode())

def encrypt_token(plain: str) -> str:
    return _fernet().encrypt(plain.encode()).decode()

def decrypt_token(cipher: str) -> str:
    try:
        return _fernet().decrypt(cipher.encode()).decode()
    except (TypeError, InvalidToken) as e:
        # Propagate; callers treat an unreadable token like a missing connection
        logger.error("Token decrypt failed: %s", type(e).__name__)
        raise
