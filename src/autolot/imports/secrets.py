import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from autolot.config import settings
from autolot.exceptions import ConfigError


class CredentialVault:
    """
    Encrypts remote-connection passwords at rest.
    Any configured secret string is derived into a Fernet key.
    """

    def __init__(self, secret_key: Optional[str] = None):
        secret = secret_key if secret_key is not None else settings.security.secret_key
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ConfigError("Stored connection password cannot be decrypted with the configured secret key") from exc
