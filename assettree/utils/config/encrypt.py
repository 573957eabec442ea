import logging

from cryptography.fernet import Fernet, InvalidToken

#-----------------------------------------------------------------------------

class AbstractEncrypter:
    def decrypt(self, s: str) -> str: ...
    def encrypt(self, s: str) -> str: ...
    def is_encrypted(self, s: str) -> bool: ...

#-----------------------------------------------------------------------------

class FernetEncrypter(AbstractEncrypter):
    """Encrypts secret-looking configuration values at rest.

    An unusable key disables the encrypter: values then pass through
    untouched instead of failing configuration loading.
    """

    PREFIX = "gAAAA"

    def __init__(self, key: str):
        self._key = key.strip() if key else ""

        self._fernet = None
        if self._key:
            try:
                self._fernet = Fernet(self._key)
            except (ValueError, TypeError) as e:
                logging.error(f"Invalid configuration encryption key: {e}")

    #-----------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._fernet is not None


    def decrypt(self, s: str) -> str:
        if not s or not self._fernet or not self.is_encrypted(s):
            return s

        try:
            return self._fernet.decrypt(s.encode()).decode()
        except InvalidToken:
            logging.error("Failed to decrypt configuration value, keeping it as is.")
            return s


    def encrypt(self, s: str) -> str:
        if not s or not self._fernet or self.is_encrypted(s):
            return s

        return self._fernet.encrypt(s.encode()).decode()


    def is_encrypted(self, s: str) -> bool:
        return isinstance(s, str) and s.startswith(self.PREFIX)

#-----------------------------------------------------------------------------
