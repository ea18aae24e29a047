from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from aigate.errors import ConfigurationError

SEALED_PREFIX = "enc:"


def is_sealed(value: str) -> bool:
    return value.startswith(SEALED_PREFIX)


class KeyCipher:
    """Encrypts provider API keys for the persisted state document."""

    def __init__(self, key: str) -> None:
        self._fernet = Fernet(key)

    def seal(self, api_key: str) -> str:
        if not api_key or is_sealed(api_key):
            return api_key
        return SEALED_PREFIX + self._fernet.encrypt(api_key.encode("utf-8")).decode("utf-8")

    def unseal(self, value: str) -> str:
        if not is_sealed(value):
            return value
        try:
            return self._fernet.decrypt(value[len(SEALED_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ConfigurationError("Stored API key cannot be decrypted with the configured key") from exc


def redact(value: str | None) -> str:
    if value and len(value) > 8:
        return value[:4] + "…" + value[-4:]
    return "***"
