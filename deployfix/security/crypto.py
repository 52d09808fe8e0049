from __future__ import annotations

from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken

from deployfix.errors import DecryptionError


@dataclass(frozen=True)
class SecretBox:
    """
    Symmetric encryption for secrets stored in the database (webhook secrets, provider tokens).
    """

    key: str

    def _fernet(self) -> Fernet:
        return Fernet(self.key.encode("ascii"))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet().decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise DecryptionError("stored secret could not be decrypted (wrong DEPLOYFIX_ENCRYPTION_KEY?)") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")
