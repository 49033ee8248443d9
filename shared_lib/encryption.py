# shared_lib/encryption.py
from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes


class DecryptionError(ValueError):
    """Raised when a stored token cannot be decrypted."""


def generate_encryption_key() -> str:
    """Return a fresh 32-byte key as 64 hex characters."""
    return get_random_bytes(32).hex()


class TokenVault:
    """
    Encrypts and decrypts OAuth tokens at rest using AES-256-GCM.

    Stored values have the form ``iv:authTag:ciphertext``, each part hex
    encoded, with a 16-byte IV.
    """
    IV_LENGTH = 16

    def __init__(self, key: str):
        """
        Initializes the vault with a 32-byte key.

        Args:
            key: A 32-byte (64 hex characters) secret key.

        Raises:
            ValueError: If the key is not 32 bytes long.
        """
        try:
            raw_key = bytes.fromhex(key)
        except (TypeError, ValueError) as e:
            raise ValueError("Encryption key must be 64 hex characters.") from e
        if len(raw_key) != 32:
            raise ValueError("Encryption key must be 32 bytes (64 hex characters) long.")
        self.key = raw_key

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypts a token string.

        Args:
            plaintext: The token to encrypt.

        Returns:
            The ``iv:authTag:ciphertext`` hex string.
        """
        iv = get_random_bytes(self.IV_LENGTH)
        cipher = AES.new(self.key, AES.MODE_GCM, nonce=iv)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode('utf-8'))
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypts a value produced by ``encrypt``.

        Raises:
            DecryptionError: If the value is malformed, was tampered with,
                             or the key is incorrect.
        """
        parts = encrypted.split(':') if encrypted else []
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted text format")

        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise DecryptionError("Invalid encrypted text format") from e

        cipher = AES.new(self.key, AES.MODE_GCM, nonce=iv)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag).decode('utf-8')
        except (ValueError, KeyError) as e:
            # Tag mismatch means tampering or a wrong key
            raise DecryptionError("Decryption failed. Token may be tampered with or key is incorrect.") from e
