"""
Cryptographic operations for the credential manager.

Passwords are encrypted with AES-256-GCM under a key derived from the shared
secret with Argon2id (PBKDF2-HMAC-SHA256 when argon2 is not installed). Each
encrypted password is a self-describing base64 token:

    HEADER  = struct '<BBIIB': version, kdf id, time cost / iterations,
              memory cost (KiB), parallelism
    SALT    (16 bytes)
    NONCE   (12 bytes)
    TAG     (16 bytes)
    CIPHERTEXT

The header and salt are authenticated as associated data, so any tampering
with them fails decryption just like a wrong key does.

LEGAL NOTICE:
This module handles encryption/decryption of sensitive data. It must only be used
for legitimate personal password management on devices you own or administer.
"""

import base64
import binascii
import hashlib
import os
import struct
import threading
from functools import lru_cache
from typing import Dict, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from . import config
from .errors import DecryptionError, ValidationError

try:
    from argon2.exceptions import HashingError
    from argon2.low_level import Type, hash_secret_raw
    ARGON2_AVAILABLE = True
except ImportError:
    ARGON2_AVAILABLE = False

KDF_ARGON2ID = 1
KDF_PBKDF2 = 2

HEADER_FORMAT = '<BBIIB'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

KdfParams = Tuple[int, int, int, int]


def _derive_uncached(password: str, salt: bytes, params: KdfParams) -> bytes:
    kdf_id, cost, memory_cost, parallelism = params
    if kdf_id == KDF_ARGON2ID:
        try:
            return hash_secret_raw(
                secret=password.encode('utf-8'),
                salt=salt,
                time_cost=cost,
                memory_cost=memory_cost,
                parallelism=parallelism,
                hash_len=config.KEY_SIZE,
                type=Type.ID
            )
        except HashingError as e:
            raise ValueError(f"Argon2 key derivation failed: {e}") from e
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=config.KEY_SIZE,
        salt=salt,
        iterations=cost,
        backend=default_backend()
    )
    return kdf.derive(password.encode('utf-8'))


# Derived keys of the shared secret, so bulk imports run the KDF once per salt
_derive = lru_cache(maxsize=32)(_derive_uncached)


class CryptoManager:
    """Handles all cryptographic operations for the credential manager."""

    SALT_SIZE = config.SALT_SIZE
    KEY_SIZE = config.KEY_SIZE
    NONCE_SIZE = config.NONCE_SIZE
    TAG_SIZE = config.TAG_SIZE
    VERSION = config.CIPHERTEXT_VERSION

    def __init__(self,
                 time_cost: int = config.ARGON2_TIME_COST,
                 memory_cost: int = config.ARGON2_MEMORY_COST,
                 parallelism: int = config.ARGON2_PARALLELISM):
        """Initialize the crypto manager with the Argon2 cost parameters used for new tokens."""
        self.backend = default_backend()
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self._salts: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: config.Settings) -> 'CryptoManager':
        return cls(
            time_cost=settings.ARGON2_TIME_COST,
            memory_cost=settings.ARGON2_MEMORY_COST,
            parallelism=settings.ARGON2_PARALLELISM,
        )

    def generate_salt(self) -> bytes:
        """Generate a cryptographically secure random salt."""
        return os.urandom(self.SALT_SIZE)

    def kdf_params(self) -> KdfParams:
        """KDF identifier and cost parameters written into new tokens."""
        if ARGON2_AVAILABLE:
            return (KDF_ARGON2ID, self.time_cost, self.memory_cost, self.parallelism)
        return (KDF_PBKDF2, config.PBKDF2_ITERATIONS, 0, 0)

    def derive_key(self, password: str, salt: bytes, params: KdfParams = None, cache: bool = True) -> bytes:
        """
        Derive an encryption key from a password using Argon2id or PBKDF2.

        Args:
            password: The shared secret
            salt: Random salt for key derivation
            params: KDF id and costs; defaults to this manager's parameters
            cache: Keep the password and derived key in the process-wide cache.
                Pass False for keys supplied by a remote caller.

        Returns:
            32-byte encryption key
        """
        derive = _derive if cache else _derive_uncached
        return derive(password, salt, params or self.kdf_params())

    def cost_ceilings(self) -> Tuple[int, int, int, int]:
        """Largest (time cost, memory cost, parallelism, PBKDF2 iterations) accepted from a token."""
        factor = config.KDF_COST_CEILING_FACTOR
        return (
            factor * self.time_cost,
            factor * self.memory_cost,
            factor * self.parallelism,
            factor * config.PBKDF2_ITERATIONS,
        )

    def _salt_for(self, password: str) -> bytes:
        # One salt per secret for the lifetime of the manager, so bulk
        # imports hit the derived-key cache instead of re-running the KDF.
        fingerprint = hashlib.sha256(password.encode('utf-8')).hexdigest()
        with self._lock:
            salt = self._salts.get(fingerprint)
            if salt is None:
                salt = self.generate_salt()
                self._salts[fingerprint] = salt
            return salt

    def encrypt(self, plaintext: bytes, key: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes, bytes]:
        """
        Encrypt data using AES-256-GCM.

        Args:
            plaintext: Data to encrypt
            key: 32-byte encryption key
            associated_data: Authenticated but unencrypted data

        Returns:
            Tuple of (ciphertext, nonce, tag)
        """
        nonce = os.urandom(self.NONCE_SIZE)
        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(nonce),
            backend=self.backend
        )
        encryptor = cipher.encryptor()
        if associated_data:
            encryptor.authenticate_additional_data(associated_data)
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return ciphertext, nonce, encryptor.tag

    def decrypt(self, ciphertext: bytes, key: bytes, nonce: bytes, tag: bytes, associated_data: bytes = b"") -> bytes:
        """
        Decrypt data using AES-256-GCM.

        Raises:
            InvalidTag: If authentication fails
        """
        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(nonce, tag),
            backend=self.backend
        )
        decryptor = cipher.decryptor()
        if associated_data:
            decryptor.authenticate_additional_data(associated_data)
        return decryptor.update(ciphertext) + decryptor.finalize()

    def encrypt_password(self, plaintext: str, key: str) -> str:
        """
        Encrypt a password string into a base64 token.

        Tokens are not deterministic: every call uses a fresh nonce.
        """
        if not key:
            raise ValidationError("Encryption key must not be empty")

        params = self.kdf_params()
        salt = self._salt_for(key)
        derived = self.derive_key(key, salt, params)
        header = struct.pack(HEADER_FORMAT, self.VERSION, *params)

        ciphertext, nonce, tag = self.encrypt(plaintext.encode('utf-8'), derived, header + salt)
        return base64.b64encode(header + salt + nonce + tag + ciphertext).decode('ascii')

    def decrypt_password(self, token: str, key: str, cache: bool = True) -> str:
        """
        Decrypt a token produced by encrypt_password.

        KDF costs are read from the token header and must stay within
        cost_ceilings() before any key derivation runs. Pass cache=False for
        keys supplied by a remote caller.

        Raises:
            DecryptionError: Wrong key, or a malformed, truncated or unsupported token.
        """
        if not key:
            raise DecryptionError("Decryption key must not be empty")

        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e

        minimum = HEADER_SIZE + self.SALT_SIZE + self.NONCE_SIZE + self.TAG_SIZE
        if len(raw) < minimum:
            raise DecryptionError("Ciphertext is truncated")

        version, kdf_id, cost, memory_cost, parallelism = struct.unpack(HEADER_FORMAT, raw[:HEADER_SIZE])
        if version != self.VERSION:
            raise DecryptionError(f"Unsupported ciphertext version {version}")
        params = self._checked_params(kdf_id, cost, memory_cost, parallelism)

        offset = HEADER_SIZE
        salt = raw[offset:offset + self.SALT_SIZE]
        offset += self.SALT_SIZE
        nonce = raw[offset:offset + self.NONCE_SIZE]
        offset += self.NONCE_SIZE
        tag = raw[offset:offset + self.TAG_SIZE]
        offset += self.TAG_SIZE
        ciphertext = raw[offset:]

        try:
            derived = self.derive_key(key, salt, params, cache=cache)
        except ValueError as e:
            raise DecryptionError("Key derivation failed for ciphertext parameters") from e

        try:
            plaintext = self.decrypt(ciphertext, derived, nonce, tag, raw[:HEADER_SIZE] + salt)
        except InvalidTag as e:
            raise DecryptionError("Wrong key or corrupt ciphertext") from e

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted content is not valid UTF-8") from e

    def _checked_params(self, kdf_id: int, cost: int, memory_cost: int, parallelism: int) -> KdfParams:
        max_time, max_memory, max_parallelism, max_iterations = self.cost_ceilings()
        if kdf_id == KDF_ARGON2ID:
            if not ARGON2_AVAILABLE:
                raise DecryptionError("Ciphertext requires Argon2 but argon2-cffi is not installed")
            if not (1 <= cost <= max_time and 1 <= parallelism <= max_parallelism
                    and 8 * parallelism <= memory_cost <= max_memory):
                raise DecryptionError("Ciphertext carries invalid Argon2 parameters")
        elif kdf_id == KDF_PBKDF2:
            if not 1 <= cost <= max_iterations:
                raise DecryptionError("Ciphertext carries invalid PBKDF2 parameters")
        else:
            raise DecryptionError(f"Unknown key derivation function {kdf_id}")
        return (kdf_id, cost, memory_cost, parallelism)

    def validate_key(self, key: str, probe: str = config.KEY_VALIDATION_PROBE) -> bool:
        """Encrypt then decrypt a probe string and report whether it survives."""
        if not key:
            return False
        try:
            return self.decrypt_password(self.encrypt_password(probe, key), key) == probe
        except DecryptionError:
            return False

    def secure_compare(self, a: bytes, b: bytes) -> bool:
        """Constant-time comparison to prevent timing attacks."""
        return constant_time.bytes_eq(a, b)
