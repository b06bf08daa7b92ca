"""Encryption at rest for secret variables.

Payloads are AES-256-GCM sealed with a key derived from a passphrase through
PBKDF2-HMAC-SHA256. Every payload carries its own random salt and nonce, so
encrypting the same value twice yields different ciphertext.
"""

from __future__ import annotations

import base64
import binascii
import getpass
import logging
import os
import textwrap
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from hashlib import pbkdf2_hmac
from pathlib import Path
from typing import Callable, Optional, TypeVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionError

logger = logging.getLogger(__name__)

HEADER = "$MARIONETTE_VAULT;1.0;AES256-GCM"
KDF_ITERATIONS = 200_000
SALT_SIZE = 16
NONCE_SIZE = 12
WRAP_WIDTH = 80

T = TypeVar("T")


class PassphraseSource:
    """Supplies the vault passphrase on demand."""

    description = "passphrase"

    def get(self) -> str:
        raise NotImplementedError


class PromptPassphrase(PassphraseSource):
    description = "interactive prompt"

    def __init__(self, prompt: str = "Vault password: "):
        self.prompt = prompt

    def get(self) -> str:
        return getpass.getpass(self.prompt)


class EnvPassphrase(PassphraseSource):
    def __init__(self, variable: str = "MARIONETTE_VAULT_PASSWORD"):
        self.variable = variable
        self.description = f"environment variable {variable}"

    def get(self) -> str:
        value = os.environ.get(self.variable)
        if not value:
            raise DecryptionError(f"{self.variable} is not set")
        return value


class FilePassphrase(PassphraseSource):
    def __init__(self, path: Path):
        self.path = Path(path)
        self.description = f"key file {self.path}"

    def get(self) -> str:
        try:
            value = self.path.read_text().rstrip("\r\n")
        except OSError as exc:
            raise DecryptionError(f"cannot read vault key file {self.path}: {exc.strerror}") from None
        if not value:
            raise DecryptionError(f"vault key file {self.path} is empty")
        return value


def is_encrypted(value: object) -> bool:
    return isinstance(value, str) and value.lstrip().startswith(HEADER)


class VaultCipher:
    """Encrypts and decrypts vault payloads with one passphrase source."""

    def __init__(self, source: PassphraseSource, *, timeout: Optional[float] = None):
        self.source = source
        self.timeout = timeout
        self._passphrase: Optional[str] = None
        self._lock = threading.Lock()

    def encrypt(self, plaintext: str) -> str:
        passphrase = self._get_passphrase()
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(_derive_key(passphrase, salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        body = base64.b64encode(salt + nonce + sealed).decode("ascii")
        return "\n".join([HEADER, *textwrap.wrap(body, WRAP_WIDTH)]) + "\n"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ``ciphertext`` within the configured timeout."""

        passphrase = self._get_passphrase()
        return _call_with_timeout(lambda: self._decrypt(ciphertext, passphrase), self.timeout, "vault decryption")

    def _decrypt(self, ciphertext: str, passphrase: str) -> str:
        lines = ciphertext.strip().splitlines()
        if not lines or lines[0].strip() != HEADER:
            raise DecryptionError("payload is not a marionette vault document")
        try:
            raw = base64.b64decode("".join(line.strip() for line in lines[1:]), validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError("vault payload is not valid base64") from None
        if len(raw) <= SALT_SIZE + NONCE_SIZE:
            raise DecryptionError("vault payload is truncated")
        salt, nonce, sealed = raw[:SALT_SIZE], raw[SALT_SIZE:SALT_SIZE + NONCE_SIZE], raw[SALT_SIZE + NONCE_SIZE:]
        try:
            plaintext = AESGCM(_derive_key(passphrase, salt)).decrypt(nonce, sealed, None)
        except InvalidTag:
            raise DecryptionError(
                f"decryption failed: wrong passphrase from {self.source.description} or tampered payload"
            ) from None
        return plaintext.decode("utf-8")

    def _get_passphrase(self) -> str:
        with self._lock:
            if self._passphrase is None:
                logger.debug("Reading vault passphrase from %s", self.source.description)
                self._passphrase = self.source.get()
            return self._passphrase


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    return pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, KDF_ITERATIONS, dklen=32)


def _call_with_timeout(func: Callable[[], T], timeout: Optional[float], label: str) -> T:
    if timeout is None:
        return func()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vault")
    try:
        future = pool.submit(func)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise DecryptionError(f"{label} timed out after {timeout:g}s") from None
    finally:
        pool.shutdown(wait=False)
