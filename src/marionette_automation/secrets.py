from __future__ import annotations

import base64
import json
import logging
import re
import threading
from typing import Any, Iterable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .vault import VaultCipher, is_encrypted
from .errors import DecryptionError

REDACTED = "<redacted>"

_TRACEBACK_FORMATTER = logging.Formatter()


class SecretRedactor(logging.Filter):
    """Rewrites registered secret plaintexts out of text and log records."""

    def __init__(self) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        self._pattern: Optional[re.Pattern[str]] = None
        self._lock = threading.Lock()

    def register(self, value: Any) -> None:
        for text in _leaf_strings(value):
            if not text:
                continue
            with self._lock:
                if text not in self._secrets:
                    self._secrets.add(text)
                    self._pattern = None

    def redact(self, text: str) -> str:
        pattern = self._compiled()
        if pattern is None or not text:
            return text
        return pattern.sub(REDACTED, text)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._compiled() is None:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        # Handler filters run before the formatter renders the traceback, so
        # render it here and drop exc_info to keep the raw text out of the sink.
        if record.exc_info:
            if not record.exc_text:
                record.exc_text = _TRACEBACK_FORMATTER.formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = self.redact(record.exc_text)
        return True

    def _compiled(self) -> Optional[re.Pattern[str]]:
        with self._lock:
            if self._pattern is None and self._secrets:
                # Longest first so a secret containing another is replaced whole.
                ordered = sorted(self._secrets, key=len, reverse=True)
                self._pattern = re.compile("|".join(re.escape(s) for s in ordered))
            return self._pattern


class SecretResolver:
    """Resolves secret references in variable mappings.

    Inline vault strings are decrypted with ``cipher``; ``aws_secret``
    references are fetched from AWS Secrets Manager. Every resolved plaintext
    is handed to ``redactor``.
    """

    def __init__(self, cipher: Optional[VaultCipher] = None, redactor: Optional[SecretRedactor] = None):
        self.cipher = cipher
        self.redactor = redactor or SecretRedactor()
        self._cache: dict[tuple[str, Optional[str]], Any] = {}

    def resolve(self, values: dict[str, Any]) -> tuple[dict[str, Any], set[str]]:
        """Return resolved ``values`` and the keys that held a secret."""

        resolved: dict[str, Any] = {}
        secret_keys: set[str] = set()
        for key, value in values.items():
            if self.contains_secret(value):
                secret_keys.add(key)
                resolved[key] = self._resolve_value(value)
                self.redactor.register(resolved[key])
            else:
                resolved[key] = value
        return resolved, secret_keys

    def decrypt_document(self, text: str) -> str:
        if self.cipher is None:
            raise DecryptionError("vault data found but no vault passphrase source is configured")
        return self.cipher.decrypt(text)

    @classmethod
    def contains_secret(cls, value: Any) -> bool:
        if is_encrypted(value):
            return True
        if isinstance(value, dict):
            return "aws_secret" in value or any(cls.contains_secret(v) for v in value.values())
        if isinstance(value, list):
            return any(cls.contains_secret(v) for v in value)
        return False

    def _resolve_value(self, value: Any) -> Any:
        if is_encrypted(value):
            return self.decrypt_document(value)
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        if cache_key in self._cache:
            return self._cache[cache_key]

        try:
            response = boto3.client("secretsmanager").get_secret_value(SecretId=name)
        except (BotoCoreError, ClientError) as exc:
            # botocore messages name the secret id, never its value.
            raise DecryptionError(f"Secret {name} could not be fetched: {exc}") from None
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise DecryptionError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
            except json.JSONDecodeError:
                raise DecryptionError(f"Secret {name} is not a JSON object; cannot select key '{key}'") from None
            if not isinstance(payload, dict) or str(key) not in payload:
                raise DecryptionError(f"Secret {name} has no key '{key}'")
            value = payload[str(key)]

        self._cache[cache_key] = value
        return value


def _leaf_strings(value: Any) -> Iterable[str]:
    if isinstance(value, dict):
        for item in value.values():
            yield from _leaf_strings(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            yield from _leaf_strings(item)
    elif value is not None and not isinstance(value, bool):
        yield str(value)
