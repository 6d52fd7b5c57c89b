"""Transcript encryption.

Envelopes are produced by an ordered list of strategies: a managed key service
(data keys wrapped by AWS KMS) first, then a local AES-256-GCM key derived from
the configured secret. The envelope's ``algorithm_tag`` records which one was
used. Both bind the same encryption context as associated data, so a
ciphertext cannot be replayed under a different purpose.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import EncryptionConfig
from .errors import DataIntegrityError, EncryptionUnavailableError
from .models import EncryptionEnvelope

logger = logging.getLogger("calmwave")

LOCAL_ALGORITHM = "aes-256-gcm"
MANAGED_ALGORITHM = "kms-envelope/aes-256-gcm"
KEY_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16
DEVELOPMENT_SEED = "development-seed-key-therapeutic-wave-interface"
SELF_CHECK_VALUE = "test-encryption-validation"

ENCRYPTION_CONTEXT = {"purpose": "session-transcript", "application": "calmwave"}

_REDACTIONS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    # SSN and card numbers run before phones so their digits are not split up.
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "[CARD]"),
    (re.compile(r"\(\d{3}\)\s?\d{3}[-.]?\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "[PHONE]"),
    (
        re.compile(
            r"\b\d+\s+[A-Za-z\s]+?\s(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd)\b",
            re.IGNORECASE,
        ),
        "[ADDRESS]",
    ),
)


def sanitize(text: str) -> str:
    """Best-effort redaction of common PII patterns. Not a privacy guarantee."""
    for pattern, label in _REDACTIONS:
        text = pattern.sub(label, text)
    return text


def hash_for_index(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def new_identifier() -> str:
    return secrets.token_hex(16)


def _context_aad(context: Dict[str, str]) -> bytes:
    return json.dumps(context, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _seal(key: bytes, plaintext: bytes, aad: bytes) -> Tuple[bytes, bytes, bytes]:
    nonce = os.urandom(NONCE_LENGTH)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    encryptor.authenticate_additional_data(aad)
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return nonce, encryptor.tag, ciphertext


def _open(key: bytes, envelope: EncryptionEnvelope, aad: bytes) -> bytes:
    decryptor = Cipher(
        algorithms.AES(key),
        modes.GCM(envelope.nonce, envelope.auth_tag, min_tag_length=TAG_LENGTH),
    ).decryptor()
    decryptor.authenticate_additional_data(aad)
    return decryptor.update(envelope.ciphertext) + decryptor.finalize()


class FailureKind(str, Enum):
    UNAVAILABLE = "unavailable"
    REJECTED = "rejected"
    NOT_APPLICABLE = "not-applicable"


@dataclass
class StrategyResult:
    ok: bool
    value: Any = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "StrategyResult":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, kind: FailureKind, error: str = "") -> "StrategyResult":
        return cls(ok=False, failure=kind, error=error)


class ManagedKeyClient(Protocol):
    def generate_data_key(self, key_id: str, context: Dict[str, str]) -> Tuple[bytes, bytes]:
        """Return (plaintext data key, wrapped data key)."""

    def decrypt_data_key(self, wrapped_key: bytes, context: Dict[str, str]) -> bytes:
        ...


class KmsKeyClient:
    """ManagedKeyClient backed by AWS KMS."""

    def __init__(self, region: Optional[str] = None, client: Any = None) -> None:
        self._region = region
        self._client = client

    def _kms(self):
        if self._client is None:
            try:
                import boto3
            except Exception as exc:  # pragma: no cover - optional dependency
                raise RuntimeError("boto3 is required for managed-key encryption.") from exc
            self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def generate_data_key(self, key_id: str, context: Dict[str, str]) -> Tuple[bytes, bytes]:
        response = self._kms().generate_data_key(
            KeyId=key_id, KeySpec="AES_256", EncryptionContext=context
        )
        return response["Plaintext"], response["CiphertextBlob"]

    def decrypt_data_key(self, wrapped_key: bytes, context: Dict[str, str]) -> bytes:
        response = self._kms().decrypt(CiphertextBlob=wrapped_key, EncryptionContext=context)
        return response["Plaintext"]


class ManagedKeyStrategy:
    algorithm_tag = MANAGED_ALGORITHM

    def __init__(
        self,
        client: ManagedKeyClient,
        key_id: str,
        key_version: str = "1",
        context: Optional[Dict[str, str]] = None,
    ) -> None:
        self.client = client
        self.key_id = key_id
        self.key_version = key_version
        self.context = dict(context or ENCRYPTION_CONTEXT)

    def encrypt(self, plaintext: bytes) -> StrategyResult:
        try:
            data_key, wrapped = self.client.generate_data_key(self.key_id, self.context)
        except Exception as exc:
            return StrategyResult.failed(FailureKind.UNAVAILABLE, str(exc))
        nonce, tag, ciphertext = _seal(data_key, plaintext, _context_aad(self.context))
        return StrategyResult.success(
            EncryptionEnvelope(
                algorithm_tag=self.algorithm_tag,
                key_version=self.key_version,
                nonce=nonce,
                auth_tag=tag,
                ciphertext=ciphertext,
                wrapped_key=wrapped,
            )
        )

    def decrypt(self, envelope: EncryptionEnvelope) -> StrategyResult:
        if envelope.algorithm_tag != self.algorithm_tag or not envelope.wrapped_key:
            return StrategyResult.failed(FailureKind.NOT_APPLICABLE)
        try:
            data_key = self.client.decrypt_data_key(envelope.wrapped_key, self.context)
        except Exception as exc:
            return StrategyResult.failed(FailureKind.UNAVAILABLE, str(exc))
        try:
            return StrategyResult.success(_open(data_key, envelope, _context_aad(self.context)))
        except (InvalidTag, ValueError) as exc:
            return StrategyResult.failed(FailureKind.REJECTED, str(exc) or "authentication failed")


class LocalKeyStrategy:
    algorithm_tag = LOCAL_ALGORITHM

    def __init__(
        self,
        secret: Optional[str],
        key_version: str = "1",
        context: Optional[Dict[str, str]] = None,
    ) -> None:
        if not secret:
            logger.warning("No encryption secret configured; using the development seed.")
            secret = DEVELOPMENT_SEED
        self._key = hashlib.sha256(secret.encode("utf-8")).digest()
        self.key_version = key_version
        self.context = dict(context or ENCRYPTION_CONTEXT)

    def encrypt(self, plaintext: bytes) -> StrategyResult:
        nonce, tag, ciphertext = _seal(self._key, plaintext, _context_aad(self.context))
        return StrategyResult.success(
            EncryptionEnvelope(
                algorithm_tag=self.algorithm_tag,
                key_version=self.key_version,
                nonce=nonce,
                auth_tag=tag,
                ciphertext=ciphertext,
            )
        )

    def decrypt(self, envelope: EncryptionEnvelope) -> StrategyResult:
        try:
            return StrategyResult.success(_open(self._key, envelope, _context_aad(self.context)))
        except (InvalidTag, ValueError) as exc:
            return StrategyResult.failed(FailureKind.REJECTED, str(exc) or "authentication failed")


class EncryptionService:
    def __init__(
        self,
        strategies: Sequence[Any],
        sanitize_before_encrypt: bool = False,
        verify_on_start: bool = True,
    ) -> None:
        if not strategies:
            raise ValueError("At least one encryption strategy is required.")
        self.strategies: List[Any] = list(strategies)
        self.sanitize_before_encrypt = sanitize_before_encrypt
        self._ready = True
        if verify_on_start:
            self._ready = self.self_check()

    @classmethod
    def from_config(
        cls,
        config: EncryptionConfig,
        managed_client: Optional[ManagedKeyClient] = None,
    ) -> "EncryptionService":
        strategies: List[Any] = []
        if config.managed_key_id:
            client = managed_client or KmsKeyClient(region=config.region)
            strategies.append(ManagedKeyStrategy(client, config.managed_key_id, config.key_version))
        strategies.append(LocalKeyStrategy(config.local_secret, config.key_version))
        return cls(strategies, sanitize_before_encrypt=config.sanitize_transcripts)

    @property
    def ready(self) -> bool:
        return self._ready

    def sanitize(self, text: str) -> str:
        return sanitize(text)

    def self_check(self) -> bool:
        try:
            ok = self._decrypt(self._encrypt(SELF_CHECK_VALUE)) == SELF_CHECK_VALUE
        except DataIntegrityError:
            logger.exception("Encryption self-check failed.")
            return False
        if not ok:
            logger.error("Encryption self-check returned a different value.")
        return ok

    def _encrypt(self, plaintext: str) -> EncryptionEnvelope:
        data = plaintext.encode("utf-8")
        for strategy in self.strategies:
            result = strategy.encrypt(data)
            if result.ok:
                return result.value
            logger.warning(
                "Encryption strategy %s failed (%s): %s",
                strategy.algorithm_tag,
                result.failure.value,
                result.error,
            )
        raise DataIntegrityError("No encryption strategy succeeded.")

    def _decrypt(self, envelope: EncryptionEnvelope) -> str:
        if envelope.algorithm_tag == MANAGED_ALGORITHM:
            candidates = self.strategies
        else:
            candidates = [s for s in self.strategies if s.algorithm_tag == envelope.algorithm_tag]
        for strategy in candidates:
            result = strategy.decrypt(envelope)
            if result.ok:
                try:
                    return result.value.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise DataIntegrityError("Decrypted payload is not UTF-8.") from exc
            if result.failure != FailureKind.NOT_APPLICABLE:
                logger.warning(
                    "Decryption strategy %s failed (%s): %s",
                    strategy.algorithm_tag,
                    result.failure.value,
                    result.error,
                )
        raise DataIntegrityError(
            f"Unable to decrypt envelope ({envelope.algorithm_tag}, key version {envelope.key_version})."
        )

    def encrypt(self, plaintext: str) -> EncryptionEnvelope:
        if not self._ready:
            raise EncryptionUnavailableError("Encryption self-check failed; refusing to encrypt.")
        if self.sanitize_before_encrypt:
            plaintext = sanitize(plaintext)
        return self._encrypt(plaintext)

    def decrypt(self, envelope: EncryptionEnvelope) -> str:
        return self._decrypt(envelope)
