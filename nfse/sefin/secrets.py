"""Secure helpers to load the active NFS-e signing certificate.

The PKCS#12 file and its password are stored encrypted: the file on disk
(``Certificate.storage_path``) and the password in the database
(``Certificate.password_encrypted``). Both are decrypted with a Fernet
key read from the ``NFSE_CERT_KEY`` environment variable or Django
setting, so neither the database nor the disk alone is enough to sign.

Decrypted bytes are cached per certificate fingerprint to avoid repeated
I/O and decryption costs while the same certificate stays active.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.db.models import F
from django.utils import timezone

from nfse.models import Certificate

from .errors import CertificateError

logger = logging.getLogger(__name__)

DEFAULT_CERT_KEY_ENV = "NFSE_CERT_KEY"

DecryptCallback = Callable[[bytes, str], bytes]


class CertificateNotConfigured(CertificateError):
    """Raised when there is no active certificate or no decryption key."""

    default_code = "certificate_missing"


@dataclass(frozen=True)
class CertificateSecrets:
    """In-memory representation of the certificate and password."""

    certificate_bytes: bytes
    password: str
    alias: Optional[str] = None
    fingerprint: str = ""


def read_setting(name: str) -> Optional[str]:
    return os.environ.get(name) or getattr(settings, name, None)


def _default_decrypt(cipher_bytes: bytes, key: str) -> bytes:
    """Decrypt bytes using Fernet (AES-128 in CBC + HMAC)."""

    return Fernet(key.encode("utf-8")).decrypt(cipher_bytes)


def encrypt_secret(plain: bytes, key: str) -> bytes:
    """Counterpart of the default decrypt, used when storing certificates."""

    return Fernet(key.encode("utf-8")).encrypt(plain)


def _load_encrypted_file(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except FileNotFoundError as exc:
        raise CertificateError(f"O certificado cifrado não existe: {path}") from exc
    except OSError as exc:
        raise CertificateError(f"Não foi possível ler o certificado cifrado em {path}: {exc}") from exc


class CertificateManager:
    """Resolve "the active certificate" for signing.

    Only reads certificate rows; uploading and activating certificates is
    done through the Django admin.
    """

    def __init__(
        self,
        *,
        key_env: str = DEFAULT_CERT_KEY_ENV,
        decrypt_callback: Optional[DecryptCallback] = None,
    ) -> None:
        self._key_env = key_env
        self._decrypt = decrypt_callback or _default_decrypt
        self._cache: dict[tuple[int, str], CertificateSecrets] = {}

    def get_active_record(self) -> Certificate:
        record = Certificate.objects.filter(is_active=True).first()
        if record is None:
            raise CertificateNotConfigured(
                "Nenhum certificado digital ativo; cadastre e ative um certificado A1 no admin",
            )
        return record

    def get_active_certificate(self) -> CertificateSecrets:
        """Return decrypted certificate bytes and password for the active row."""

        record = self.get_active_record()
        cache_key = (record.pk, record.fingerprint)
        secrets = self._cache.get(cache_key)
        if secrets is None:
            secrets = self._decrypt_record(record)
            self._cache = {cache_key: secrets}

        Certificate.objects.filter(pk=record.pk).update(
            usage_count=F("usage_count") + 1,
            last_used_at=timezone.now(),
        )
        return secrets

    def is_certificate_valid(self) -> bool:
        try:
            record = self.get_active_record()
        except CertificateNotConfigured:
            return False
        return record.is_valid_at(timezone.now())

    def refresh(self) -> None:
        """Drop cached decrypted material (after rotating keys or files)."""

        self._cache.clear()

    def _decrypt_record(self, record: Certificate) -> CertificateSecrets:
        key = read_setting(self._key_env)
        if not key:
            raise CertificateNotConfigured(
                f"Variável {self._key_env} é obrigatória para decifrar o certificado",
            )

        cipher = _load_encrypted_file(record.storage_path)
        try:
            certificate = self._decrypt(cipher, key)
            password = (
                self._decrypt(record.password_encrypted.encode("utf-8"), key).decode("utf-8")
                if record.password_encrypted
                else ""
            )
        except (InvalidToken, ValueError) as exc:
            raise CertificateError(
                f"Não foi possível decifrar o certificado {record.name}; verifique {self._key_env}",
                code="certificate_unreadable",
            ) from exc

        logger.debug("NFS-e: certificado %s carregado", record.name)
        return CertificateSecrets(
            certificate_bytes=certificate,
            password=password,
            alias=record.name,
            fingerprint=record.fingerprint,
        )


__all__ = [
    "CertificateManager",
    "CertificateNotConfigured",
    "CertificateSecrets",
    "DEFAULT_CERT_KEY_ENV",
    "encrypt_secret",
    "read_setting",
]
