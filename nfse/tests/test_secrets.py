from __future__ import annotations

import os
import tempfile
from unittest import mock

from cryptography.fernet import Fernet
from django.test import TestCase

from nfse.models import Certificate
from nfse.sefin import secrets
from nfse.sefin.errors import CertificateError


class CertificateManagerTests(TestCase):
    def setUp(self) -> None:
        self.key = Fernet.generate_key().decode("ascii")
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = os.path.join(self.tmpdir.name, "cert.p12.enc")
        with open(self.path, "wb") as fh:
            fh.write(secrets.encrypt_secret(b"PKCS12-DATA", self.key))
        super().setUp()

    def _certificate(self, **overrides) -> Certificate:
        values = {
            "name": "Empresa Teste A1",
            "storage_path": self.path,
            "password_encrypted": secrets.encrypt_secret(b"senha", self.key).decode("ascii"),
            "fingerprint": "ab" * 32,
            "is_active": True,
        }
        values.update(overrides)
        return Certificate.objects.create(**values)

    def test_missing_active_certificate(self) -> None:
        self._certificate(is_active=False)
        manager = secrets.CertificateManager()
        with self.assertRaises(secrets.CertificateNotConfigured):
            manager.get_active_certificate()
        self.assertFalse(manager.is_certificate_valid())

    def test_missing_key(self) -> None:
        self._certificate()
        with mock.patch.dict(os.environ, {}, clear=True), self.settings(NFSE_CERT_KEY=""):
            with self.assertRaises(secrets.CertificateNotConfigured):
                secrets.CertificateManager().get_active_certificate()

    def test_decrypts_and_caches(self) -> None:
        record = self._certificate()
        manager = secrets.CertificateManager()

        with mock.patch.dict(os.environ, {"NFSE_CERT_KEY": self.key}), mock.patch(
            "nfse.sefin.secrets._load_encrypted_file",
            wraps=secrets._load_encrypted_file,
        ) as load_mock:
            first = manager.get_active_certificate()
            second = manager.get_active_certificate()

        self.assertIs(first, second)
        self.assertEqual(first.certificate_bytes, b"PKCS12-DATA")
        self.assertEqual(first.password, "senha")
        self.assertEqual(first.fingerprint, "ab" * 32)
        load_mock.assert_called_once_with(self.path)
        record.refresh_from_db()
        self.assertEqual(record.usage_count, 2)
        self.assertIsNotNone(record.last_used_at)

    def test_wrong_key(self) -> None:
        self._certificate()
        other_key = Fernet.generate_key().decode("ascii")
        with mock.patch.dict(os.environ, {"NFSE_CERT_KEY": other_key}):
            with self.assertRaises(CertificateError) as ctx:
                secrets.CertificateManager().get_active_certificate()
        self.assertEqual(ctx.exception.code, "certificate_unreadable")

    def test_missing_file(self) -> None:
        self._certificate(storage_path=os.path.join(self.tmpdir.name, "missing.enc"))
        with mock.patch.dict(os.environ, {"NFSE_CERT_KEY": self.key}):
            with self.assertRaises(CertificateError):
                secrets.CertificateManager().get_active_certificate()
