from __future__ import annotations

import datetime as dt

from django.test import SimpleTestCase
from django.utils import timezone
from lxml import etree

from nfse.models import NFSeConfig
from nfse.sefin.errors import SigningError
from nfse.sefin.secrets import CertificateSecrets
from nfse.sefin.settings import SettingsProvider
from nfse.sefin.signer import DigitalSigner, load_certificate_bundle
from nfse.sefin.validator import DSIG_NAMESPACE, XsdValidator
from nfse.sefin.xml_builder import DpsGenerator

from .factories import config_values, make_order, make_pkcs12, make_secrets

ISSUED_AT = dt.datetime(2024, 6, 7, 13, 0, tzinfo=dt.timezone.utc)


def _dps_xml() -> str:
    config = NFSeConfig(**config_values())
    generator = DpsGenerator(SettingsProvider(loader=lambda: config), clock=lambda: ISSUED_AT)
    document, _ = generator.generate(make_order(), number=42)
    return document.xml


class CertificateBundleTests(SimpleTestCase):
    def test_loads_private_key_and_certificate(self) -> None:
        bundle = load_certificate_bundle(make_secrets())
        self.assertIsNotNone(bundle.private_key)
        self.assertEqual(len(bundle.fingerprint), 64)

    def test_wrong_password(self) -> None:
        secrets = CertificateSecrets(certificate_bytes=make_pkcs12(), password="errada")
        with self.assertRaises(SigningError) as ctx:
            load_certificate_bundle(secrets)
        self.assertEqual(ctx.exception.code, "certificate_password_invalid")

    def test_unreadable_file(self) -> None:
        for data in (b"", b"not a pkcs12 file"):
            with self.subTest(data=data), self.assertRaises(SigningError) as ctx:
                load_certificate_bundle(CertificateSecrets(certificate_bytes=data, password="x"))
            self.assertEqual(ctx.exception.code, "certificate_unreadable")


class DigitalSignerTests(SimpleTestCase):
    def setUp(self) -> None:
        self.signer = DigitalSigner()
        self.xml = _dps_xml()
        super().setUp()

    def test_signs_infdps_reference(self) -> None:
        signed = self.signer.sign(self.xml, make_secrets())
        root = etree.fromstring(signed.xml.encode("utf-8"))

        reference = root.find(f".//{{{DSIG_NAMESPACE}}}Reference")
        self.assertEqual(reference.get("URI"), "#DPS355030821122233300018100001000000000000042")
        self.assertEqual(signed.reference_id, "DPS355030821122233300018100001000000000000042")
        method = root.find(f".//{{{DSIG_NAMESPACE}}}SignatureMethod")
        self.assertEqual(method.get("Algorithm"), "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256")
        self.assertIsNotNone(root.find(f"{{{DSIG_NAMESPACE}}}Signature"))
        self.assertTrue(self.signer.is_signed(signed.xml))
        self.assertEqual(signed.signature_timestamp, "2024-06-07T10:00:00-03:00")

    def test_signed_document_verifies_and_matches_signed_schema(self) -> None:
        signed = self.signer.sign(self.xml, make_secrets())
        self.assertTrue(self.signer.verify(signed.xml))
        report = XsdValidator().validate_against_schema(signed.xml, "dps_assinada")
        self.assertTrue(report.valid, report.error_messages)

    def test_tampered_document_fails_verification(self) -> None:
        signed = self.signer.sign(self.xml, make_secrets())
        tampered = signed.xml.replace("<vLiq>950.00</vLiq>", "<vLiq>990.00</vLiq>")
        self.assertFalse(self.signer.verify(tampered))

    def test_extracts_certificate_info(self) -> None:
        signed = self.signer.sign(self.xml, make_secrets())
        info = self.signer.extract_certificate_info(signed.xml)
        self.assertIn("EMPRESA TESTE LTDA", info.subject)
        self.assertEqual(info.fingerprint, signed.certificate_fingerprint)
        self.assertTrue(info.is_valid_at(timezone.now()))

    def test_expired_certificate(self) -> None:
        now = timezone.now()
        secrets = make_secrets(not_before=now - dt.timedelta(days=400), not_after=now - dt.timedelta(days=1))
        with self.assertRaises(SigningError) as ctx:
            self.signer.sign(self.xml, secrets)
        self.assertEqual(ctx.exception.code, "certificate_expired")

    def test_not_yet_valid_certificate(self) -> None:
        now = timezone.now()
        secrets = make_secrets(not_before=now + dt.timedelta(days=1), not_after=now + dt.timedelta(days=30))
        with self.assertRaises(SigningError) as ctx:
            self.signer.sign(self.xml, secrets)
        self.assertEqual(ctx.exception.code, "certificate_not_yet_valid")

    def test_rejects_already_signed_and_invalid_xml(self) -> None:
        signed = self.signer.sign(self.xml, make_secrets())
        with self.assertRaises(SigningError):
            self.signer.sign(signed.xml, make_secrets())
        with self.assertRaises(SigningError) as ctx:
            self.signer.sign("<DPS>", make_secrets())
        self.assertEqual(ctx.exception.code, "invalid_xml")

    def test_unsigned_document_has_no_timestamp(self) -> None:
        self.assertIsNone(self.signer.get_signature_timestamp(self.xml))
        self.assertFalse(self.signer.is_signed(self.xml))
        self.assertIsNone(self.signer.extract_certificate_info(self.xml))
