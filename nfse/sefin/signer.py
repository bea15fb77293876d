"""Sign DPS documents with the merchant's A1 certificate (XMLDSig)."""

from __future__ import annotations

import base64
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from django.utils import timezone
from lxml import etree
from signxml import XMLSigner, XMLVerifier, methods
from signxml.algorithms import CanonicalizationMethod, DigestAlgorithm, SignatureMethod

from .errors import SigningError
from .secrets import CertificateSecrets
from .validator import DSIG_NAMESPACE, NFSE_NAMESPACE

logger = logging.getLogger(__name__)

XmlInput = Union[str, bytes]


@dataclass(frozen=True)
class CertificateBundle:
    """PKCS#12 contents unpacked for signing."""

    private_key: object
    certificate: x509.Certificate
    additional_certs: Optional[list[x509.Certificate]]
    alias: Optional[str]

    @property
    def fingerprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA256()).hex()


@dataclass(frozen=True)
class CertificateInfo:
    subject: str
    issuer: str
    serial_number: str
    valid_from: dt.datetime
    valid_to: dt.datetime
    fingerprint: str

    def is_valid_at(self, moment: dt.datetime) -> bool:
        return self.valid_from <= moment < self.valid_to


@dataclass(frozen=True)
class SignedDocument:
    xml: str
    canonical_xml: bytes
    reference_id: str
    signed_at: dt.datetime
    signature_timestamp: Optional[str]
    certificate_fingerprint: str
    certificate: CertificateInfo


def _certificate_info(certificate: x509.Certificate) -> CertificateInfo:
    return CertificateInfo(
        subject=certificate.subject.rfc4514_string(),
        issuer=certificate.issuer.rfc4514_string(),
        serial_number=format(certificate.serial_number, "x"),
        valid_from=certificate.not_valid_before_utc,
        valid_to=certificate.not_valid_after_utc,
        fingerprint=certificate.fingerprint(hashes.SHA256()).hex(),
    )


def load_certificate_bundle(secrets: CertificateSecrets) -> CertificateBundle:
    """Unpack PKCS#12 bytes, mapping failures to stable error codes."""

    data = secrets.certificate_bytes or b""
    if not data:
        raise SigningError("Arquivo do certificado vazio", code="certificate_unreadable")

    password = secrets.password.encode("utf-8") if secrets.password else None
    try:
        private_key, cert, additional = pkcs12.load_key_and_certificates(data, password)
    except ValueError as exc:
        # DER SEQUENCE tag: the container parsed far enough to reject the password.
        if data[:1] == b"\x30":
            raise SigningError(
                "Senha do certificado incorreta ou arquivo PKCS#12 corrompido",
                code="certificate_password_invalid",
            ) from exc
        raise SigningError("Certificado ilegível (não é PKCS#12)", code="certificate_unreadable") from exc
    except TypeError as exc:
        raise SigningError("Certificado ilegível", code="certificate_unreadable") from exc

    if cert is None or private_key is None:
        raise SigningError(
            "O certificado PKCS#12 não contém chave privada ou certificado",
            code="certificate_unreadable",
        )

    return CertificateBundle(
        private_key=private_key,
        certificate=cert,
        additional_certs=list(additional or []) or None,
        alias=secrets.alias,
    )


def check_certificate_validity(certificate: x509.Certificate, now: dt.datetime) -> None:
    if now >= certificate.not_valid_after_utc:
        raise SigningError(
            f"Certificado expirado em {certificate.not_valid_after_utc:%d/%m/%Y}; cadastre um certificado válido",
            code="certificate_expired",
        )
    if now < certificate.not_valid_before_utc:
        raise SigningError(
            f"Certificado válido somente a partir de {certificate.not_valid_before_utc:%d/%m/%Y}",
            code="certificate_not_yet_valid",
        )


def _as_bytes(xml: XmlInput) -> bytes:
    return xml if isinstance(xml, bytes) else xml.encode("utf-8")


def _parse(xml: XmlInput, *, strip_blank: bool = True) -> etree._Element:
    try:
        parser = etree.XMLParser(remove_blank_text=strip_blank, no_network=True, resolve_entities=False)
        return etree.fromstring(_as_bytes(xml), parser=parser)
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise SigningError("XML inválido para assinatura", code="invalid_xml") from exc


def _signature(root: etree._Element) -> Optional[etree._Element]:
    return root.find(f".//{{{DSIG_NAMESPACE}}}Signature")


class DigitalSigner:
    """Produce enveloped XMLDSig signatures over ``infDPS``."""

    def __init__(self, *, clock: Optional[Callable[[], dt.datetime]] = None) -> None:
        self._clock = clock or timezone.now

    def sign(self, xml: XmlInput, certificate: CertificateSecrets) -> SignedDocument:
        bundle = load_certificate_bundle(certificate)
        now = self._clock()
        check_certificate_validity(bundle.certificate, now)

        root = _parse(xml)
        if etree.QName(root).namespace != NFSE_NAMESPACE:
            raise SigningError("Namespace da DPS ausente ou incorreto", code="invalid_xml")
        if _signature(root) is not None:
            raise SigningError("O documento já está assinado", code="invalid_xml")
        inf = root.find(f"{{{NFSE_NAMESPACE}}}infDPS")
        if inf is None or not inf.get("Id"):
            raise SigningError("Elemento infDPS com atributo Id não encontrado", code="invalid_xml")
        reference_id = inf.get("Id")

        canonical = etree.tostring(root, method="c14n", exclusive=True)
        canonical_root = _parse(canonical)

        try:
            key_bytes = bundle.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            cert_bytes = bundle.certificate.public_bytes(serialization.Encoding.PEM)
        except (ValueError, TypeError) as exc:
            raise SigningError("Não foi possível serializar a chave do certificado", code="certificate_unreadable") from exc

        signer = XMLSigner(
            method=methods.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        )
        # The national API expects an unprefixed Signature element.
        signer.namespaces = {None: DSIG_NAMESPACE}

        try:
            signed_root = signer.sign(
                canonical_root,
                key=key_bytes,
                cert=cert_bytes,
                reference_uri=f"#{reference_id}",
            )
        except Exception as exc:  # pragma: no cover - signxml raises several unrelated types
            raise SigningError(f"Erro ao assinar a DPS: {exc}", code="signature_failed") from exc

        signed_xml = etree.tostring(signed_root, encoding="UTF-8", xml_declaration=True).decode("utf-8")
        info = _certificate_info(bundle.certificate)
        logger.info("NFS-e: DPS %s assinada com certificado %s", reference_id, info.fingerprint[:16])

        return SignedDocument(
            xml=signed_xml,
            canonical_xml=canonical,
            reference_id=reference_id,
            signed_at=now,
            signature_timestamp=self.get_signature_timestamp(signed_xml),
            certificate_fingerprint=info.fingerprint,
            certificate=info,
        )

    # Read-only helpers ---------------------------------------------------------------

    def extract_certificate_info(self, signed_xml: XmlInput) -> Optional[CertificateInfo]:
        """Certificate metadata embedded in ``X509Certificate``, or ``None``."""

        root = _parse(signed_xml)
        node = root.find(f".//{{{DSIG_NAMESPACE}}}X509Certificate")
        if node is None or not (node.text or "").strip():
            return None
        try:
            der = base64.b64decode("".join(node.text.split()))
            return _certificate_info(x509.load_der_x509_certificate(der))
        except ValueError:
            logger.warning("NFS-e: X509Certificate ilegível no XML assinado")
            return None

    def get_signature_timestamp(self, signed_xml: XmlInput) -> Optional[str]:
        """The signed ``dhEmi`` of ``infDPS`` (covered by the digest)."""

        root = _parse(signed_xml)
        if _signature(root) is None:
            return None
        node = root.find(f"{{{NFSE_NAMESPACE}}}infDPS/{{{NFSE_NAMESPACE}}}dhEmi")
        return node.text.strip() if node is not None and node.text else None

    def is_signed(self, xml: XmlInput) -> bool:
        try:
            return _signature(_parse(xml)) is not None
        except SigningError:
            return False

    def verify(self, signed_xml: XmlInput, *, certificate_pem: Optional[bytes] = None) -> bool:
        """Check the signature against the embedded (or given) certificate."""

        root = _parse(signed_xml, strip_blank=False)
        if certificate_pem is None:
            info_node = root.find(f".//{{{DSIG_NAMESPACE}}}X509Certificate")
            if info_node is None:
                return False
            der = base64.b64decode("".join((info_node.text or "").split()))
            certificate_pem = x509.load_der_x509_certificate(der).public_bytes(serialization.Encoding.PEM)
        try:
            XMLVerifier().verify(root, x509_cert=certificate_pem)
        except Exception as exc:  # pragma: no cover - signxml raises InvalidSignature and friends
            logger.warning("NFS-e: assinatura inválida: %s", exc)
            return False
        return True


__all__ = [
    "CertificateBundle",
    "CertificateInfo",
    "DigitalSigner",
    "SignedDocument",
    "check_certificate_validity",
    "load_certificate_bundle",
]
