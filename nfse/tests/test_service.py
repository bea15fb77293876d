from __future__ import annotations

import datetime as dt
from decimal import Decimal
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from nfse.models import Certificate, Emission, NFSeConfig
from nfse.sefin.client import SefinClient, StatusResponse, SubmissionResponse
from nfse.sefin.errors import (
    AlreadyEmittedError,
    CancellationError,
    EmissionInProgressError,
    EmissionNotFoundError,
    GenerationError,
    SigningError,
    SubmissionError,
    ValidationError,
)
from nfse.sefin.secrets import CertificateManager, CertificateNotConfigured
from nfse.sefin.service import EmissionOutcome, EmissionService
from nfse.sefin.settings import SettingsProvider
from nfse.sefin.signer import DigitalSigner

from .factories import InMemoryOrderStore, make_config, make_order, make_secrets


def _submission(key: str = "35503082112223330001810000000000000100000000") -> SubmissionResponse:
    return SubmissionResponse(access_key=key, protocol="PROT-1", status="autorizada", data={"chaveAcesso": key})


class EmissionServiceTestBase(TestCase):
    def setUp(self) -> None:
        make_config()
        self.store = InMemoryOrderStore(make_order("1001"), make_order("1002"))
        self.certificates = mock.Mock(spec=CertificateManager)
        self.certificates.get_active_certificate.return_value = make_secrets()
        self.client = mock.Mock(spec=SefinClient)
        self.client.submit.return_value = _submission()
        self.signer = mock.Mock(wraps=DigitalSigner())
        self.service = EmissionService(
            settings=SettingsProvider(),
            order_store=self.store,
            signer=self.signer,
            certificates=self.certificates,
            client=self.client,
        )
        super().setUp()


class ProcessEmissionTests(EmissionServiceTestBase):
    def test_emits_and_persists_audit_record(self) -> None:
        result = self.service.process_emission(1001)

        emission = Emission.objects.get(order_id="1001")
        self.assertEqual(emission.status, Emission.Status.SUCCESS)
        self.assertEqual(emission.access_key, result.access_key)
        self.assertEqual(emission.protocol, "PROT-1")
        self.assertEqual(emission.dps_number, 1)
        self.assertEqual(emission.attempts, 1)
        self.assertEqual(len(emission.dps_identifier), 45)
        self.assertIn("Signature", emission.signed_xml)
        self.assertEqual(len(emission.certificate_fingerprint), 64)
        self.assertTrue(emission.validation_report["valid"])
        self.assertEqual(NFSeConfig.objects.get().proximo_numero_dps, 2)
        self.assertIn("NFS-e emitida com sucesso", self.store.notes["1001"][0])

    def test_second_call_is_rejected_without_signing_again(self) -> None:
        self.service.process_emission("1001")

        with self.assertRaises(AlreadyEmittedError) as ctx:
            self.service.process_emission("1001")

        self.assertEqual(ctx.exception.access_key, _submission().access_key)
        self.assertEqual(self.signer.sign.call_count, 1)
        self.assertEqual(self.client.submit.call_count, 1)
        self.assertEqual(Emission.objects.filter(order_id="1001").count(), 1)

    def test_forced_reemission_replaces_previous_success(self) -> None:
        self.client.submit.side_effect = [_submission("KEY-A"), _submission("KEY-B")]
        first = self.service.process_emission("1001")

        second = self.service.process_emission("1001", force_reemit=True)

        self.assertEqual(second.replaced_emission_id, first.emission_id)
        self.assertEqual(second.dps_number, 2)
        self.assertEqual(Emission.objects.get(pk=first.emission_id).status, Emission.Status.REPLACED)
        self.assertEqual(Emission.objects.get(pk=second.emission_id).access_key, "KEY-B")

    def test_submission_failure_is_recorded_and_retry_reuses_row(self) -> None:
        self.client.submit.side_effect = SubmissionError("API fora do ar", code="server_error")

        with self.assertRaises(SubmissionError):
            self.service.process_emission("1001")

        emission = Emission.objects.get(order_id="1001")
        self.assertEqual(emission.status, Emission.Status.ERROR)
        self.assertEqual(emission.error_code, "server_error")
        self.assertEqual(emission.attempts, 1)
        self.assertIn("server_error", self.store.notes["1001"][0])

        self.client.submit.side_effect = None
        self.service.process_emission("1001")

        emission.refresh_from_db()
        self.assertEqual(emission.status, Emission.Status.SUCCESS)
        self.assertEqual(emission.attempts, 2)
        self.assertEqual(emission.error_code, "")

    def test_missing_certificate_becomes_signing_error(self) -> None:
        self.certificates.get_active_certificate.side_effect = CertificateNotConfigured("Nenhum certificado")

        with self.assertRaises(SigningError) as ctx:
            self.service.process_emission("1001")

        self.assertEqual(ctx.exception.code, "certificate_missing")
        self.assertEqual(Emission.objects.get(order_id="1001").error_code, "certificate_missing")
        self.client.submit.assert_not_called()

    def test_expired_certificate_is_recorded(self) -> None:
        now = timezone.now()
        self.certificates.get_active_certificate.return_value = make_secrets(
            not_before=now - dt.timedelta(days=400),
            not_after=now - dt.timedelta(days=1),
        )

        with self.assertRaises(SigningError):
            self.service.process_emission("1001")

        self.assertEqual(Emission.objects.get(order_id="1001").error_code, "certificate_expired")

    def test_invalid_document_blocks_submission(self) -> None:
        self.store.orders["1001"] = make_order("1001", total=Decimal("10.00"))

        with self.assertRaises(ValidationError):
            self.service.process_emission("1001")

        emission = Emission.objects.get(order_id="1001")
        self.assertEqual(emission.error_code, "schema_invalid")
        self.assertFalse(emission.validation_report["valid"])
        self.signer.sign.assert_not_called()
        self.client.submit.assert_not_called()

    def test_unknown_order(self) -> None:
        with self.assertRaises(GenerationError) as ctx:
            self.service.process_emission("404")
        self.assertEqual(ctx.exception.code, "order_not_found")
        self.assertEqual(NFSeConfig.objects.get().proximo_numero_dps, 1)

    def test_running_emission_blocks_concurrent_attempt(self) -> None:
        Emission.objects.create(order_id="1001", status=Emission.Status.PROCESSING, last_attempt_at=timezone.now())
        with self.assertRaises(EmissionInProgressError):
            self.service.process_emission("1001")
        self.client.submit.assert_not_called()

    def test_stale_processing_row_is_taken_over(self) -> None:
        stale = Emission.objects.create(
            order_id="1001",
            status=Emission.Status.PROCESSING,
            attempts=1,
            last_attempt_at=timezone.now() - dt.timedelta(hours=2),
        )
        self.service.process_emission("1001")
        stale.refresh_from_db()
        self.assertEqual(stale.status, Emission.Status.SUCCESS)
        self.assertEqual(stale.attempts, 2)


class BatchEmissionTests(EmissionServiceTestBase):
    def test_batch_reports_typed_outcomes(self) -> None:
        self.client.submit.side_effect = [_submission("KEY-A"), _submission("KEY-B")]
        self.service.process_emission("1001")

        batch = self.service.process_batch_emission(["1001", "1002", "404"])

        outcomes = {item.order_id: item.outcome for item in batch.items}
        self.assertEqual(
            outcomes,
            {
                "1001": EmissionOutcome.ALREADY_EMITTED,
                "1002": EmissionOutcome.EMITTED,
                "404": EmissionOutcome.FAILED,
            },
        )
        self.assertEqual((batch.total, batch.successful, batch.skipped, batch.failed), (3, 1, 1, 1))
        self.assertEqual(batch.items[2].error_code, "order_not_found")


class CancellationTests(EmissionServiceTestBase):
    def test_cancel_requires_reason(self) -> None:
        self.service.process_emission("1001")
        with self.assertRaises(CancellationError) as ctx:
            self.service.cancel_nfse("1001", "curto")
        self.assertEqual(ctx.exception.code, "invalid_reason")

    def test_cancel_requires_success(self) -> None:
        with self.assertRaises(CancellationError) as ctx:
            self.service.cancel_nfse("1001", "Serviço não foi prestado ao cliente")
        self.assertEqual(ctx.exception.code, "not_emitted")

    def test_cancel_success(self) -> None:
        self.client.cancel.return_value = {"evento": "registrado"}
        self.service.process_emission("1001")

        result = self.service.cancel_nfse("1001", "Serviço não foi prestado ao cliente")

        emission = Emission.objects.get(order_id="1001")
        self.assertEqual(emission.status, Emission.Status.CANCELLED)
        self.assertEqual(emission.cancellation_reason, "Serviço não foi prestado ao cliente")
        self.assertEqual(result.access_key, emission.access_key)
        self.client.cancel.assert_called_once_with(emission.access_key, "Serviço não foi prestado ao cliente")
        self.assertIn("cancelamento", emission.response_payload)

    def test_cancel_api_failure_keeps_success(self) -> None:
        self.client.cancel.side_effect = SubmissionError("prazo expirado", code="rejected", retryable=False)
        self.service.process_emission("1001")

        with self.assertRaises(CancellationError) as ctx:
            self.service.cancel_nfse("1001", "Serviço não foi prestado ao cliente")

        self.assertEqual(ctx.exception.code, "rejected")
        self.assertEqual(Emission.objects.get(order_id="1001").status, Emission.Status.SUCCESS)


class LookupTests(EmissionServiceTestBase):
    def test_query_status_refreshes_remote(self) -> None:
        self.service.process_emission("1001")
        key = _submission().access_key
        self.client.query_status.return_value = StatusResponse(access_key=key, status="autorizada", data={"ok": 1})

        status = self.service.query_status(order_id="1001")

        self.assertEqual(status.local_status, Emission.Status.SUCCESS)
        self.assertEqual(status.remote_status, "autorizada")
        self.assertEqual(self.service.query_status(access_key=key).order_id, "1001")

    def test_query_status_tolerates_remote_failure(self) -> None:
        self.service.process_emission("1001")
        self.client.query_status.side_effect = SubmissionError("timeout", code="timeout")
        status = self.service.query_status(order_id="1001")
        self.assertIsNone(status.remote_status)
        self.assertEqual(status.remote_error, "timeout")

    def test_not_found(self) -> None:
        with self.assertRaises(EmissionNotFoundError):
            self.service.query_status(order_id="404")
        with self.assertRaises(EmissionNotFoundError):
            self.service.download_xml("404")
        with self.assertRaises(ValueError):
            self.service.query_status()

    def test_download_xml_returns_signed_document(self) -> None:
        self.service.process_emission("1001")
        self.assertIn("<Signature", self.service.download_xml("1001"))
        self.assertEqual(self.service.get_emission("1001").status, Emission.Status.SUCCESS)

    def test_statistics(self) -> None:
        self.service.process_emission("1001")
        self.client.submit.side_effect = SubmissionError("fora", code="server_error")
        with self.assertRaises(SubmissionError):
            self.service.process_emission("1002")

        stats = self.service.get_statistics(days=7)

        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["by_status"][Emission.Status.SUCCESS], 1)
        self.assertEqual(stats["by_status"][Emission.Status.ERROR], 1)
        self.assertEqual(stats["success_rate"], 50.0)

    def test_prerequisites(self) -> None:
        self.certificates.get_active_record.return_value = Certificate(name="A1")
        self.assertEqual(self.service.validate_emission_prerequisites("1001")["problems"], [])

        self.certificates.get_active_record.side_effect = CertificateNotConfigured("Nenhum certificado digital ativo")
        result = self.service.validate_emission_prerequisites("404")
        self.assertFalse(result["ready"])
        self.assertIn("Nenhum certificado digital ativo", result["problems"])
        self.assertIn("Pedido 404 não encontrado", result["problems"])
