"""Orchestrator for NFS-e emission: generate, validate, sign, submit, persist."""

from __future__ import annotations

import datetime as dt
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from nfse.models import Emission

from .client import SefinClient, build_client
from .errors import (
    AlreadyEmittedError,
    CancellationError,
    CertificateError,
    EmissionInProgressError,
    EmissionNotFoundError,
    GenerationError,
    NFSeError,
    SigningError,
    SubmissionError,
    ValidationError,
)
from .orders import OrderStore
from .secrets import CertificateManager, CertificateSecrets
from .settings import SettingsProvider
from .signer import DigitalSigner
from .validator import ValidationReport, XsdValidator
from .xml_builder import DpsGenerator

logger = logging.getLogger(__name__)

MIN_CANCELLATION_REASON = 15


class EmissionOutcome(str, enum.Enum):
    EMITTED = "emitted"
    ALREADY_EMITTED = "already_emitted"
    FAILED = "failed"


@dataclass(frozen=True)
class EmissionResult:
    order_id: str
    emission_id: int
    access_key: str
    protocol: str
    dps_number: int
    dps_identifier: str
    emitted_at: dt.datetime
    report: Optional[ValidationReport] = None
    replaced_emission_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "emission_id": self.emission_id,
            "access_key": self.access_key,
            "protocol": self.protocol,
            "dps_number": self.dps_number,
            "dps_identifier": self.dps_identifier,
            "emitted_at": self.emitted_at.isoformat(),
            "replaced_emission_id": self.replaced_emission_id,
        }


@dataclass(frozen=True)
class BatchItemResult:
    order_id: str
    outcome: EmissionOutcome
    result: Optional[EmissionResult] = None
    access_key: Optional[str] = None
    error_code: str = ""
    error_message: str = ""


@dataclass
class BatchResult:
    items: list[BatchItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    def _count(self, outcome: EmissionOutcome) -> int:
        return sum(1 for item in self.items if item.outcome is outcome)

    @property
    def successful(self) -> int:
        return self._count(EmissionOutcome.EMITTED)

    @property
    def skipped(self) -> int:
        return self._count(EmissionOutcome.ALREADY_EMITTED)

    @property
    def failed(self) -> int:
        return self._count(EmissionOutcome.FAILED)


@dataclass(frozen=True)
class CancelResult:
    order_id: str
    access_key: str
    cancelled_at: dt.datetime
    response: dict


@dataclass(frozen=True)
class StatusResult:
    order_id: str
    local_status: str
    access_key: Optional[str]
    emission_date: Optional[dt.datetime]
    remote_status: Optional[str] = None
    remote_error: str = ""
    error_message: str = ""
    data: dict = field(default_factory=dict)


class EmissionService:
    """Single place where an order becomes an NFS-e.

    Every collaborator is injected; omitted ones are built from
    ``settings`` so the Django admin and the management command can use
    the defaults while tests pass fakes.
    """

    def __init__(
        self,
        *,
        settings: SettingsProvider,
        order_store: OrderStore,
        generator: Optional[DpsGenerator] = None,
        signer: Optional[DigitalSigner] = None,
        certificates: Optional[CertificateManager] = None,
        client: Optional[SefinClient] = None,
        validator: Optional[XsdValidator] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._settings = settings
        self._order_store = order_store
        self._validator = validator or XsdValidator()
        self._generator = generator or DpsGenerator(settings, validator=self._validator)
        self._signer = signer or DigitalSigner()
        self._certificates = certificates or CertificateManager()
        self._client = client
        self._clock = clock or timezone.now

    @property
    def client(self) -> SefinClient:
        if self._client is None:
            self._client = build_client(self._settings)
        return self._client

    @property
    def order_store(self) -> OrderStore:
        return self._order_store

    # Emission ------------------------------------------------------------------------

    def process_emission(self, order_id: object, force_reemit: bool = False) -> EmissionResult:
        """Emit the NFS-e for ``order_id``.

        Raises :class:`AlreadyEmittedError` when the order already has a
        successful emission and ``force_reemit`` is false. Any other
        failure is persisted on the emission row and re-raised.
        """

        order_id = str(order_id)
        emission, certificate, certificate_error = self._begin(order_id, force_reemit)

        try:
            if certificate_error is not None:
                raise SigningError(str(certificate_error), code=certificate_error.code) from certificate_error

            order = self._order_store.get_order(order_id)
            if order is None:
                raise GenerationError(f"Pedido {order_id} não encontrado", code="order_not_found")

            document, report = self._generator.generate(order)
            emission.dps_number = document.number
            emission.dps_identifier = document.id
            emission.xml_payload = document.xml
            emission.validation_report = report.as_dict()
            if not report.valid:
                raise ValidationError(
                    f"DPS não conforme ao schema ({len(report.errors)} erro(s)): "
                    + "; ".join(report.error_messages[:3]),
                    report=report,
                )

            signed = self._signer.sign(document.xml, certificate)
            emission.signed_xml = signed.xml
            emission.certificate_fingerprint = signed.certificate_fingerprint

            response = self.client.submit(signed.xml)
        except Exception as exc:
            self._record_failure(emission, exc)
            raise

        now = self._clock()
        replaced_id = None
        with transaction.atomic():
            if force_reemit:
                previous = (
                    Emission.objects.select_for_update()
                    .filter(order_id=order_id, status=Emission.Status.SUCCESS)
                    .exclude(pk=emission.pk)
                )
                for old in previous:
                    old.status = Emission.Status.REPLACED
                    old.save(update_fields=["status", "updated_at"])
                    replaced_id = old.pk
            emission.status = Emission.Status.SUCCESS
            emission.access_key = response.access_key
            emission.protocol = response.protocol
            emission.response_payload = dict(response.data)
            emission.emission_date = now
            emission.error_code = ""
            emission.error_message = ""
            emission.save()

        logger.info(
            "NFS-e: pedido %s emitido (chave %s, DPS %s)",
            order_id,
            response.access_key,
            emission.dps_number,
        )
        self._note(
            order_id,
            f"NFS-e emitida com sucesso. Chave de acesso: {response.access_key}. DPS nº {emission.dps_number}.",
        )
        return EmissionResult(
            order_id=order_id,
            emission_id=emission.pk,
            access_key=response.access_key,
            protocol=response.protocol,
            dps_number=emission.dps_number,
            dps_identifier=emission.dps_identifier,
            emitted_at=now,
            report=report,
            replaced_emission_id=replaced_id,
        )

    def process_batch_emission(self, order_ids: Iterable[object], force_reemit: bool = False) -> BatchResult:
        batch = BatchResult()
        for raw_id in order_ids:
            order_id = str(raw_id)
            try:
                result = self.process_emission(order_id, force_reemit=force_reemit)
            except AlreadyEmittedError as exc:
                batch.items.append(
                    BatchItemResult(order_id, EmissionOutcome.ALREADY_EMITTED, access_key=exc.access_key)
                )
            except NFSeError as exc:
                batch.items.append(
                    BatchItemResult(order_id, EmissionOutcome.FAILED, error_code=exc.code, error_message=str(exc))
                )
            except Exception as exc:
                logger.exception("NFS-e: erro inesperado no lote para o pedido %s", order_id)
                batch.items.append(
                    BatchItemResult(order_id, EmissionOutcome.FAILED, error_code="unexpected_error", error_message=str(exc))
                )
            else:
                batch.items.append(
                    BatchItemResult(order_id, EmissionOutcome.EMITTED, result=result, access_key=result.access_key)
                )
        logger.info(
            "NFS-e: lote processado (%d emitidos, %d já emitidos, %d falhas)",
            batch.successful,
            batch.skipped,
            batch.failed,
        )
        return batch

    def _begin(
        self, order_id: str, force_reemit: bool
    ) -> tuple[Emission, Optional[CertificateSecrets], Optional[CertificateError]]:
        """Claim the order under a row lock and mark an emission row as processing."""

        certificate = None
        certificate_error = None
        try:
            with transaction.atomic():
                rows = list(
                    Emission.objects.select_for_update()
                    .filter(order_id=order_id)
                    .order_by("-created_at", "-pk")
                )
                success = next((row for row in rows if row.status == Emission.Status.SUCCESS), None)
                if success is not None and not force_reemit:
                    raise AlreadyEmittedError(order_id, success.access_key)

                running = next((row for row in rows if row.status == Emission.Status.PROCESSING), None)
                if running is not None and not self._is_stale(running):
                    raise EmissionInProgressError(f"Emissão do pedido {order_id} já está em andamento")
                if running is not None:
                    logger.warning("NFS-e: retomando emissão travada do pedido %s (id %s)", order_id, running.pk)

                try:
                    certificate = self._certificates.get_active_certificate()
                except CertificateError as exc:
                    certificate_error = exc

                open_statuses = (Emission.Status.PENDING, Emission.Status.ERROR, Emission.Status.PROCESSING)
                emission = running or next((row for row in rows if row.status in open_statuses), None)
                if emission is None:
                    emission = Emission(order_id=order_id)
                emission.status = Emission.Status.PROCESSING
                emission.attempts += 1
                emission.last_attempt_at = self._clock()
                emission.error_code = ""
                emission.error_message = ""
                emission.save()
        except IntegrityError as exc:
            raise EmissionInProgressError(f"Emissão do pedido {order_id} já está em andamento") from exc
        return emission, certificate, certificate_error

    def _is_stale(self, emission: Emission) -> bool:
        threshold = dt.timedelta(seconds=self._settings.queue_policy().stuck_threshold_seconds)
        started = emission.last_attempt_at or emission.updated_at
        return started is not None and self._clock() - started >= threshold

    def _record_failure(self, emission: Emission, exc: Exception) -> None:
        code = getattr(exc, "code", "unexpected_error")
        emission.status = Emission.Status.ERROR
        emission.error_code = code
        emission.error_message = str(exc)
        if isinstance(exc, SubmissionError) and exc.response:
            emission.response_payload = dict(exc.response)
        if isinstance(exc, ValidationError) and exc.report is not None:
            emission.validation_report = exc.report.as_dict()
        emission.save()

        if isinstance(exc, NFSeError):
            logger.error("NFS-e: emissão do pedido %s falhou [%s]: %s", emission.order_id, code, exc)
        else:
            logger.exception("NFS-e: erro inesperado na emissão do pedido %s", emission.order_id)
        self._note(emission.order_id, f"Falha na emissão da NFS-e ({code}): {exc}")

    def _note(self, order_id: str, note: str) -> None:
        try:
            self._order_store.add_note(order_id, note)
        except Exception:
            logger.exception("NFS-e: não foi possível registrar nota no pedido %s", order_id)

    # Cancellation and lookups ---------------------------------------------------------

    def cancel_nfse(self, order_id: object, reason: str) -> CancelResult:
        order_id = str(order_id)
        reason = (reason or "").strip()
        if len(reason) < MIN_CANCELLATION_REASON:
            raise CancellationError(
                f"A justificativa do cancelamento deve ter ao menos {MIN_CANCELLATION_REASON} caracteres",
                code="invalid_reason",
            )

        with transaction.atomic():
            emission = (
                Emission.objects.select_for_update()
                .filter(order_id=order_id, status=Emission.Status.SUCCESS)
                .first()
            )
            if emission is None:
                raise CancellationError(f"O pedido {order_id} não possui NFS-e emitida", code="not_emitted")
            if not emission.access_key:
                raise CancellationError(
                    f"A NFS-e do pedido {order_id} não possui chave de acesso",
                    code="missing_access_key",
                )

            try:
                response = self.client.cancel(emission.access_key, reason)
            except SubmissionError as exc:
                raise CancellationError(
                    f"Falha ao cancelar a NFS-e: {exc}",
                    code=exc.code,
                    retryable=exc.retryable,
                ) from exc

            now = self._clock()
            emission.status = Emission.Status.CANCELLED
            emission.cancellation_reason = reason
            emission.cancelled_at = now
            emission.response_payload = {**(emission.response_payload or {}), "cancelamento": dict(response)}
            emission.save()

        logger.info("NFS-e: nota %s do pedido %s cancelada", emission.access_key, order_id)
        self._note(order_id, f"NFS-e cancelada. Motivo: {reason}")
        return CancelResult(
            order_id=order_id,
            access_key=emission.access_key,
            cancelled_at=now,
            response=dict(response),
        )

    def get_emission(self, order_id: object) -> Optional[Emission]:
        """The successful emission of the order, else its latest attempt."""

        emissions = Emission.objects.filter(order_id=str(order_id)).order_by("-created_at", "-pk")
        return emissions.filter(status=Emission.Status.SUCCESS).first() or emissions.first()

    def query_status(
        self,
        order_id: Optional[object] = None,
        access_key: Optional[str] = None,
        *,
        refresh: bool = True,
    ) -> StatusResult:
        if order_id is None and not access_key:
            raise ValueError("Informe order_id ou access_key")

        if access_key:
            emission = Emission.objects.filter(access_key=access_key).order_by("-created_at").first()
        else:
            emission = self.get_emission(order_id)
        if emission is None:
            raise EmissionNotFoundError(f"Nenhuma emissão encontrada para {access_key or order_id}")

        remote_status = None
        remote_error = ""
        data: dict = {}
        if refresh and emission.access_key:
            try:
                remote = self.client.query_status(emission.access_key)
            except SubmissionError as exc:
                logger.warning("NFS-e: consulta da nota %s falhou: %s", emission.access_key, exc)
                remote_error = str(exc)
            else:
                remote_status = remote.status
                data = dict(remote.data)

        return StatusResult(
            order_id=emission.order_id,
            local_status=emission.status,
            access_key=emission.access_key,
            emission_date=emission.emission_date,
            remote_status=remote_status,
            remote_error=remote_error,
            error_message=emission.error_message,
            data=data,
        )

    def download_xml(self, order_id: object) -> str:
        emission = (
            Emission.objects.filter(order_id=str(order_id), status=Emission.Status.SUCCESS)
            .exclude(signed_xml="")
            .first()
        )
        if emission is None:
            raise EmissionNotFoundError(f"O pedido {order_id} não possui XML de NFS-e emitida")
        return emission.signed_xml

    # Reporting -----------------------------------------------------------------------

    def get_statistics(self, days: int = 30) -> dict[str, Any]:
        since = self._clock() - dt.timedelta(days=days)
        emissions = Emission.objects.filter(created_at__gte=since)
        by_status = {row["status"]: row["total"] for row in emissions.values("status").annotate(total=Count("id"))}
        total = sum(by_status.values())
        success = by_status.get(Emission.Status.SUCCESS, 0)
        attempts = emissions.aggregate(total=Sum("attempts"))["total"] or 0
        last = (
            Emission.objects.filter(status=Emission.Status.SUCCESS)
            .order_by("-emission_date")
            .values_list("emission_date", flat=True)
            .first()
        )
        return {
            "period_days": days,
            "total": total,
            "by_status": {status: by_status.get(status, 0) for status in Emission.Status.values},
            "success_rate": round(success * 100 / total, 1) if total else 0.0,
            "average_attempts": round(attempts / total, 2) if total else 0.0,
            "last_emission": last,
        }

    def validate_emission_prerequisites(self, order_id: object) -> dict[str, Any]:
        """Dry check of everything :meth:`process_emission` needs, without side effects."""

        order_id = str(order_id)
        problems = list(self._settings.configuration_problems())

        try:
            record = self._certificates.get_active_record()
        except CertificateError as exc:
            problems.append(str(exc))
        else:
            if not record.is_valid_at(self._clock()):
                problems.append(f"Certificado {record.name} fora do período de validade")

        if Emission.objects.filter(order_id=order_id, status=Emission.Status.SUCCESS).exists():
            problems.append(f"O pedido {order_id} já possui NFS-e emitida")

        order = self._order_store.get_order(order_id)
        if order is None:
            problems.append(f"Pedido {order_id} não encontrado")
        else:
            try:
                self._generator.build_payer(order)
            except GenerationError as exc:
                problems.append(str(exc))
            if order.total <= 0:
                problems.append("O valor do pedido deve ser maior que zero")

        return {"order_id": order_id, "ready": not problems, "problems": problems}


__all__ = [
    "BatchItemResult",
    "BatchResult",
    "CancelResult",
    "EmissionOutcome",
    "EmissionResult",
    "EmissionService",
    "StatusResult",
]
