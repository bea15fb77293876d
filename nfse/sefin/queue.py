"""Durable emission queue backed by :class:`nfse.models.QueueItem`."""

from __future__ import annotations

import datetime as dt
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q
from django.utils import timezone

from nfse.models import QueueItem

from .errors import AlreadyEmittedError, DuplicateQueueItemError, NFSeError
from .service import BatchItemResult, EmissionOutcome, EmissionService
from .settings import SettingsProvider

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5

# Health thresholds
BACKLOG_WARNING = 100
BACKLOG_CRITICAL = 500
FAILURE_RATE_WARNING = 10.0
FAILURE_RATE_CRITICAL = 25.0


def _worker_name() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _stuck(cutoff: dt.datetime):
    """Claims older than ``cutoff``; a claim with no start time ages by ``updated_at``."""

    return QueueItem.objects.filter(status=QueueItem.Status.PROCESSING).filter(
        Q(started_at__lt=cutoff) | Q(started_at__isnull=True, updated_at__lt=cutoff)
    )


@dataclass
class QueueRunResult:
    paused: bool = False
    skipped: int = 0
    items: list[BatchItemResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.items)

    @property
    def completed(self) -> int:
        return sum(1 for item in self.items if item.outcome is not EmissionOutcome.FAILED)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if item.outcome is EmissionOutcome.FAILED)


class QueueService:
    """Enqueue orders and drain them through the emission service.

    ``process_queue`` is safe to run from overlapping cron invocations:
    every item is claimed with a conditional update before it is
    processed.
    """

    def __init__(
        self,
        *,
        settings: SettingsProvider,
        emission_service: EmissionService,
        clock: Optional[Callable[[], dt.datetime]] = None,
        worker_name: Optional[str] = None,
    ) -> None:
        self._settings = settings
        self._emission = emission_service
        self._clock = clock or timezone.now
        self._worker = worker_name or _worker_name()

    # Enqueue -------------------------------------------------------------------------

    def add_to_queue(
        self,
        order_id: object,
        trigger_type: str = QueueItem.Trigger.MANUAL,
        delay_seconds: int = 0,
        priority: int = DEFAULT_PRIORITY,
        *,
        scheduled_at: Optional[dt.datetime] = None,
    ) -> int:
        order_id = str(order_id)
        priority = min(max(int(priority), MIN_PRIORITY), MAX_PRIORITY)
        if scheduled_at is None:
            scheduled_at = self._clock() + dt.timedelta(seconds=max(int(delay_seconds), 0))

        existing = QueueItem.objects.filter(order_id=order_id, status__in=QueueItem.UNRESOLVED).first()
        if existing is not None:
            raise DuplicateQueueItemError(order_id, existing.pk)

        try:
            with transaction.atomic():
                item = QueueItem.objects.create(
                    order_id=order_id,
                    trigger_type=trigger_type,
                    priority=priority,
                    scheduled_at=scheduled_at,
                )
        except IntegrityError as exc:
            raise DuplicateQueueItemError(order_id) from exc

        logger.info(
            "NFS-e: pedido %s enfileirado (gatilho %s, prioridade %d, agendado para %s)",
            order_id,
            trigger_type,
            priority,
            scheduled_at.isoformat(),
        )
        return item.pk

    # Drain ---------------------------------------------------------------------------

    def process_queue(self, limit: Optional[int] = None) -> QueueRunResult:
        policy = self._settings.queue_policy()
        if policy.paused:
            logger.info("NFS-e: fila pausada, nada processado")
            return QueueRunResult(paused=True)

        limit = policy.batch_size if limit is None else limit
        now = self._clock()
        due = list(
            QueueItem.objects.filter(status=QueueItem.Status.PENDING, scheduled_at__lte=now)
            .order_by("priority", "scheduled_at", "pk")[:limit]
        )

        run = QueueRunResult()
        for item in due:
            if not self._claim(item):
                run.skipped += 1
                continue
            run.items.append(self._process_item(item))

        if run.processed or run.skipped:
            logger.info(
                "NFS-e: fila processada (%d concluídos, %d falhas, %d já reivindicados)",
                run.completed,
                run.failed,
                run.skipped,
            )
        return run

    def _claim(self, item: QueueItem) -> bool:
        now = self._clock()
        claimed = QueueItem.objects.filter(pk=item.pk, status=QueueItem.Status.PENDING).update(
            status=QueueItem.Status.PROCESSING,
            started_at=now,
            processed_by=self._worker,
            attempts=F("attempts") + 1,
            updated_at=now,
        )
        if claimed:
            item.refresh_from_db()
        return bool(claimed)

    def _process_item(self, item: QueueItem) -> BatchItemResult:
        try:
            result = self._emission.process_emission(item.order_id)
        except AlreadyEmittedError as exc:
            self._complete(item, {"already_emitted": True, "access_key": exc.access_key})
            return BatchItemResult(item.order_id, EmissionOutcome.ALREADY_EMITTED, access_key=exc.access_key)
        except NFSeError as exc:
            self._fail(item, exc.code, str(exc), retryable=exc.retryable)
            return BatchItemResult(item.order_id, EmissionOutcome.FAILED, error_code=exc.code, error_message=str(exc))
        except Exception as exc:
            logger.exception("NFS-e: erro inesperado ao processar item %s da fila", item.pk)
            self._fail(item, "unexpected_error", str(exc), retryable=False)
            return BatchItemResult(
                item.order_id, EmissionOutcome.FAILED, error_code="unexpected_error", error_message=str(exc)
            )

        self._complete(item, result.as_dict())
        return BatchItemResult(item.order_id, EmissionOutcome.EMITTED, result=result, access_key=result.access_key)

    def _complete(self, item: QueueItem, data: dict) -> None:
        item.status = QueueItem.Status.COMPLETED
        item.completed_at = self._clock()
        item.result_data = data
        item.error_code = ""
        item.error_message = ""
        item.save()

    def _fail(self, item: QueueItem, code: str, message: str, *, retryable: bool) -> None:
        now = self._clock()
        item.status = QueueItem.Status.FAILED
        item.failed_at = now
        item.last_error_at = now
        item.error_code = code
        item.error_message = message
        item.result_data = {"retryable": retryable}
        item.save()
        logger.warning("NFS-e: item %s (pedido %s) falhou [%s]: %s", item.pk, item.order_id, code, message)

    # Recovery ------------------------------------------------------------------------

    def reset_stuck_items(self, threshold_seconds: Optional[int] = None) -> int:
        """Return items stuck in ``processing`` to ``pending``; attempts are kept."""

        if threshold_seconds is None:
            threshold_seconds = self._settings.queue_policy().stuck_threshold_seconds
        now = self._clock()
        cutoff = now - dt.timedelta(seconds=threshold_seconds)
        count = _stuck(cutoff).update(
            status=QueueItem.Status.PENDING,
            started_at=None,
            processed_by="",
            updated_at=now,
        )
        if count:
            logger.warning("NFS-e: %d item(ns) travado(s) devolvido(s) à fila", count)
        return count

    def retry_failed_items(self, limit: Optional[int] = None) -> int:
        """Re-queue failed items below the retry limit once their backoff elapsed."""

        policy = self._settings.queue_policy()
        now = self._clock()
        candidates = QueueItem.objects.filter(
            status=QueueItem.Status.FAILED,
            attempts__lt=policy.retry_limit,
        ).order_by("priority", "failed_at", "pk")

        retried = 0
        for item in candidates:
            if limit is not None and retried >= limit:
                break
            failed_at = item.failed_at or item.updated_at
            if failed_at + policy.backoff_for(item.attempts - 1) > now:
                continue
            if QueueItem.objects.filter(order_id=item.order_id, status__in=QueueItem.UNRESOLVED).exists():
                continue
            updated = QueueItem.objects.filter(pk=item.pk, status=QueueItem.Status.FAILED).update(
                status=QueueItem.Status.PENDING,
                scheduled_at=now,
                updated_at=now,
            )
            retried += updated
        if retried:
            logger.info("NFS-e: %d item(ns) com falha reenfileirado(s)", retried)
        return retried

    def get_items_requiring_attention(self) -> dict[str, list[QueueItem]]:
        """Items an operator must look at: exhausted retries and stuck claims."""

        policy = self._settings.queue_policy()
        stuck_cutoff = self._clock() - dt.timedelta(seconds=policy.stuck_threshold_seconds)
        return {
            "exhausted": list(
                QueueItem.objects.filter(
                    status=QueueItem.Status.FAILED,
                    attempts__gte=policy.retry_limit,
                ).order_by("-failed_at")
            ),
            "stuck": list(
                _stuck(stuck_cutoff).order_by("started_at")
            ),
        }

    # Reporting -----------------------------------------------------------------------

    def counts(self) -> dict[str, int]:
        rows = QueueItem.objects.values("status").annotate(total=Count("id"))
        totals = {row["status"]: row["total"] for row in rows}
        return {status: totals.get(status, 0) for status in QueueItem.Status.values}

    def get_statistics(self, period_hours: int = 24) -> dict[str, Any]:
        now = self._clock()
        since = now - dt.timedelta(hours=period_hours)
        recent = QueueItem.objects.filter(updated_at__gte=since)
        completed = recent.filter(status=QueueItem.Status.COMPLETED).count()
        failed = recent.filter(status=QueueItem.Status.FAILED).count()
        finished = completed + failed

        durations = [
            (item.completed_at - item.started_at).total_seconds()
            for item in recent.filter(
                status=QueueItem.Status.COMPLETED,
                started_at__isnull=False,
                completed_at__isnull=False,
            ).only("started_at", "completed_at")
        ]
        oldest = (
            QueueItem.objects.filter(status=QueueItem.Status.PENDING)
            .order_by("scheduled_at")
            .values_list("scheduled_at", flat=True)
            .first()
        )
        return {
            "period_hours": period_hours,
            "counts": self.counts(),
            "completed": completed,
            "failed": failed,
            "failure_rate": round(failed * 100 / finished, 1) if finished else 0.0,
            "average_processing_seconds": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "oldest_pending": oldest,
            "due_now": QueueItem.objects.filter(status=QueueItem.Status.PENDING, scheduled_at__lte=now).count(),
            "paused": self.is_paused(),
        }

    def get_queue_health(self) -> dict[str, Any]:
        stats = self.get_statistics(24)
        attention = self.get_items_requiring_attention()
        backlog = stats["counts"][QueueItem.Status.PENDING]
        stuck = len(attention["stuck"])
        exhausted = len(attention["exhausted"])
        failure_rate = stats["failure_rate"]

        status = "healthy"
        issues: list[str] = []
        recommendations: list[str] = []

        def escalate(level: str) -> None:
            nonlocal status
            if level == "critical" or status == "healthy":
                status = level

        if backlog > BACKLOG_CRITICAL:
            escalate("critical")
            issues.append(f"{backlog} itens pendentes na fila")
            recommendations.append("Verifique se o comando process_nfse_queue está agendado e executando")
        elif backlog > BACKLOG_WARNING:
            escalate("warning")
            issues.append(f"{backlog} itens pendentes na fila")
            recommendations.append("Aumente o tamanho do lote ou a frequência de processamento")

        if stuck:
            escalate("warning")
            issues.append(f"{stuck} item(ns) travado(s) em processamento")
            recommendations.append("Execute reset_stuck_items ou verifique processos interrompidos")

        if failure_rate >= FAILURE_RATE_CRITICAL:
            escalate("critical")
            issues.append(f"Taxa de falhas de {failure_rate}% nas últimas 24h")
            recommendations.append("Revise o certificado digital, a configuração do prestador e a disponibilidade da API")
        elif failure_rate >= FAILURE_RATE_WARNING:
            escalate("warning")
            issues.append(f"Taxa de falhas de {failure_rate}% nas últimas 24h")
            recommendations.append("Analise as mensagens de erro dos itens com falha")

        if exhausted:
            escalate("warning")
            issues.append(f"{exhausted} item(ns) esgotaram as tentativas e exigem intervenção manual")
            recommendations.append("Corrija os dados dos pedidos e reenfileire manualmente")

        if stats["paused"]:
            escalate("warning")
            issues.append("Fila pausada")
            recommendations.append("Retome a fila quando a manutenção terminar")

        return {
            "status": status,
            "issues": issues,
            "recommendations": recommendations,
            "backlog": backlog,
            "stuck": stuck,
            "exhausted": exhausted,
            "failure_rate": failure_rate,
            "checked_at": self._clock(),
        }

    # Operator controls ---------------------------------------------------------------

    def pause_queue(self) -> None:
        self._settings.update(fila_pausada=True)
        logger.info("NFS-e: fila pausada")

    def resume_queue(self) -> None:
        self._settings.update(fila_pausada=False)
        logger.info("NFS-e: fila retomada")

    def is_paused(self) -> bool:
        return self._settings.queue_policy().paused

    def cancel_item(self, item_id: int) -> bool:
        cancelled = QueueItem.objects.filter(pk=item_id, status=QueueItem.Status.PENDING).update(
            status=QueueItem.Status.CANCELLED,
            updated_at=self._clock(),
        )
        return bool(cancelled)

    def remove_from_queue(self, order_id: object) -> int:
        """Cancel every pending item of the order; processing items are left alone."""

        return QueueItem.objects.filter(order_id=str(order_id), status=QueueItem.Status.PENDING).update(
            status=QueueItem.Status.CANCELLED,
            updated_at=self._clock(),
        )

    def clear_completed_items(self, older_than_days: Optional[int] = None) -> int:
        if older_than_days is None:
            older_than_days = self._settings.queue_policy().retention_days
        cutoff = self._clock() - dt.timedelta(days=older_than_days)
        deleted, _ = QueueItem.objects.filter(
            status__in=(QueueItem.Status.COMPLETED, QueueItem.Status.CANCELLED),
            updated_at__lt=cutoff,
        ).delete()
        if deleted:
            logger.info("NFS-e: %d item(ns) antigo(s) removido(s) da fila", deleted)
        return deleted

    def get_queue_items(self, status: Optional[str] = None, limit: int = 50) -> list[QueueItem]:
        items = QueueItem.objects.all()
        if status:
            items = items.filter(status=status)
        return list(items.order_by("priority", "scheduled_at", "pk")[:limit])

    def get_queue_items_by_order(self, order_id: object) -> list[QueueItem]:
        return list(QueueItem.objects.filter(order_id=str(order_id)).order_by("-created_at"))


__all__ = ["QueueRunResult", "QueueService"]
