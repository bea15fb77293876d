"""Decide when orders are emitted automatically and drive the periodic cycle."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from django.utils import timezone

from nfse.models import QueueItem

from .errors import DuplicateQueueItemError
from .orders import OrderSnapshot, OrderStore
from .queue import QueueService
from .settings import AutomationPolicy, SettingsProvider

logger = logging.getLogger(__name__)

ALL_CUSTOMERS = "all"

# Order status transitions that fire an automation trigger.
STATUS_TRIGGERS = {
    "processing": QueueItem.Trigger.ORDER_PROCESSING,
    "completed": QueueItem.Trigger.ORDER_COMPLETED,
}

REASON_MESSAGES = {
    "automation_disabled": "Emissão automática desativada",
    "automation_paused": "Emissão automática pausada",
    "order_not_found": "Pedido não encontrado",
    "order_status_not_allowed": "Status do pedido não permitido para emissão automática",
    "below_minimum_total": "Valor do pedido abaixo do mínimo configurado",
    "payment_method_excluded": "Forma de pagamento excluída da emissão automática",
    "customer_type_not_allowed": "Tipo de cliente não habilitado para emissão automática",
    "outside_business_hours": "Fora do horário comercial",
    "no_business_hours_window": "Horário comercial configurado sem nenhuma janela de abertura",
}


@dataclass(frozen=True)
class ProcessingDecision:
    """Outcome of the automation checks.

    ``allowed`` is true when nothing blocks the order. Checks run in a
    fixed order and the first failure is the only reason recorded. Being
    outside business hours does not block it; it only sets
    ``defer_until``. A window that never opens blocks it.
    """

    allowed: bool
    reasons: tuple[str, ...] = ()
    defer_until: Optional[dt.datetime] = None

    @property
    def messages(self) -> list[str]:
        return [REASON_MESSAGES.get(reason, reason) for reason in self.reasons]


@dataclass
class CycleResult:
    reset: int = 0
    retried: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    purged: int = 0
    paused: bool = False
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "reset": self.reset,
            "retried": self.retried,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "purged": self.purged,
            "paused": self.paused,
            "errors": list(self.errors),
        }


class AutomationService:
    def __init__(
        self,
        *,
        settings: SettingsProvider,
        order_store: OrderStore,
        queue: QueueService,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._settings = settings
        self._order_store = order_store
        self._queue = queue
        self._clock = clock or timezone.now

    def should_process_order(self, order_id: object, *, order: Optional[OrderSnapshot] = None) -> ProcessingDecision:
        policy = self._settings.automation()
        if not policy.enabled:
            return ProcessingDecision(False, ("automation_disabled",))
        if policy.paused:
            return ProcessingDecision(False, ("automation_paused",))

        if order is None:
            order = self._order_store.get_order(str(order_id))
        if order is None:
            return ProcessingDecision(False, ("order_not_found",))

        reason = self._order_block(order, policy)
        if reason is not None:
            return ProcessingDecision(False, (reason,))

        hours = policy.business_hours
        now = self._clock()
        if not hours.is_open(now):
            opening = hours.next_opening(now)
            if opening is None:
                return ProcessingDecision(False, ("no_business_hours_window",))
            return ProcessingDecision(True, ("outside_business_hours",), opening)
        return ProcessingDecision(True)

    @staticmethod
    def _order_block(order: OrderSnapshot, policy: AutomationPolicy) -> Optional[str]:
        """First order condition that fails, or ``None``."""

        if policy.allowed_statuses and order.status not in policy.allowed_statuses:
            return "order_status_not_allowed"
        if order.total < policy.minimum_total:
            return "below_minimum_total"
        if order.payment_method and order.payment_method in policy.excluded_payment_methods:
            return "payment_method_excluded"
        customer_types = policy.customer_types or (ALL_CUSTOMERS,)
        if ALL_CUSTOMERS not in customer_types and order.customer_type not in customer_types:
            return "customer_type_not_allowed"
        return None

    def schedule_emission(
        self,
        order_id: object,
        trigger_type: str = QueueItem.Trigger.MANUAL,
        *,
        priority: int = 5,
    ) -> Optional[int]:
        """Queue the order when the automation policy allows it.

        Returns the queue item id, or ``None`` when the order was not
        queued (blocked by a condition or already queued).
        """

        order_id = str(order_id)
        decision = self.should_process_order(order_id)
        if not decision.allowed:
            logger.info(
                "NFS-e: pedido %s não enfileirado: %s",
                order_id,
                ", ".join(decision.reasons),
            )
            return None

        policy = self._settings.automation()
        scheduled_at = self._clock() + dt.timedelta(seconds=policy.delay_seconds)
        if decision.defer_until is not None and decision.defer_until > scheduled_at:
            scheduled_at = decision.defer_until

        try:
            return self._queue.add_to_queue(
                order_id,
                trigger_type=trigger_type,
                priority=priority,
                scheduled_at=scheduled_at,
            )
        except DuplicateQueueItemError:
            logger.info("NFS-e: pedido %s já está na fila", order_id)
            return None

    # Triggers ------------------------------------------------------------------------

    def _trigger_enabled(self, trigger: str) -> bool:
        return trigger in self._settings.automation().triggers

    def on_payment_complete(self, order_id: object) -> Optional[int]:
        if not self._trigger_enabled(QueueItem.Trigger.PAYMENT_COMPLETE):
            return None
        try:
            return self.schedule_emission(order_id, QueueItem.Trigger.PAYMENT_COMPLETE)
        except Exception:
            logger.exception("NFS-e: falha ao agendar emissão do pedido %s após pagamento", order_id)
            return None

    def on_order_status_change(self, order_id: object, old_status: str, new_status: str) -> Optional[int]:
        if old_status == new_status:
            return None
        trigger = STATUS_TRIGGERS.get(new_status)
        if trigger is None or not self._trigger_enabled(trigger):
            return None
        try:
            return self.schedule_emission(order_id, trigger)
        except Exception:
            logger.exception(
                "NFS-e: falha ao agendar emissão do pedido %s (%s -> %s)",
                order_id,
                old_status,
                new_status,
            )
            return None

    # Periodic cycle ------------------------------------------------------------------

    def run_cycle(self, limit: Optional[int] = None) -> CycleResult:
        """One drain pass: recover, retry, process, purge."""

        cycle = CycleResult()
        steps = (
            ("reset", self._queue.reset_stuck_items),
            ("retried", self._queue.retry_failed_items),
        )
        for name, step in steps:
            try:
                setattr(cycle, name, step())
            except Exception as exc:
                logger.exception("NFS-e: etapa %s do ciclo falhou", name)
                cycle.errors.append(f"{name}: {exc}")

        try:
            run = self._queue.process_queue(limit)
        except Exception as exc:
            logger.exception("NFS-e: processamento da fila falhou")
            cycle.errors.append(f"process: {exc}")
        else:
            cycle.paused = run.paused
            cycle.processed = run.processed
            cycle.completed = run.completed
            cycle.failed = run.failed

        try:
            cycle.purged = self._queue.clear_completed_items()
        except Exception as exc:
            logger.exception("NFS-e: limpeza da fila falhou")
            cycle.errors.append(f"purge: {exc}")

        return cycle


__all__ = ["AutomationService", "CycleResult", "ProcessingDecision", "STATUS_TRIGGERS"]
