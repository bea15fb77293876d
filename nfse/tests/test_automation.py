from __future__ import annotations

import datetime as dt
from decimal import Decimal
from unittest import mock
from zoneinfo import ZoneInfo

from django.test import TestCase

from nfse.models import QueueItem
from nfse.sefin.automation import AutomationService
from nfse.sefin.queue import QueueRunResult, QueueService
from nfse.sefin.service import BatchItemResult, EmissionOutcome, EmissionService
from nfse.sefin.settings import SettingsProvider

from .factories import InMemoryOrderStore, make_config, make_order

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
FRIDAY_MORNING = dt.datetime(2024, 6, 7, 10, 0, tzinfo=SAO_PAULO)
SATURDAY_NOON = dt.datetime(2024, 6, 8, 12, 0, tzinfo=SAO_PAULO)


class AutomationServiceTestBase(TestCase):
    config_overrides: dict = {}

    def setUp(self) -> None:
        make_config(automacao_ativa=True, atraso_segundos=300, **self.config_overrides)
        self.now = FRIDAY_MORNING
        self.store = InMemoryOrderStore(make_order("1001"))
        settings = SettingsProvider()
        self.queue = QueueService(
            settings=settings,
            emission_service=mock.Mock(spec=EmissionService),
            clock=lambda: self.now,
        )
        self.automation = AutomationService(
            settings=settings,
            order_store=self.store,
            queue=self.queue,
            clock=lambda: self.now,
        )
        super().setUp()


class ShouldProcessOrderTests(AutomationServiceTestBase):
    def test_allowed_order(self) -> None:
        decision = self.automation.should_process_order("1001")
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.reasons, ())
        self.assertIsNone(decision.defer_until)

    def test_disabled_automation_blocks_everything(self) -> None:
        SettingsProvider().update(automacao_ativa=False)
        decision = self.automation.should_process_order("1001")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reasons, ("automation_disabled",))

    def test_paused_automation(self) -> None:
        SettingsProvider().update(automacao_pausada=True)
        self.assertEqual(self.automation.should_process_order("1001").reasons, ("automation_paused",))

    def test_unknown_order(self) -> None:
        self.assertEqual(self.automation.should_process_order("404").reasons, ("order_not_found",))

    def test_first_failing_condition_short_circuits(self) -> None:
        SettingsProvider().update(
            valor_minimo=Decimal("5000.00"),
            metodos_pagamento_excluidos=["pix"],
            tipos_cliente=["business"],
        )
        self.store.orders["1001"] = make_order("1001", status="pending")

        decision = self.automation.should_process_order("1001")

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reasons, ("order_status_not_allowed",))
        self.assertEqual(decision.messages, ["Status do pedido não permitido para emissão automática"])

    def test_conditions_are_checked_in_order(self) -> None:
        SettingsProvider().update(
            valor_minimo=Decimal("5000.00"),
            metodos_pagamento_excluidos=["pix"],
            tipos_cliente=["business"],
        )
        self.assertEqual(self.automation.should_process_order("1001").reasons, ("below_minimum_total",))

        SettingsProvider().update(valor_minimo=Decimal("0.00"))
        self.assertEqual(self.automation.should_process_order("1001").reasons, ("payment_method_excluded",))

        SettingsProvider().update(metodos_pagamento_excluidos=[])
        self.assertEqual(self.automation.should_process_order("1001").reasons, ("customer_type_not_allowed",))

        SettingsProvider().update(tipos_cliente=["all"])
        self.assertTrue(self.automation.should_process_order("1001").allowed)


class ScheduleEmissionTests(AutomationServiceTestBase):
    def test_schedules_with_configured_delay(self) -> None:
        item_id = self.automation.schedule_emission("1001", QueueItem.Trigger.PAYMENT_COMPLETE)

        item = QueueItem.objects.get(pk=item_id)
        self.assertEqual(item.trigger_type, QueueItem.Trigger.PAYMENT_COMPLETE)
        self.assertEqual(item.scheduled_at, FRIDAY_MORNING + dt.timedelta(seconds=300))

    def test_order_below_minimum_is_not_queued(self) -> None:
        SettingsProvider().update(valor_minimo=Decimal("5000.00"))

        self.assertIsNone(self.automation.schedule_emission("1001"))
        self.assertFalse(QueueItem.objects.exists())

    def test_duplicate_returns_none(self) -> None:
        self.assertIsNotNone(self.automation.schedule_emission("1001"))
        self.assertIsNone(self.automation.schedule_emission("1001"))
        self.assertEqual(QueueItem.objects.count(), 1)


class BusinessHoursTests(AutomationServiceTestBase):
    config_overrides = {"horario_comercial_ativo": True}

    def test_outside_hours_defers_to_next_opening(self) -> None:
        self.now = SATURDAY_NOON
        monday_opening = dt.datetime(2024, 6, 10, 8, 0, tzinfo=SAO_PAULO)

        decision = self.automation.should_process_order("1001")
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.reasons, ("outside_business_hours",))
        self.assertEqual(decision.defer_until, monday_opening)

        item = QueueItem.objects.get(pk=self.automation.schedule_emission("1001"))
        self.assertEqual(item.scheduled_at, monday_opening)

    def test_inside_hours_uses_delay(self) -> None:
        item = QueueItem.objects.get(pk=self.automation.schedule_emission("1001"))
        self.assertEqual(item.scheduled_at, FRIDAY_MORNING + dt.timedelta(seconds=300))

    def test_overnight_window_defers_to_evening_opening(self) -> None:
        SettingsProvider().update(
            horario_inicio=dt.time(22, 0),
            horario_fim=dt.time(6, 0),
            dias_uteis=[1, 2, 3, 4, 5, 6, 7],
        )

        decision = self.automation.should_process_order("1001")
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.defer_until, dt.datetime(2024, 6, 7, 22, 0, tzinfo=SAO_PAULO))

        late_friday = dt.datetime(2024, 6, 7, 23, 0, tzinfo=SAO_PAULO)
        early_saturday = dt.datetime(2024, 6, 8, 3, 0, tzinfo=SAO_PAULO)
        for moment in (late_friday, early_saturday):
            with self.subTest(moment=moment):
                self.now = moment
                decision = self.automation.should_process_order("1001")
                self.assertEqual(decision.reasons, ())
                self.assertIsNone(decision.defer_until)

    def test_window_without_days_blocks_the_order(self) -> None:
        SettingsProvider().update(dias_uteis=[])

        decision = self.automation.should_process_order("1001")

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reasons, ("no_business_hours_window",))
        self.assertIsNone(self.automation.schedule_emission("1001"))
        self.assertFalse(QueueItem.objects.exists())


class TriggerTests(AutomationServiceTestBase):
    def test_payment_complete_is_enabled_by_default(self) -> None:
        self.assertIsNotNone(self.automation.on_payment_complete("1001"))
        self.assertEqual(QueueItem.objects.get().trigger_type, QueueItem.Trigger.PAYMENT_COMPLETE)

    def test_status_change_requires_configured_trigger(self) -> None:
        self.assertIsNone(self.automation.on_order_status_change("1001", "pending", "completed"))

        SettingsProvider().update(gatilhos=["order_completed"])
        self.assertIsNone(self.automation.on_payment_complete("1001"))
        self.assertIsNone(self.automation.on_order_status_change("1001", "completed", "completed"))
        self.assertIsNotNone(self.automation.on_order_status_change("1001", "pending", "completed"))
        self.assertEqual(QueueItem.objects.get().trigger_type, QueueItem.Trigger.ORDER_COMPLETED)

    def test_trigger_failures_are_logged(self) -> None:
        with mock.patch.object(self.automation, "schedule_emission", side_effect=RuntimeError("db down")):
            with self.assertLogs("nfse.sefin.automation", level="ERROR"):
                self.assertIsNone(self.automation.on_payment_complete("1001"))


class RunCycleTests(TestCase):
    def setUp(self) -> None:
        self.queue = mock.Mock(spec=QueueService)
        self.queue.reset_stuck_items.return_value = 1
        self.queue.retry_failed_items.return_value = 2
        self.queue.process_queue.return_value = QueueRunResult(
            items=[
                BatchItemResult("1", EmissionOutcome.EMITTED),
                BatchItemResult("2", EmissionOutcome.ALREADY_EMITTED),
                BatchItemResult("3", EmissionOutcome.FAILED, error_code="server_error"),
            ]
        )
        self.queue.clear_completed_items.return_value = 4
        self.automation = AutomationService(
            settings=mock.Mock(spec=SettingsProvider),
            order_store=InMemoryOrderStore(),
            queue=self.queue,
        )
        super().setUp()

    def test_cycle_runs_every_step(self) -> None:
        cycle = self.automation.run_cycle(limit=5)

        self.queue.process_queue.assert_called_once_with(5)
        self.assertEqual(
            cycle.as_dict(),
            {
                "reset": 1,
                "retried": 2,
                "processed": 3,
                "completed": 2,
                "failed": 1,
                "purged": 4,
                "paused": False,
                "errors": [],
            },
        )

    def test_failing_step_does_not_stop_the_cycle(self) -> None:
        self.queue.retry_failed_items.side_effect = RuntimeError("lock timeout")

        with self.assertLogs("nfse.sefin.automation", level="ERROR"):
            cycle = self.automation.run_cycle()

        self.assertEqual(cycle.errors, ["retried: lock timeout"])
        self.assertEqual(cycle.processed, 3)
        self.assertEqual(cycle.purged, 4)
