"""Wire the emission pipeline from Django settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from django.conf import settings as django_settings
from django.utils.module_loading import import_string

from .automation import AutomationService
from .client import build_client
from .errors import ConfigurationError
from .orders import OrderStore
from .queue import QueueService
from .secrets import CertificateManager
from .service import EmissionService
from .settings import SettingsProvider


@dataclass(slots=True)
class Pipeline:
    settings: SettingsProvider
    emission: EmissionService
    queue: QueueService
    automation: AutomationService


def load_order_store(path: Optional[str] = None) -> OrderStore:
    """Instantiate the order store named by ``NFSE_ORDER_STORE``."""

    path = path or getattr(django_settings, "NFSE_ORDER_STORE", "")
    if not path:
        raise ConfigurationError(
            "Defina NFSE_ORDER_STORE com o caminho da implementação do repositório de pedidos",
        )
    try:
        store_class = import_string(path)
    except ImportError as exc:
        raise ConfigurationError(f"Não foi possível importar NFSE_ORDER_STORE={path}: {exc}") from exc
    store = store_class()
    if not isinstance(store, OrderStore):
        raise ConfigurationError(f"{path} não implementa get_order/add_note")
    return store


def build_pipeline(
    *,
    order_store: Optional[OrderStore] = None,
    settings: Optional[SettingsProvider] = None,
) -> Pipeline:
    settings = settings or SettingsProvider()
    order_store = order_store or load_order_store()
    emission = EmissionService(
        settings=settings,
        order_store=order_store,
        certificates=CertificateManager(),
        client=build_client(settings),
    )
    queue = QueueService(settings=settings, emission_service=emission)
    automation = AutomationService(settings=settings, order_store=order_store, queue=queue)
    return Pipeline(settings=settings, emission=emission, queue=queue, automation=automation)


__all__ = ["Pipeline", "build_pipeline", "load_order_store"]
