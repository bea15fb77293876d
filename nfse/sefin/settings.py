"""Typed, read-only view over the merchant NFS-e configuration.

Every pipeline component receives a :class:`SettingsProvider` in its
constructor. The provider reads the single :class:`~nfse.models.NFSeConfig`
row and exposes it as frozen dataclasses so a typo in a key name fails
loudly instead of silently falling back to a default.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from django.core.exceptions import FieldDoesNotExist

from nfse.models import NFSeConfig

from .documents import is_valid_cnpj, only_digits
from .errors import ConfigurationError

_UNSET = object()

REQUIRED_ISSUER_FIELDS = (
    "cnpj",
    "inscricao_municipal",
    "razao_social",
    "codigo_municipio",
    "logradouro",
    "numero",
    "bairro",
    "cidade",
    "uf",
    "cep",
)


@dataclass(frozen=True)
class IssuerSettings:
    """Prestador identity printed on every DPS."""

    cnpj: str
    inscricao_municipal: str
    razao_social: str
    codigo_municipio: str
    logradouro: str
    numero: str
    bairro: str
    cidade: str
    uf: str
    cep: str
    nome_fantasia: str = ""
    complemento: str = ""
    telefone: str = ""
    email: str = ""
    regime_tributario: str = NFSeConfig.TaxRegime.SIMPLES_NACIONAL


@dataclass(frozen=True)
class ServiceDefaults:
    serie_dps: str
    aliquota_iss: Decimal
    codigo_tributacao_nacional: str = ""
    descricao_tributacao: str = ""
    codigo_nbs: str = ""


@dataclass(frozen=True)
class BusinessHours:
    """Weekly emission window evaluated in ``timezone``.

    ``days`` uses ISO weekdays (1 = Monday). The window is ``[start, end)``.
    When ``end`` is earlier than ``start`` the window crosses midnight and
    belongs to the day it starts on, so 22:00-06:00 on Friday runs until
    Saturday 06:00. No days, or ``start == end``, means it never opens.
    """

    enabled: bool = False
    start: dt.time = dt.time(8, 0)
    end: dt.time = dt.time(18, 0)
    days: frozenset[int] = frozenset({1, 2, 3, 4, 5})
    timezone: str = "America/Sao_Paulo"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def never_opens(self) -> bool:
        return not self.days or self.start == self.end

    @property
    def overnight(self) -> bool:
        return self.end < self.start

    def is_open(self, now: dt.datetime) -> bool:
        if not self.enabled:
            return True
        if self.never_opens:
            return False
        local = now.astimezone(self.tzinfo)
        moment = local.time()
        if not self.overnight:
            return local.isoweekday() in self.days and self.start <= moment < self.end
        if moment >= self.start:
            return local.isoweekday() in self.days
        if moment < self.end:
            return (local - dt.timedelta(days=1)).isoweekday() in self.days
        return False

    def next_opening(self, now: dt.datetime) -> Optional[dt.datetime]:
        """Return the first instant at or after ``now`` inside the window.

        ``None`` when the window never opens.
        """

        if self.is_open(now):
            return now
        if self.never_opens:
            return None

        local = now.astimezone(self.tzinfo)
        for offset in range(8):
            day = local.date() + dt.timedelta(days=offset)
            if day.isoweekday() not in self.days:
                continue
            opening = dt.datetime.combine(day, self.start, tzinfo=self.tzinfo)
            if opening >= local:
                return opening
        return None


@dataclass(frozen=True)
class AutomationPolicy:
    enabled: bool = False
    paused: bool = False
    triggers: tuple[str, ...] = ("payment_complete",)
    delay_seconds: int = 300
    allowed_statuses: tuple[str, ...] = ("processing", "completed")
    minimum_total: Decimal = Decimal("0.00")
    excluded_payment_methods: tuple[str, ...] = ()
    customer_types: tuple[str, ...] = ("all",)
    business_hours: BusinessHours = field(default_factory=BusinessHours)


@dataclass(frozen=True)
class QueuePolicy:
    paused: bool = False
    retry_limit: int = 3
    retry_backoff_seconds: int = 900
    stuck_threshold_seconds: int = 1800
    item_timeout_seconds: int = 30
    retention_days: int = 7
    batch_size: int = 10

    def backoff_for(self, attempts: int) -> dt.timedelta:
        """Exponential backoff: ``2 ** attempts * base`` seconds."""

        return dt.timedelta(seconds=(2 ** max(attempts, 0)) * self.retry_backoff_seconds)


@dataclass(frozen=True)
class NFSeSettings:
    issuer: IssuerSettings
    service: ServiceDefaults
    environment: str
    api_base_url: str
    automation: AutomationPolicy
    queue: QueuePolicy

    @property
    def is_production(self) -> bool:
        return self.environment == NFSeConfig.Environment.PRODUCAO

    @property
    def tp_amb(self) -> str:
        return "1" if self.is_production else "2"


def get_active_config() -> Optional[NFSeConfig]:
    return NFSeConfig.objects.order_by("pk").first()


class SettingsProvider:
    """Read-only accessor for the active :class:`NFSeConfig`."""

    def __init__(self, loader: Optional[Callable[[], Optional[NFSeConfig]]] = None) -> None:
        self._loader = loader or get_active_config

    def config(self) -> NFSeConfig:
        config = self._loader()
        if config is None:
            raise ConfigurationError(
                "Configuração NFS-e não cadastrada; preencha os dados do prestador no admin",
            )
        return config

    def get(self, key: str, default: Any = _UNSET) -> Any:
        """Return a raw config value.

        Unknown keys raise ``KeyError``. Empty values fall back to
        ``default`` when one is given.
        """

        try:
            NFSeConfig._meta.get_field(key)
        except FieldDoesNotExist as exc:
            raise KeyError(key) from exc
        value = getattr(self.config(), key)
        if default is not _UNSET and value in (None, "", [], {}):
            return default
        return value

    def update(self, **fields: Any) -> None:
        """Persist flag changes (pause/resume) on the config row."""

        config = self.config()
        for name, value in fields.items():
            NFSeConfig._meta.get_field(name)
            setattr(config, name, value)
        if config.pk is not None:
            NFSeConfig.objects.filter(pk=config.pk).update(**fields)

    # Typed getters ------------------------------------------------------------------

    @property
    def environment(self) -> str:
        return self.config().ambiente

    def issuer(self) -> IssuerSettings:
        c = self.config()
        return IssuerSettings(
            cnpj=only_digits(c.cnpj),
            inscricao_municipal=c.inscricao_municipal.strip(),
            razao_social=c.razao_social.strip(),
            codigo_municipio=only_digits(c.codigo_municipio),
            logradouro=c.logradouro.strip(),
            numero=c.numero.strip(),
            bairro=c.bairro.strip(),
            cidade=c.cidade.strip(),
            uf=c.uf.strip().upper(),
            cep=only_digits(c.cep),
            nome_fantasia=c.nome_fantasia.strip(),
            complemento=c.complemento.strip(),
            telefone=only_digits(c.telefone),
            email=c.email.strip(),
            regime_tributario=c.regime_tributario,
        )

    def service_defaults(self) -> ServiceDefaults:
        c = self.config()
        return ServiceDefaults(
            serie_dps=only_digits(c.serie_dps) or "1",
            aliquota_iss=Decimal(str(c.aliquota_iss)),
            codigo_tributacao_nacional=only_digits(c.codigo_tributacao_nacional),
            descricao_tributacao=c.descricao_tributacao.strip(),
            codigo_nbs=only_digits(c.codigo_nbs),
        )

    def automation(self) -> AutomationPolicy:
        c = self.config()
        return AutomationPolicy(
            enabled=c.automacao_ativa,
            paused=c.automacao_pausada,
            triggers=tuple(c.gatilhos or ()),
            delay_seconds=int(c.atraso_segundos),
            allowed_statuses=tuple(c.status_permitidos or ()),
            minimum_total=Decimal(str(c.valor_minimo or 0)),
            excluded_payment_methods=tuple(c.metodos_pagamento_excluidos or ()),
            customer_types=tuple(c.tipos_cliente or ("all",)),
            business_hours=BusinessHours(
                enabled=c.horario_comercial_ativo,
                start=c.horario_inicio,
                end=c.horario_fim,
                days=frozenset(int(day) for day in (c.dias_uteis or ())),
                timezone=c.fuso_horario or "America/Sao_Paulo",
            ),
        )

    def queue_policy(self) -> QueuePolicy:
        c = self.config()
        return QueuePolicy(
            paused=c.fila_pausada,
            retry_limit=int(c.limite_tentativas),
            retry_backoff_seconds=int(c.backoff_base_segundos),
            stuck_threshold_seconds=int(c.limite_travado_segundos),
            item_timeout_seconds=int(c.timeout_item_segundos),
            retention_days=int(c.retencao_fila_dias),
            batch_size=int(c.tamanho_lote),
        )

    def snapshot(self) -> NFSeSettings:
        return NFSeSettings(
            issuer=self.issuer(),
            service=self.service_defaults(),
            environment=self.environment,
            api_base_url=self.config().api_base_url,
            automation=self.automation(),
            queue=self.queue_policy(),
        )

    # Validation ---------------------------------------------------------------------

    def configuration_problems(self) -> list[str]:
        """Human-readable list of what blocks emission, empty when ready."""

        try:
            issuer = self.issuer()
        except ConfigurationError as exc:
            return [str(exc)]

        problems = [
            f"Campo obrigatório do prestador não preenchido: {name}"
            for name in REQUIRED_ISSUER_FIELDS
            if not getattr(issuer, name)
        ]
        if issuer.cnpj and not is_valid_cnpj(issuer.cnpj):
            problems.append("CNPJ do prestador inválido")
        if issuer.codigo_municipio and len(issuer.codigo_municipio) != 7:
            problems.append("Código IBGE do município deve ter 7 dígitos")

        service = self.service_defaults()
        if not service.codigo_tributacao_nacional:
            problems.append("Código de tributação nacional não configurado")
        if service.aliquota_iss < 0 or service.aliquota_iss > 100:
            problems.append("Alíquota de ISS fora do intervalo 0-100")
        return problems

    def is_configured(self) -> bool:
        return not self.configuration_problems()


__all__ = [
    "AutomationPolicy",
    "BusinessHours",
    "IssuerSettings",
    "NFSeSettings",
    "QueuePolicy",
    "ServiceDefaults",
    "SettingsProvider",
    "get_active_config",
]
