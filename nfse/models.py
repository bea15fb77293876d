from __future__ import annotations

import datetime as dt
from decimal import Decimal

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone


def _default_triggers() -> list[str]:
    return ["payment_complete"]


def _default_order_statuses() -> list[str]:
    return ["processing", "completed"]


def _default_customer_types() -> list[str]:
    return ["all"]


def _default_business_days() -> list[int]:
    return [1, 2, 3, 4, 5]


class TimeStampedModel(models.Model):
    """Modelo base com marcas de tempo."""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ("-created_at",)


class NFSeConfig(TimeStampedModel):
    """Dados do prestador e parâmetros de emissão/automação."""

    class Environment(models.TextChoices):
        PRODUCAO = "producao", "Produção"
        HOMOLOGACAO = "homologacao", "Homologação"

    class TaxRegime(models.TextChoices):
        SIMPLES_NACIONAL = "simples_nacional", "Simples Nacional"
        MEI = "mei", "MEI"
        LUCRO_PRESUMIDO = "lucro_presumido", "Lucro Presumido"
        LUCRO_REAL = "lucro_real", "Lucro Real"

    # Prestador
    razao_social = models.CharField("razão social", max_length=150, blank=True)
    nome_fantasia = models.CharField(max_length=150, blank=True)
    cnpj = models.CharField("CNPJ", max_length=18, blank=True)
    inscricao_municipal = models.CharField("inscrição municipal", max_length=15, blank=True)
    codigo_municipio = models.CharField("código IBGE do município", max_length=7, blank=True)
    logradouro = models.CharField(max_length=255, blank=True)
    numero = models.CharField("número", max_length=60, blank=True)
    complemento = models.CharField(max_length=156, blank=True)
    bairro = models.CharField(max_length=60, blank=True)
    cidade = models.CharField(max_length=60, blank=True)
    uf = models.CharField("UF", max_length=2, blank=True)
    cep = models.CharField("CEP", max_length=9, blank=True)
    telefone = models.CharField(max_length=20, blank=True)
    email = models.EmailField(blank=True)
    regime_tributario = models.CharField(
        max_length=20,
        choices=TaxRegime.choices,
        default=TaxRegime.SIMPLES_NACIONAL,
    )

    # Emissão
    ambiente = models.CharField(
        max_length=20,
        choices=Environment.choices,
        default=Environment.HOMOLOGACAO,
    )
    api_base_url = models.URLField("URL base da API", blank=True)
    serie_dps = models.CharField("série da DPS", max_length=5, default="1")
    proximo_numero_dps = models.PositiveBigIntegerField("próximo número da DPS", default=1)
    aliquota_iss = models.DecimalField(
        "alíquota ISS (%)",
        max_digits=5,
        decimal_places=2,
        default=Decimal("5.00"),
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100"))],
    )
    codigo_tributacao_nacional = models.CharField(max_length=6, blank=True)
    descricao_tributacao = models.CharField(max_length=255, blank=True)
    codigo_nbs = models.CharField("código NBS", max_length=9, blank=True)

    # Automação
    automacao_ativa = models.BooleanField(default=False)
    automacao_pausada = models.BooleanField(default=False)
    gatilhos = models.JSONField(default=_default_triggers, blank=True)
    atraso_segundos = models.PositiveIntegerField(default=300)
    status_permitidos = models.JSONField(default=_default_order_statuses, blank=True)
    valor_minimo = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    metodos_pagamento_excluidos = models.JSONField(default=list, blank=True)
    tipos_cliente = models.JSONField(default=_default_customer_types, blank=True)
    horario_comercial_ativo = models.BooleanField(default=False)
    horario_inicio = models.TimeField(default=dt.time(8, 0))
    horario_fim = models.TimeField(default=dt.time(18, 0))
    dias_uteis = models.JSONField(default=_default_business_days, blank=True)
    fuso_horario = models.CharField(max_length=64, default="America/Sao_Paulo")

    # Fila
    fila_pausada = models.BooleanField(default=False)
    limite_tentativas = models.PositiveSmallIntegerField(default=3)
    backoff_base_segundos = models.PositiveIntegerField(default=900)
    limite_travado_segundos = models.PositiveIntegerField(default=1800)
    timeout_item_segundos = models.PositiveIntegerField(default=30)
    retencao_fila_dias = models.PositiveSmallIntegerField(default=7)
    tamanho_lote = models.PositiveSmallIntegerField(default=10)

    class Meta:
        verbose_name = "Configuração NFS-e"
        verbose_name_plural = "Configuração NFS-e"

    def __str__(self) -> str:
        nome = self.razao_social or "Sem definir"
        return f"{nome} / Série {self.serie_dps or '-'}"

    @classmethod
    def reserve_dps_number(cls) -> int:
        """Reserve the next DPS number under a row lock."""

        with transaction.atomic():
            config = cls.objects.select_for_update().order_by("pk").first()
            if config is None:
                raise cls.DoesNotExist("Configuração NFS-e não cadastrada")
            number = config.proximo_numero_dps
            cls.objects.filter(pk=config.pk).update(proximo_numero_dps=F("proximo_numero_dps") + 1)
        return number


class Certificate(TimeStampedModel):
    """Certificado A1 (PKCS#12) armazenado cifrado."""

    name = models.CharField("nome", max_length=160)
    subject = models.CharField(max_length=255, blank=True)
    issuer = models.CharField(max_length=255, blank=True)
    serial_number = models.CharField(max_length=64, blank=True)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_to = models.DateTimeField(null=True, blank=True)
    fingerprint = models.CharField(max_length=64, blank=True)
    storage_path = models.CharField(max_length=255)
    password_encrypted = models.TextField(blank=True)
    is_active = models.BooleanField(default=False)
    usage_count = models.PositiveIntegerField(default=0)
    last_used_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Certificado digital"
        verbose_name_plural = "Certificados digitais"
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["is_active"],
                condition=Q(is_active=True),
                name="nfse_single_active_certificate",
            ),
        ]

    def __str__(self) -> str:
        return self.name

    def is_valid_at(self, moment: dt.datetime) -> bool:
        if self.valid_from and moment < self.valid_from:
            return False
        if self.valid_to and moment >= self.valid_to:
            return False
        return True


class Emission(TimeStampedModel):
    """Registro de auditoria de cada emissão de NFS-e por pedido."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pendente"
        PROCESSING = "processing", "Processando"
        SUCCESS = "success", "Emitida"
        ERROR = "error", "Erro"
        CANCELLED = "cancelled", "Cancelada"
        REPLACED = "replaced", "Substituída"

    order_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    access_key = models.CharField("chave de acesso", max_length=50, null=True, blank=True)
    protocol = models.CharField(max_length=64, blank=True)
    dps_number = models.PositiveBigIntegerField(null=True, blank=True)
    dps_identifier = models.CharField(max_length=45, blank=True)
    xml_payload = models.TextField(blank=True)
    signed_xml = models.TextField(blank=True)
    response_payload = models.JSONField(default=dict, blank=True)
    validation_report = models.JSONField(default=dict, blank=True)
    error_message = models.TextField(blank=True)
    error_code = models.CharField(max_length=64, blank=True)
    emission_date = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    certificate_fingerprint = models.CharField(max_length=64, blank=True)
    cancellation_reason = models.TextField(blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Emissão NFS-e"
        verbose_name_plural = "Emissões NFS-e"
        ordering = ("-created_at",)
        indexes = [
            models.Index(fields=["status", "created_at"], name="nfse_emission_status_idx"),
            models.Index(fields=["access_key"], name="nfse_emission_key_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["order_id"],
                condition=Q(status="success"),
                name="nfse_single_success_per_order",
            ),
            models.UniqueConstraint(
                fields=["order_id"],
                condition=Q(status__in=["pending", "processing"]),
                name="nfse_single_open_emission_per_order",
            ),
        ]

    def __str__(self) -> str:
        return f"Pedido {self.order_id} ({self.get_status_display()})"


class QueueItem(TimeStampedModel):
    """Pedido aguardando emissão assíncrona."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pendente"
        PROCESSING = "processing", "Processando"
        COMPLETED = "completed", "Concluído"
        FAILED = "failed", "Falhou"
        CANCELLED = "cancelled", "Cancelado"

    class Trigger(models.TextChoices):
        PAYMENT_COMPLETE = "payment_complete", "Pagamento confirmado"
        ORDER_PROCESSING = "order_processing", "Pedido em processamento"
        ORDER_COMPLETED = "order_completed", "Pedido concluído"
        MANUAL = "manual", "Manual"

    UNRESOLVED = (Status.PENDING, Status.PROCESSING)

    order_id = models.CharField(max_length=64, db_index=True)
    trigger_type = models.CharField(max_length=32, choices=Trigger.choices, default=Trigger.MANUAL)
    priority = models.PositiveSmallIntegerField(
        default=5,
        validators=[MinValueValidator(1), MaxValueValidator(10)],
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    scheduled_at = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    error_message = models.TextField(blank=True)
    error_code = models.CharField(max_length=64, blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)
    result_data = models.JSONField(default=dict, blank=True)
    processed_by = models.CharField(max_length=120, blank=True)

    class Meta:
        verbose_name = "Item da fila NFS-e"
        verbose_name_plural = "Fila NFS-e"
        ordering = ("priority", "scheduled_at")
        indexes = [
            models.Index(fields=["status", "priority", "scheduled_at"], name="nfse_queue_due_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["order_id"],
                condition=Q(status__in=["pending", "processing"]),
                name="nfse_single_open_item_per_order",
            ),
        ]

    def __str__(self) -> str:
        return f"Pedido {self.order_id} [{self.get_status_display()}]"
