import datetime
from decimal import Decimal

import django.core.validators
import django.utils.timezone
from django.db import migrations, models

import nfse.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="NFSeConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("razao_social", models.CharField(blank=True, max_length=150, verbose_name="razão social")),
                ("nome_fantasia", models.CharField(blank=True, max_length=150)),
                ("cnpj", models.CharField(blank=True, max_length=18, verbose_name="CNPJ")),
                ("inscricao_municipal", models.CharField(blank=True, max_length=15, verbose_name="inscrição municipal")),
                ("codigo_municipio", models.CharField(blank=True, max_length=7, verbose_name="código IBGE do município")),
                ("logradouro", models.CharField(blank=True, max_length=255)),
                ("numero", models.CharField(blank=True, max_length=60, verbose_name="número")),
                ("complemento", models.CharField(blank=True, max_length=156)),
                ("bairro", models.CharField(blank=True, max_length=60)),
                ("cidade", models.CharField(blank=True, max_length=60)),
                ("uf", models.CharField(blank=True, max_length=2, verbose_name="UF")),
                ("cep", models.CharField(blank=True, max_length=9, verbose_name="CEP")),
                ("telefone", models.CharField(blank=True, max_length=20)),
                ("email", models.EmailField(blank=True, max_length=254)),
                (
                    "regime_tributario",
                    models.CharField(
                        choices=[
                            ("simples_nacional", "Simples Nacional"),
                            ("mei", "MEI"),
                            ("lucro_presumido", "Lucro Presumido"),
                            ("lucro_real", "Lucro Real"),
                        ],
                        default="simples_nacional",
                        max_length=20,
                    ),
                ),
                (
                    "ambiente",
                    models.CharField(
                        choices=[("producao", "Produção"), ("homologacao", "Homologação")],
                        default="homologacao",
                        max_length=20,
                    ),
                ),
                ("api_base_url", models.URLField(blank=True, verbose_name="URL base da API")),
                ("serie_dps", models.CharField(default="1", max_length=5, verbose_name="série da DPS")),
                ("proximo_numero_dps", models.PositiveBigIntegerField(default=1, verbose_name="próximo número da DPS")),
                (
                    "aliquota_iss",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("5.00"),
                        max_digits=5,
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0")),
                            django.core.validators.MaxValueValidator(Decimal("100")),
                        ],
                        verbose_name="alíquota ISS (%)",
                    ),
                ),
                ("codigo_tributacao_nacional", models.CharField(blank=True, max_length=6)),
                ("descricao_tributacao", models.CharField(blank=True, max_length=255)),
                ("codigo_nbs", models.CharField(blank=True, max_length=9, verbose_name="código NBS")),
                ("automacao_ativa", models.BooleanField(default=False)),
                ("automacao_pausada", models.BooleanField(default=False)),
                ("gatilhos", models.JSONField(blank=True, default=nfse.models._default_triggers)),
                ("atraso_segundos", models.PositiveIntegerField(default=300)),
                ("status_permitidos", models.JSONField(blank=True, default=nfse.models._default_order_statuses)),
                ("valor_minimo", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("metodos_pagamento_excluidos", models.JSONField(blank=True, default=list)),
                ("tipos_cliente", models.JSONField(blank=True, default=nfse.models._default_customer_types)),
                ("horario_comercial_ativo", models.BooleanField(default=False)),
                ("horario_inicio", models.TimeField(default=datetime.time(8, 0))),
                ("horario_fim", models.TimeField(default=datetime.time(18, 0))),
                ("dias_uteis", models.JSONField(blank=True, default=nfse.models._default_business_days)),
                ("fuso_horario", models.CharField(default="America/Sao_Paulo", max_length=64)),
                ("fila_pausada", models.BooleanField(default=False)),
                ("limite_tentativas", models.PositiveSmallIntegerField(default=3)),
                ("backoff_base_segundos", models.PositiveIntegerField(default=900)),
                ("limite_travado_segundos", models.PositiveIntegerField(default=1800)),
                ("timeout_item_segundos", models.PositiveIntegerField(default=30)),
                ("retencao_fila_dias", models.PositiveSmallIntegerField(default=7)),
                ("tamanho_lote", models.PositiveSmallIntegerField(default=10)),
            ],
            options={
                "verbose_name": "Configuração NFS-e",
                "verbose_name_plural": "Configuração NFS-e",
            },
        ),
        migrations.CreateModel(
            name="Certificate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=160, verbose_name="nome")),
                ("subject", models.CharField(blank=True, max_length=255)),
                ("issuer", models.CharField(blank=True, max_length=255)),
                ("serial_number", models.CharField(blank=True, max_length=64)),
                ("valid_from", models.DateTimeField(blank=True, null=True)),
                ("valid_to", models.DateTimeField(blank=True, null=True)),
                ("fingerprint", models.CharField(blank=True, max_length=64)),
                ("storage_path", models.CharField(max_length=255)),
                ("password_encrypted", models.TextField(blank=True)),
                ("is_active", models.BooleanField(default=False)),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Certificado digital",
                "verbose_name_plural": "Certificados digitais",
                "ordering": ("-created_at",),
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_active", True)),
                        fields=("is_active",),
                        name="nfse_single_active_certificate",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Emission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order_id", models.CharField(db_index=True, max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pendente"),
                            ("processing", "Processando"),
                            ("success", "Emitida"),
                            ("error", "Erro"),
                            ("cancelled", "Cancelada"),
                            ("replaced", "Substituída"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("access_key", models.CharField(blank=True, max_length=50, null=True, verbose_name="chave de acesso")),
                ("protocol", models.CharField(blank=True, max_length=64)),
                ("dps_number", models.PositiveBigIntegerField(blank=True, null=True)),
                ("dps_identifier", models.CharField(blank=True, max_length=45)),
                ("xml_payload", models.TextField(blank=True)),
                ("signed_xml", models.TextField(blank=True)),
                ("response_payload", models.JSONField(blank=True, default=dict)),
                ("validation_report", models.JSONField(blank=True, default=dict)),
                ("error_message", models.TextField(blank=True)),
                ("error_code", models.CharField(blank=True, max_length=64)),
                ("emission_date", models.DateTimeField(blank=True, null=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("certificate_fingerprint", models.CharField(blank=True, max_length=64)),
                ("cancellation_reason", models.TextField(blank=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Emissão NFS-e",
                "verbose_name_plural": "Emissões NFS-e",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="nfse_emission_status_idx"),
                    models.Index(fields=["access_key"], name="nfse_emission_key_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "success")),
                        fields=("order_id",),
                        name="nfse_single_success_per_order",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["pending", "processing"])),
                        fields=("order_id",),
                        name="nfse_single_open_emission_per_order",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="QueueItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order_id", models.CharField(db_index=True, max_length=64)),
                (
                    "trigger_type",
                    models.CharField(
                        choices=[
                            ("payment_complete", "Pagamento confirmado"),
                            ("order_processing", "Pedido em processamento"),
                            ("order_completed", "Pedido concluído"),
                            ("manual", "Manual"),
                        ],
                        default="manual",
                        max_length=32,
                    ),
                ),
                (
                    "priority",
                    models.PositiveSmallIntegerField(
                        default=5,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(10),
                        ],
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pendente"),
                            ("processing", "Processando"),
                            ("completed", "Concluído"),
                            ("failed", "Falhou"),
                            ("cancelled", "Cancelado"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("scheduled_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("error_message", models.TextField(blank=True)),
                ("error_code", models.CharField(blank=True, max_length=64)),
                ("last_error_at", models.DateTimeField(blank=True, null=True)),
                ("result_data", models.JSONField(blank=True, default=dict)),
                ("processed_by", models.CharField(blank=True, max_length=120)),
            ],
            options={
                "verbose_name": "Item da fila NFS-e",
                "verbose_name_plural": "Fila NFS-e",
                "ordering": ("priority", "scheduled_at"),
                "indexes": [
                    models.Index(fields=["status", "priority", "scheduled_at"], name="nfse_queue_due_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["pending", "processing"])),
                        fields=("order_id",),
                        name="nfse_single_open_item_per_order",
                    ),
                ],
            },
        ),
    ]
