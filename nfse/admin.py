from django.contrib import admin

from .models import Certificate, Emission, NFSeConfig, QueueItem
from .sefin.documents import format_cnpj


@admin.register(NFSeConfig)
class NFSeConfigAdmin(admin.ModelAdmin):
    list_display = (
        "razao_social",
        "cnpj_formatado",
        "ambiente",
        "serie_dps",
        "proximo_numero_dps",
        "automacao_ativa",
        "fila_pausada",
        "updated_at",
    )
    readonly_fields = ("created_at", "updated_at")
    fieldsets = (
        ("Prestador", {
            "fields": (
                "razao_social", "nome_fantasia", "cnpj", "inscricao_municipal", "regime_tributario",
                "logradouro", "numero", "complemento", "bairro", "cidade", "uf", "cep",
                "codigo_municipio", "telefone", "email",
            )
        }),
        ("Emissão", {
            "fields": (
                "ambiente", "api_base_url", "serie_dps", "proximo_numero_dps", "aliquota_iss",
                "codigo_tributacao_nacional", "descricao_tributacao", "codigo_nbs",
            )
        }),
        ("Automação", {
            "fields": (
                "automacao_ativa", "automacao_pausada", "gatilhos", "atraso_segundos", "status_permitidos",
                "valor_minimo", "metodos_pagamento_excluidos", "tipos_cliente", "horario_comercial_ativo",
                "horario_inicio", "horario_fim", "dias_uteis", "fuso_horario",
            )
        }),
        ("Fila", {
            "fields": (
                "fila_pausada", "limite_tentativas", "backoff_base_segundos", "limite_travado_segundos",
                "timeout_item_segundos", "retencao_fila_dias", "tamanho_lote",
            )
        }),
        ("Informações do Sistema", {
            "fields": ("created_at", "updated_at"),
            "classes": ("collapse",)
        }),
    )

    @admin.display(description="CNPJ", ordering="cnpj")
    def cnpj_formatado(self, obj: NFSeConfig) -> str:
        return format_cnpj(obj.cnpj)


@admin.register(Certificate)
class CertificateAdmin(admin.ModelAdmin):
    list_display = ("name", "subject", "valid_to", "is_active", "usage_count", "last_used_at")
    list_filter = ("is_active",)
    search_fields = ("name", "subject", "fingerprint")
    readonly_fields = ("fingerprint", "usage_count", "last_used_at", "created_at", "updated_at")
    exclude = ("password_encrypted",)


@admin.register(Emission)
class EmissionAdmin(admin.ModelAdmin):
    list_display = ("order_id", "status", "dps_number", "access_key", "attempts", "error_code", "emission_date")
    list_filter = ("status", "error_code", "emission_date")
    search_fields = ("order_id", "access_key", "dps_identifier", "protocol")
    date_hierarchy = "created_at"
    readonly_fields = (
        "dps_identifier",
        "xml_payload",
        "signed_xml",
        "response_payload",
        "validation_report",
        "certificate_fingerprint",
        "created_at",
        "updated_at",
    )


@admin.register(QueueItem)
class QueueItemAdmin(admin.ModelAdmin):
    list_display = ("order_id", "trigger_type", "priority", "status", "scheduled_at", "attempts", "error_code")
    list_filter = ("status", "trigger_type", "priority")
    search_fields = ("order_id", "processed_by")
    readonly_fields = ("started_at", "completed_at", "failed_at", "last_error_at", "result_data", "processed_by")
