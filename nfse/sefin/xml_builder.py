"""Build DPS (Declaração de Prestação de Serviço) XML documents."""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Callable, Mapping, Optional

from django.utils import timezone
from lxml import etree

from nfse.models import NFSeConfig

from .documents import document_kind, format_document, is_valid_cnpj, is_valid_document, only_digits
from .errors import GenerationError
from .orders import Address, OrderSnapshot
from .settings import IssuerSettings, NFSeSettings, SettingsProvider
from .validator import NFSE_NAMESPACE, ValidationIssue, ValidationReport, XsdValidator

logger = logging.getLogger(__name__)

DPS_VERSION = "1.00"
APP_VERSION = "SistemaNFSe-1.0"
NUMBER_FORMAT = Decimal("0.01")
ZERO = Decimal("0.00")

MIN_DESCRIPTION_LENGTH = 15
MAX_DESCRIPTION_LENGTH = 2000

INSCRIPTION_CPF = "1"
INSCRIPTION_CNPJ = "2"

# "DPS" + municipality(7) + inscription type(1) + inscription(14) + series(5) + number(15)
IDENTIFIER_PREFIX = "DPS"
IDENTIFIER_LAYOUT = (
    ("municipality", 7),
    ("inscription_type", 1),
    ("inscription", 14),
    ("series", 5),
    ("number", 15),
)
IDENTIFIER_LENGTH = len(IDENTIFIER_PREFIX) + sum(width for _, width in IDENTIFIER_LAYOUT)

SIMPLES_OPTION = {
    NFSeConfig.TaxRegime.LUCRO_REAL: "1",
    NFSeConfig.TaxRegime.LUCRO_PRESUMIDO: "1",
    NFSeConfig.TaxRegime.MEI: "2",
    NFSeConfig.TaxRegime.SIMPLES_NACIONAL: "3",
}

WITHHELD_TAGS = (
    ("inss", "vRetCP"),
    ("irrf", "vRetIRRF"),
    ("csll", "vRetCSLL"),
    ("pis", "vPIS"),
    ("cofins", "vCOFINS"),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_STREET_NUMBER = re.compile(r",\s*(\d+)\b")


# Identifier --------------------------------------------------------------------------


def fit_digits(value: object, width: int) -> str:
    """Zero-pad to ``width`` or keep the rightmost ``width`` digits."""

    digits = only_digits(value)
    return digits[-width:].zfill(width)


@dataclass(frozen=True)
class DpsIdentifier:
    municipality: str
    inscription_type: str
    inscription: str
    series: str
    number: str

    @classmethod
    def create(
        cls,
        *,
        municipality: object,
        inscription_type: object,
        inscription: object,
        series: object,
        number: object,
    ) -> "DpsIdentifier":
        raw = {
            "municipality": municipality,
            "inscription_type": inscription_type,
            "inscription": inscription,
            "series": series,
            "number": number,
        }
        return cls(**{name: fit_digits(raw[name], width) for name, width in IDENTIFIER_LAYOUT})

    @classmethod
    def parse(cls, value: str) -> "DpsIdentifier":
        if len(value) != IDENTIFIER_LENGTH or not value.startswith(IDENTIFIER_PREFIX):
            raise ValueError(f"Identificador DPS inválido: {value!r}")
        body = value[len(IDENTIFIER_PREFIX):]
        if not body.isdigit():
            raise ValueError(f"Identificador DPS deve conter apenas dígitos após o prefixo: {value!r}")

        parts = {}
        offset = 0
        for name, width in IDENTIFIER_LAYOUT:
            parts[name] = body[offset:offset + width]
            offset += width
        return cls(**parts)

    def build(self) -> str:
        return IDENTIFIER_PREFIX + "".join(getattr(self, name) for name, _ in IDENTIFIER_LAYOUT)

    @property
    def number_value(self) -> int:
        return int(self.number)

    def __str__(self) -> str:
        return self.build()


# Values ------------------------------------------------------------------------------


def _money(value: object) -> Decimal:
    try:
        amount = Decimal(str(value if value is not None else "0"))
    except InvalidOperation as exc:
        raise GenerationError(f"Valor monetário inválido: {value!r}", code="invalid_values") from exc
    return amount.quantize(NUMBER_FORMAT, rounding=ROUND_HALF_EVEN)


def _rate(value: object) -> Decimal:
    """Parse an ISS rate exactly; pAliq carries two decimal places."""

    try:
        rate = Decimal(str(value if value is not None else "0"))
    except InvalidOperation as exc:
        raise GenerationError(f"Alíquota de ISS inválida: {value!r}", code="invalid_values") from exc
    if not rate.is_finite() or rate < 0 or rate > 100:
        raise GenerationError(f"Alíquota de ISS inválida: {value}", code="invalid_values")
    if rate != rate.quantize(NUMBER_FORMAT):
        raise GenerationError(
            f"Alíquota de ISS {value} tem mais de duas casas decimais",
            code="invalid_values",
        )
    return rate.quantize(NUMBER_FORMAT)


def _format_decimal(value: Decimal) -> str:
    return f"{value.quantize(NUMBER_FORMAT, rounding=ROUND_HALF_EVEN):.2f}"


@dataclass(frozen=True)
class DpsValues:
    """Value block. ``tax_base``, ``iss`` and ``net`` are derived, never given."""

    gross: Decimal
    deductions: Decimal
    unconditional_discount: Decimal
    conditional_discount: Decimal
    tax_base: Decimal
    iss_rate: Decimal
    iss: Decimal
    net: Decimal
    withheld: Mapping[str, Decimal] = field(default_factory=dict)

    @property
    def total_withheld(self) -> Decimal:
        return sum(self.withheld.values(), ZERO)

    @classmethod
    def compute(
        cls,
        *,
        gross: object,
        iss_rate: object,
        deductions: object = ZERO,
        unconditional_discount: object = ZERO,
        conditional_discount: object = ZERO,
        withheld: Optional[Mapping[str, object]] = None,
    ) -> "DpsValues":
        gross_value = _money(gross)
        deductions_value = _money(deductions)
        discount_value = _money(unconditional_discount)
        conditional_value = _money(conditional_discount)
        rate = _rate(iss_rate)

        if min(gross_value, deductions_value, discount_value, conditional_value) < 0:
            raise GenerationError("Valores negativos não são permitidos na DPS", code="invalid_values")

        tax_base = gross_value - deductions_value - discount_value
        if tax_base < 0:
            raise GenerationError(
                "Deduções e descontos excedem o valor do serviço",
                code="invalid_values",
            )
        iss = (tax_base * rate / Decimal(100)).quantize(NUMBER_FORMAT, rounding=ROUND_HALF_EVEN)

        return cls(
            gross=gross_value,
            deductions=deductions_value,
            unconditional_discount=discount_value,
            conditional_discount=conditional_value,
            tax_base=tax_base,
            iss_rate=rate,
            iss=iss,
            net=gross_value - iss,
            withheld={
                key: _money(amount)
                for key, amount in (withheld or {}).items()
                if _money(amount) > 0
            },
        )


# Document blocks ---------------------------------------------------------------------


@dataclass(frozen=True)
class PayerBlock:
    document: str
    document_type: str
    name: str
    address: Optional[Address] = None
    email: str = ""
    phone: str = ""


@dataclass(frozen=True)
class ServiceBlock:
    location_code: str
    national_code: str
    description: str
    nbs_code: str = ""


@dataclass(frozen=True)
class DpsDocument:
    identifier: DpsIdentifier
    number: int
    series: str
    environment: str
    issued_at: dt.datetime
    issuer: IssuerSettings
    payer: PayerBlock
    service: ServiceBlock
    values: DpsValues
    xml: str

    @property
    def id(self) -> str:
        return self.identifier.build()


# XML helpers -------------------------------------------------------------------------


def _clean(value: object, max_length: Optional[int] = None) -> str:
    text = _CONTROL_CHARS.sub("", str(value or "")).strip()
    text = re.sub(r"\s+", " ", text)
    if max_length is not None:
        text = text[:max_length]
    return text


def _tag(name: str) -> str:
    return f"{{{NFSE_NAMESPACE}}}{name}"


def _add_text(parent: etree._Element, tag: str, text: object) -> etree._Element:
    element = etree.SubElement(parent, _tag(tag))
    element.text = str(text)
    return element


def _add_address(parent: etree._Element, *, city_code: str, postal_code: str, street: str,
                 number: str, complement: str, district: str) -> None:
    end = etree.SubElement(parent, _tag("end"))
    end_nac = etree.SubElement(end, _tag("endNac"))
    _add_text(end_nac, "cMun", city_code)
    _add_text(end_nac, "CEP", postal_code)
    _add_text(end, "xLgr", _clean(street, 255))
    _add_text(end, "nro", _clean(number, 60) or "S/N")
    if _clean(complement):
        _add_text(end, "xCpl", _clean(complement, 156))
    _add_text(end, "xBairro", _clean(district, 60) or "Centro")


def _quantity_label(quantity: Decimal) -> str:
    if quantity == quantity.to_integral_value():
        return str(int(quantity))
    return f"{quantity.normalize()}"


# Generator ---------------------------------------------------------------------------


class DpsGenerator:
    """Turn an :class:`OrderSnapshot` into a DPS plus its validation report.

    Generation itself is pure. The DPS number is taken from the caller or
    from ``number_allocator`` only after the order data has been checked,
    so rejected orders do not consume numbers.
    """

    def __init__(
        self,
        settings: SettingsProvider,
        *,
        validator: Optional[XsdValidator] = None,
        number_allocator: Optional[Callable[[], int]] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._settings = settings
        self._validator = validator or XsdValidator()
        self._number_allocator = number_allocator or NFSeConfig.reserve_dps_number
        self._clock = clock or timezone.now

    def generate(self, order: OrderSnapshot, *, number: Optional[int] = None) -> tuple[DpsDocument, ValidationReport]:
        snapshot = self._settings.snapshot()
        issuer = self._check_issuer(snapshot.issuer)
        payer = self.build_payer(order)
        service = self.build_service(order, snapshot)
        values = DpsValues.compute(
            gross=order.gross,
            iss_rate=snapshot.service.aliquota_iss,
            deductions=order.deductions,
            unconditional_discount=order.discount_total,
            conditional_discount=order.conditional_discount,
            withheld=order.withheld,
        )

        if number is None:
            number = int(self._number_allocator())
        if number < 1:
            raise GenerationError(f"Número de DPS inválido: {number}", code="invalid_values")

        identifier = DpsIdentifier.create(
            municipality=issuer.codigo_municipio,
            inscription_type=INSCRIPTION_CNPJ,
            inscription=issuer.cnpj,
            series=snapshot.service.serie_dps,
            number=number,
        )
        issued_at = self._clock()

        document = DpsDocument(
            identifier=identifier,
            number=number,
            series=snapshot.service.serie_dps,
            environment=snapshot.tp_amb,
            issued_at=issued_at,
            issuer=issuer,
            payer=payer,
            service=service,
            values=values,
            xml="",
        )
        xml = self.render(document)
        document = replace(document, xml=xml)

        report = self._validator.validate_against_schema(xml, "dps")
        self._cross_check(order, values, report)
        logger.info(
            "NFS-e: DPS %s gerada para o pedido %s (válida=%s, erros=%d)",
            document.id,
            order.order_id,
            report.valid,
            len(report.errors),
        )
        return document, report

    # Blocks --------------------------------------------------------------------------

    def _check_issuer(self, issuer: IssuerSettings) -> IssuerSettings:
        required = {
            "cnpj": "CNPJ",
            "inscricao_municipal": "inscrição municipal",
            "razao_social": "razão social",
            "codigo_municipio": "código do município",
            "logradouro": "logradouro",
            "cep": "CEP",
        }
        for name, label in required.items():
            if not getattr(issuer, name):
                raise GenerationError(
                    f"Dados do prestador incompletos: {label} não configurado",
                    code="missing_issuer_field",
                )
        if not is_valid_cnpj(issuer.cnpj):
            raise GenerationError("CNPJ do prestador inválido", code="invalid_issuer_document")
        if len(issuer.codigo_municipio) != 7:
            raise GenerationError(
                "Código IBGE do município do prestador deve ter 7 dígitos",
                code="missing_issuer_field",
            )
        return issuer

    def build_payer(self, order: OrderSnapshot) -> PayerBlock:
        document = order.document_digits
        if not document:
            raise GenerationError(
                f"Pedido {order.order_id}: CPF/CNPJ do tomador não informado",
                code="missing_payer_field",
            )

        kind = document_kind(document)
        if kind is None:
            raise GenerationError(
                f"Pedido {order.order_id}: documento do tomador deve ter 11 (CPF) ou 14 (CNPJ) dígitos",
                code="invalid_payer_document",
            )
        if not is_valid_document(document):
            raise GenerationError(
                f"Pedido {order.order_id}: {kind.upper()} {format_document(document)} do tomador "
                "com dígito verificador inválido",
                code="invalid_payer_document",
            )

        if kind == "cnpj":
            name = order.company_name.strip() or order.customer_name.strip()
        else:
            name = order.customer_name.strip()
        if not name:
            raise GenerationError(
                f"Pedido {order.order_id}: nome do tomador não informado",
                code="missing_payer_field",
            )

        address = order.billing_address
        if address is not None and not address.is_complete:
            if kind == "cnpj":
                raise GenerationError(
                    f"Pedido {order.order_id}: endereço completo do tomador é obrigatório para CNPJ",
                    code="missing_payer_field",
                )
            address = None
        elif address is None and kind == "cnpj":
            raise GenerationError(
                f"Pedido {order.order_id}: endereço do tomador é obrigatório para CNPJ",
                code="missing_payer_field",
            )

        phone = only_digits(order.phone)
        return PayerBlock(
            document=document,
            document_type=kind,
            name=_clean(name, 300),
            address=address,
            email=_clean(order.email, 80),
            phone=phone if 6 <= len(phone) <= 20 else "",
        )

    def build_service(self, order: OrderSnapshot, snapshot: NFSeSettings) -> ServiceBlock:
        national_code = ""
        nbs_code = ""
        for item in order.items:
            national_code = national_code or only_digits(item.service_code)
            nbs_code = nbs_code or only_digits(item.nbs_code)
        national_code = national_code or snapshot.service.codigo_tributacao_nacional
        nbs_code = nbs_code or snapshot.service.codigo_nbs

        if len(national_code) != 6:
            raise GenerationError(
                "Código de tributação nacional (6 dígitos) não configurado",
                code="missing_service_field",
            )

        return ServiceBlock(
            location_code=snapshot.issuer.codigo_municipio,
            national_code=national_code,
            description=self.describe_service(order),
            nbs_code=nbs_code if len(nbs_code) == 9 else "",
        )

    @staticmethod
    def describe_service(order: OrderSnapshot) -> str:
        parts = [
            f"{_quantity_label(Decimal(str(item.quantity)))}x {_clean(item.description)} - R$ {_format_decimal(_money(item.total))}"
            for item in order.items
        ]
        description = _clean("; ".join(parts))
        if len(description) < MIN_DESCRIPTION_LENGTH:
            description = f"Venda de produtos/serviços - Pedido #{order.order_id}"
        if len(description) > MAX_DESCRIPTION_LENGTH:
            description = description[:MAX_DESCRIPTION_LENGTH - 3] + "..."
        return description

    # Rendering -----------------------------------------------------------------------

    def render(self, document: DpsDocument) -> str:
        issuer = document.issuer
        local_issued = timezone.localtime(document.issued_at) if timezone.is_aware(document.issued_at) else document.issued_at

        root = etree.Element(_tag("DPS"), nsmap={None: NFSE_NAMESPACE})
        root.set("versao", DPS_VERSION)
        inf = etree.SubElement(root, _tag("infDPS"))
        inf.set("Id", document.id)

        _add_text(inf, "tpAmb", document.environment)
        _add_text(inf, "dhEmi", local_issued.isoformat(timespec="seconds"))
        _add_text(inf, "verAplic", APP_VERSION)
        _add_text(inf, "serie", str(int(document.series)))
        _add_text(inf, "nDPS", str(document.number))
        _add_text(inf, "dCompet", local_issued.date().isoformat())
        _add_text(inf, "tpEmit", "1")
        _add_text(inf, "cLocEmi", issuer.codigo_municipio)

        prest = etree.SubElement(inf, _tag("prest"))
        _add_text(prest, "CNPJ", issuer.cnpj)
        _add_text(prest, "IM", _clean(issuer.inscricao_municipal, 15))
        _add_text(prest, "xNome", _clean(issuer.razao_social, 300))
        _add_address(
            prest,
            city_code=issuer.codigo_municipio,
            postal_code=issuer.cep,
            street=issuer.logradouro,
            number=issuer.numero,
            complement=issuer.complemento,
            district=issuer.bairro,
        )
        if 6 <= len(issuer.telefone) <= 20:
            _add_text(prest, "fone", issuer.telefone)
        if issuer.email:
            _add_text(prest, "email", _clean(issuer.email, 80))
        reg_trib = etree.SubElement(prest, _tag("regTrib"))
        _add_text(reg_trib, "opSimpNac", SIMPLES_OPTION.get(issuer.regime_tributario, "1"))
        _add_text(reg_trib, "regEspTrib", "0")

        self._render_payer(inf, document.payer)

        serv = etree.SubElement(inf, _tag("serv"))
        loc = etree.SubElement(serv, _tag("locPrest"))
        _add_text(loc, "cLocPrestacao", document.service.location_code)
        c_serv = etree.SubElement(serv, _tag("cServ"))
        _add_text(c_serv, "cTribNac", document.service.national_code)
        _add_text(c_serv, "xDescServ", document.service.description)
        if document.service.nbs_code:
            _add_text(c_serv, "cNBS", document.service.nbs_code)

        self._render_values(inf, document.values)

        return etree.tostring(root, encoding="UTF-8", xml_declaration=True).decode("utf-8")

    def _render_payer(self, inf: etree._Element, payer: PayerBlock) -> None:
        toma = etree.SubElement(inf, _tag("toma"))
        _add_text(toma, "CNPJ" if payer.document_type == "cnpj" else "CPF", payer.document)
        _add_text(toma, "xNome", payer.name)
        if payer.address is not None:
            address = payer.address
            number = address.number.strip()
            if not number:
                match = _STREET_NUMBER.search(address.street)
                number = match.group(1) if match else "S/N"
            _add_address(
                toma,
                city_code=only_digits(address.city_code),
                postal_code=only_digits(address.postal_code),
                street=address.street,
                number=number,
                complement=address.complement,
                district=address.district,
            )
        if payer.phone:
            _add_text(toma, "fone", payer.phone)
        if payer.email:
            _add_text(toma, "email", payer.email)

    def _render_values(self, inf: etree._Element, values: DpsValues) -> None:
        valores = etree.SubElement(inf, _tag("valores"))
        serv_prest = etree.SubElement(valores, _tag("vServPrest"))
        _add_text(serv_prest, "vServ", _format_decimal(values.gross))

        if values.unconditional_discount or values.conditional_discount:
            desc = etree.SubElement(valores, _tag("vDescCondIncond"))
            if values.unconditional_discount:
                _add_text(desc, "vDescIncond", _format_decimal(values.unconditional_discount))
            if values.conditional_discount:
                _add_text(desc, "vDescCond", _format_decimal(values.conditional_discount))

        if values.deductions:
            ded = etree.SubElement(valores, _tag("vDedRed"))
            _add_text(ded, "vDR", _format_decimal(values.deductions))

        trib = etree.SubElement(valores, _tag("trib"))
        trib_mun = etree.SubElement(trib, _tag("tribMun"))
        _add_text(trib_mun, "tribISSQN", "1")
        _add_text(trib_mun, "tpRetISSQN", "1")
        _add_text(trib_mun, "vBC", _format_decimal(values.tax_base))
        _add_text(trib_mun, "pAliq", _format_decimal(values.iss_rate))
        _add_text(trib_mun, "vISSQN", _format_decimal(values.iss))

        if values.withheld:
            trib_fed = etree.SubElement(trib, _tag("tribFed"))
            for key, tag in WITHHELD_TAGS:
                if key in values.withheld:
                    _add_text(trib_fed, tag, _format_decimal(values.withheld[key]))
            _add_text(valores, "vTotRet", _format_decimal(values.total_withheld))

        _add_text(valores, "vLiq", _format_decimal(values.net))

    # Consistency ---------------------------------------------------------------------

    @staticmethod
    def _cross_check(order: OrderSnapshot, values: DpsValues, report: ValidationReport) -> None:
        expected_total = values.gross - values.unconditional_discount - values.conditional_discount
        declared_total = _money(order.total)
        if declared_total != expected_total:
            report.errors.append(
                ValidationIssue(
                    message=(
                        f"Total do pedido ({_format_decimal(declared_total)}) difere do total calculado "
                        f"({_format_decimal(expected_total)})"
                    ),
                    rule="declared_total_mismatch",
                    path="valores/vServPrest/vServ",
                )
            )
        if order.declared_iss is not None and _money(order.declared_iss) != values.iss:
            report.errors.append(
                ValidationIssue(
                    message=(
                        f"ISS informado ({_format_decimal(_money(order.declared_iss))}) difere do ISS calculado "
                        f"({_format_decimal(values.iss)})"
                    ),
                    rule="declared_iss_mismatch",
                    path="valores/trib/tribMun/vISSQN",
                )
            )
        report.valid = not report.errors


__all__ = [
    "APP_VERSION",
    "DPS_VERSION",
    "DpsDocument",
    "DpsGenerator",
    "DpsIdentifier",
    "DpsValues",
    "IDENTIFIER_LENGTH",
    "PayerBlock",
    "ServiceBlock",
    "fit_digits",
]
