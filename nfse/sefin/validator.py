"""XSD validation and compliance reports for DPS documents.

The public methods never raise on bad input: malformed XML, unknown
schemas or missing schema files are reported as errors inside the
returned report so admin surfaces can always render something.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from django.utils import timezone
from lxml import etree

logger = logging.getLogger(__name__)

NFSE_NAMESPACE = "http://www.sped.fazenda.gov.br/nfse"
DSIG_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

SCHEMA_FILES = {
    "dps": "DPS_v1.00.xsd",
    "dps_assinada": "DPSAssinada_v1.00.xsd",
    "tipos_complexos": "tiposComplexos_v1.00.xsd",
    "tipos_simples": "tiposSimples_v1.00.xsd",
}
# Type libraries are included by the document schemas and declare no root.
DOCUMENT_SCHEMAS = ("dps", "dps_assinada")

MANDATORY_FIELDS: dict[str, tuple[str, ...]] = {
    "identification": (
        "tpAmb",
        "dhEmi",
        "verAplic",
        "serie",
        "nDPS",
        "dCompet",
        "tpEmit",
        "cLocEmi",
    ),
    "issuer": (
        "prest/CNPJ",
        "prest/IM",
        "prest/xNome",
        "prest/end/endNac/cMun",
        "prest/end/endNac/CEP",
        "prest/end/xLgr",
        "prest/end/nro",
        "prest/end/xBairro",
        "prest/regTrib/opSimpNac",
        "prest/regTrib/regEspTrib",
    ),
    "payer": (
        "toma/CPF|toma/CNPJ",
        "toma/xNome",
    ),
    "service": (
        "serv/locPrest/cLocPrestacao",
        "serv/cServ/cTribNac",
        "serv/cServ/xDescServ",
    ),
    "values": (
        "valores/vServPrest/vServ",
        "valores/trib/tribMun/tribISSQN",
        "valores/trib/tribMun/tpRetISSQN",
        "valores/trib/tribMun/vBC",
        "valores/trib/tribMun/pAliq",
        "valores/trib/tribMun/vISSQN",
        "valores/vLiq",
    ),
}

RECOMMENDED_FIELDS = {
    "toma/email": "E-mail do tomador ausente; a NFS-e não será enviada ao cliente",
    "serv/cServ/cNBS": "Código NBS não informado",
}

_DECLARATION_RE = re.compile(rb"^\s*<\?xml[^>]*?encoding\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_ELEMENT_RE = re.compile(r"Element '(?:\{[^}]*\})?([^']+)'")

XmlInput = Union[str, bytes]


class SchemaNotAvailable(RuntimeError):
    """Raised internally when a schema file is missing or does not compile."""


# Report types ------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationIssue:
    message: str
    rule: str
    path: str = ""
    line: Optional[int] = None
    column: Optional[int] = None

    def __str__(self) -> str:
        if self.line is not None:
            return "Line %d, Column %d: %s" % (self.line, self.column or 0, self.message)
        return self.message

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class SectionCoverage:
    total: int
    implemented: int
    percentage: float
    missing: list[str] = field(default_factory=list)


@dataclass
class CoverageReport:
    total_mandatory: int
    implemented: int
    percentage: float
    sections: dict[str, SectionCoverage] = field(default_factory=dict)

    @property
    def missing(self) -> list[str]:
        return [path for section in self.sections.values() for path in section.missing]


@dataclass
class PerformanceMetrics:
    elapsed_ms: float
    payload_size: int


@dataclass
class ValidationReport:
    schema_name: str
    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    coverage: Optional[CoverageReport] = None
    performance: PerformanceMetrics = field(default_factory=lambda: PerformanceMetrics(0.0, 0))
    schema_info: dict = field(default_factory=dict)

    @property
    def error_messages(self) -> list[str]:
        return [str(issue) for issue in self.errors]

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class StructureReport:
    valid: bool
    root: str = ""
    namespace: str = ""
    encoding: str = ""
    element_count: int = 0
    has_signature: bool = False
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    performance: PerformanceMetrics = field(default_factory=lambda: PerformanceMetrics(0.0, 0))

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ComprehensiveReport:
    timestamp: str
    xml_info: dict
    structure: StructureReport
    schema_results: dict[str, ValidationReport]
    summary: dict
    recommendations: list[dict]

    @property
    def valid(self) -> bool:
        return bool(self.summary.get("overall_valid"))

    def as_dict(self) -> dict:
        return asdict(self)


# Schema registry ---------------------------------------------------------------------


@functools.lru_cache(maxsize=None)
def load_schema(name: str) -> etree.XMLSchema:
    """Compile (once) and return the named schema."""

    filename = SCHEMA_FILES.get(name)
    if filename is None:
        raise SchemaNotAvailable(f"Schema desconhecido: {name}")
    path = SCHEMA_DIR / filename
    if not path.exists():
        raise SchemaNotAvailable(f"Arquivo de schema não encontrado: {path}")
    try:
        return etree.XMLSchema(etree.parse(str(path)))
    except (etree.XMLSchemaParseError, etree.XMLSyntaxError) as exc:
        raise SchemaNotAvailable(f"Schema {filename} inválido: {exc}") from exc


def check_schemas_availability() -> dict[str, bool]:
    return {name: (SCHEMA_DIR / filename).exists() for name, filename in SCHEMA_FILES.items()}


def get_schema_info(name: str) -> dict:
    filename = SCHEMA_FILES.get(name, "")
    path = SCHEMA_DIR / filename if filename else None
    exists = bool(path and path.exists())
    return {
        "name": name,
        "file": filename,
        "available": exists,
        "size": path.stat().st_size if exists else 0,
        "namespace": NFSE_NAMESPACE,
        "document_schema": name in DOCUMENT_SCHEMAS,
    }


# Helpers -----------------------------------------------------------------------------


def _as_bytes(xml: XmlInput) -> bytes:
    if isinstance(xml, bytes):
        return xml
    # Lone surrogates become invalid UTF-8 and surface as malformed_xml.
    return (xml or "").encode("utf-8", errors="surrogatepass")


def _parse(payload: bytes) -> etree._Element:
    parser = etree.XMLParser(no_network=True, recover=False, resolve_entities=False)
    return etree.fromstring(payload, parser=parser)


def _syntax_issues(exc: Exception) -> list[ValidationIssue]:
    issues = [
        ValidationIssue(
            message=entry.message,
            rule="malformed_xml",
            line=entry.line,
            column=entry.column,
        )
        for entry in getattr(exc, "error_log", ())
        if entry.level >= etree.ErrorLevels.ERROR
    ]
    if not issues:
        line, column = getattr(exc, "position", None) or (None, None)
        issues.append(ValidationIssue(message=str(exc) or "XML vazio", rule="malformed_xml", line=line, column=column))
    return issues


def _issue_from_log(entry) -> ValidationIssue:
    match = _ELEMENT_RE.search(entry.message or "")
    return ValidationIssue(
        message=entry.message,
        rule=entry.type_name or "schema",
        path=match.group(1) if match else (entry.path or ""),
        line=entry.line,
        column=entry.column,
    )


def _find(infdps: etree._Element, path: str) -> Optional[etree._Element]:
    xpath = "/".join(f"n:{step}" for step in path.split("/"))
    return infdps.find(xpath, namespaces={"n": NFSE_NAMESPACE})


def _has_value(infdps: etree._Element, paths: str) -> bool:
    for alternative in paths.split("|"):
        node = _find(infdps, alternative)
        if node is not None and (node.text or "").strip():
            return True
    return False


def _percentage(part: int, total: int) -> float:
    if not total:
        return 0.0
    return round(part / total * 100, 1)


def _infdps(root: etree._Element) -> Optional[etree._Element]:
    if etree.QName(root).localname == "infDPS":
        return root
    return root.find(f"{{{NFSE_NAMESPACE}}}infDPS")


class XsdValidator:
    """Validate DPS XML against the bundled schemas."""

    def validate_structure(self, xml: XmlInput) -> StructureReport:
        started = time.perf_counter()
        payload = _as_bytes(xml)
        report = StructureReport(valid=False)

        try:
            root = _parse(payload)
        except (etree.XMLSyntaxError, ValueError) as exc:
            report.errors.extend(_syntax_issues(exc))
            report.performance = self._metrics(started, payload)
            return report

        qname = etree.QName(root)
        report.root = qname.localname
        report.namespace = qname.namespace or ""
        report.element_count = sum(1 for _ in root.iter(etree.Element))
        report.has_signature = root.find(f".//{{{DSIG_NAMESPACE}}}Signature") is not None

        declared = _DECLARATION_RE.match(payload)
        report.encoding = declared.group(1).decode("ascii").upper() if declared else ""
        if not declared:
            report.warnings.append(
                ValidationIssue(message="Declaração XML/encoding ausente", rule="missing_declaration")
            )
        elif report.encoding not in ("UTF-8", "UTF8"):
            report.warnings.append(
                ValidationIssue(
                    message=f"Encoding {report.encoding} não recomendado; utilize UTF-8",
                    rule="encoding",
                )
            )

        if report.namespace != NFSE_NAMESPACE:
            report.warnings.append(
                ValidationIssue(
                    message=f"Namespace inesperado: {report.namespace or '(nenhum)'}",
                    rule="namespace",
                    path=report.root,
                )
            )
        if report.root != "DPS":
            report.errors.append(
                ValidationIssue(
                    message=f"Elemento raiz deve ser DPS, encontrado {report.root}",
                    rule="root_element",
                    path=report.root,
                )
            )
        elif _infdps(root) is None:
            report.errors.append(
                ValidationIssue(message="Elemento infDPS ausente", rule="missing_element", path="infDPS")
            )

        report.valid = not report.errors
        report.performance = self._metrics(started, payload)
        return report

    def validate_against_schema(self, xml: XmlInput, schema_name: str = "dps") -> ValidationReport:
        started = time.perf_counter()
        payload = _as_bytes(xml)
        report = ValidationReport(schema_name=schema_name, valid=False, schema_info=get_schema_info(schema_name))

        if schema_name not in DOCUMENT_SCHEMAS:
            report.errors.append(
                ValidationIssue(
                    message=f"Schema {schema_name} não valida documentos completos",
                    rule="unknown_schema",
                )
            )
            report.performance = self._metrics(started, payload)
            return report

        try:
            schema = load_schema(schema_name)
        except SchemaNotAvailable as exc:
            logger.error("NFS-e: schema %s indisponível: %s", schema_name, exc)
            report.errors.append(ValidationIssue(message=str(exc), rule="schema_unavailable"))
            report.performance = self._metrics(started, payload)
            return report

        try:
            root = _parse(payload)
        except (etree.XMLSyntaxError, ValueError) as exc:
            report.errors.extend(_syntax_issues(exc))
            report.performance = self._metrics(started, payload)
            return report

        schema.validate(root)
        for entry in schema.error_log:
            issue = _issue_from_log(entry)
            if entry.level == etree.ErrorLevels.WARNING:
                report.warnings.append(issue)
            else:
                report.errors.append(issue)

        infdps = _infdps(root)
        if infdps is not None:
            report.coverage = self.coverage(infdps)
            for path, message in RECOMMENDED_FIELDS.items():
                if not _has_value(infdps, path):
                    report.warnings.append(
                        ValidationIssue(message=message, rule="recommended_field_missing", path=path)
                    )

        report.valid = not report.errors
        report.performance = self._metrics(started, payload)
        return report

    def coverage(self, infdps: etree._Element) -> CoverageReport:
        sections: dict[str, SectionCoverage] = {}
        total = implemented = 0
        for section, paths in MANDATORY_FIELDS.items():
            missing = [path for path in paths if not _has_value(infdps, path)]
            done = len(paths) - len(missing)
            sections[section] = SectionCoverage(
                total=len(paths),
                implemented=done,
                percentage=_percentage(done, len(paths)),
                missing=missing,
            )
            total += len(paths)
            implemented += done
        return CoverageReport(
            total_mandatory=total,
            implemented=implemented,
            percentage=_percentage(implemented, total),
            sections=sections,
        )

    def comprehensive_report(
        self,
        xml: XmlInput,
        schema_names: Iterable[str] = DOCUMENT_SCHEMAS,
    ) -> ComprehensiveReport:
        payload = _as_bytes(xml)
        structure = self.validate_structure(payload)
        results = {name: self.validate_against_schema(payload, name) for name in schema_names}

        tested = len(results)
        passed = sum(1 for result in results.values() if result.valid)
        total_errors = len(structure.errors) + sum(len(r.errors) for r in results.values())
        total_warnings = len(structure.warnings) + sum(len(r.warnings) for r in results.values())

        summary = {
            "overall_valid": structure.valid and tested > 0 and passed == tested,
            "schemas_tested": tested,
            "schemas_valid": passed,
            "total_errors": total_errors,
            "total_warnings": total_warnings,
            "compliance_percentage": _percentage(passed, tested),
        }

        return ComprehensiveReport(
            timestamp=timezone.now().isoformat(),
            xml_info={"size": len(payload), "md5": hashlib.md5(payload).hexdigest()},
            structure=structure,
            schema_results=results,
            summary=summary,
            recommendations=self._recommendations(structure, results),
        )

    # Internals -----------------------------------------------------------------------

    def _recommendations(self, structure: StructureReport, results: dict[str, ValidationReport]) -> list[dict]:
        items: list[tuple[int, str]] = []
        if not structure.valid:
            items.append((0, "Corrija a estrutura do XML antes de validar contra os schemas"))
        for name, result in results.items():
            if result.errors:
                items.append((0, f"Corrija {len(result.errors)} erro(s) de schema em {name}"))
            if result.coverage and result.coverage.missing:
                missing = ", ".join(result.coverage.missing)
                items.append((1, f"Preencha os campos obrigatórios ausentes: {missing}"))
        if structure.valid and not structure.has_signature:
            items.append((1, "Assine o documento antes do envio"))
        warnings = len(structure.warnings) + sum(len(r.warnings) for r in results.values())
        if warnings:
            items.append((2, f"Revise {warnings} aviso(s) não bloqueante(s)"))
        if not items:
            items.append((2, "Documento em conformidade e pronto para envio"))

        labels = {0: "high", 1: "medium", 2: "low"}
        seen: set[str] = set()
        ordered = []
        for priority, message in sorted(items, key=lambda item: item[0]):
            if message in seen:
                continue
            seen.add(message)
            ordered.append({"priority": labels[priority], "message": message})
        return ordered

    @staticmethod
    def _metrics(started: float, payload: bytes) -> PerformanceMetrics:
        return PerformanceMetrics(
            elapsed_ms=round((time.perf_counter() - started) * 1000, 3),
            payload_size=len(payload),
        )


__all__ = [
    "ComprehensiveReport",
    "CoverageReport",
    "DOCUMENT_SCHEMAS",
    "MANDATORY_FIELDS",
    "NFSE_NAMESPACE",
    "PerformanceMetrics",
    "SCHEMA_FILES",
    "StructureReport",
    "ValidationIssue",
    "ValidationReport",
    "XsdValidator",
    "check_schemas_availability",
    "get_schema_info",
    "load_schema",
]
