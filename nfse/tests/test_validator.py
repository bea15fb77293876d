from __future__ import annotations

import datetime as dt

from django.test import SimpleTestCase

from nfse.models import NFSeConfig
from nfse.sefin.settings import SettingsProvider
from nfse.sefin.validator import XsdValidator, check_schemas_availability, get_schema_info
from nfse.sefin.xml_builder import DpsGenerator

from .factories import config_values, make_order


def _valid_xml(**order_overrides) -> str:
    config = NFSeConfig(**config_values())
    generator = DpsGenerator(
        SettingsProvider(loader=lambda: config),
        clock=lambda: dt.datetime(2024, 6, 7, 13, 0, tzinfo=dt.timezone.utc),
    )
    document, _ = generator.generate(make_order(**order_overrides), number=1)
    return document.xml


class SchemaRegistryTests(SimpleTestCase):
    def test_all_schemas_are_bundled(self) -> None:
        self.assertTrue(all(check_schemas_availability().values()))

    def test_schema_info(self) -> None:
        info = get_schema_info("dps")
        self.assertTrue(info["available"])
        self.assertIn("DPS_v1.00.xsd", info["file"])


class XsdValidatorTests(SimpleTestCase):
    def setUp(self) -> None:
        self.validator = XsdValidator()
        super().setUp()

    def test_malformed_xml_is_reported_not_raised(self) -> None:
        report = self.validator.validate_against_schema("<DPS><infDPS>", "dps")
        self.assertFalse(report.valid)
        self.assertEqual(report.errors[0].rule, "malformed_xml")
        self.assertIsNotNone(report.errors[0].line)

    def test_unknown_schema(self) -> None:
        report = self.validator.validate_against_schema(_valid_xml(), "tipos_simples")
        self.assertFalse(report.valid)
        self.assertEqual(report.errors[0].rule, "unknown_schema")

    def test_missing_element_has_location(self) -> None:
        xml = _valid_xml().replace("<vLiq>950.00</vLiq>", "")
        report = self.validator.validate_against_schema(xml, "dps")
        self.assertFalse(report.valid)
        self.assertTrue(any(issue.line for issue in report.errors))
        self.assertIn("valores/vLiq", report.coverage.missing)

    def test_recommended_fields_are_warnings(self) -> None:
        report = self.validator.validate_against_schema(_valid_xml(email=""), "dps")
        self.assertTrue(report.valid, report.error_messages)
        rules = {(issue.rule, issue.path) for issue in report.warnings}
        self.assertIn(("recommended_field_missing", "toma/email"), rules)

    def test_signed_schema_requires_signature(self) -> None:
        report = self.validator.validate_against_schema(_valid_xml(), "dps_assinada")
        self.assertFalse(report.valid)

    def test_structure_checks(self) -> None:
        report = self.validator.validate_structure(b"<Other xmlns='urn:x'/>")
        self.assertFalse(report.valid)
        rules = {issue.rule for issue in report.errors + report.warnings}
        self.assertEqual(rules, {"root_element", "namespace", "missing_declaration"})

    def test_comprehensive_report(self) -> None:
        result = self.validator.comprehensive_report(_valid_xml())
        self.assertEqual(result.summary["schemas_tested"], 2)
        self.assertEqual(result.summary["schemas_valid"], 1)
        self.assertFalse(result.valid)
        self.assertEqual(result.recommendations[0]["priority"], "high")
        self.assertIn("Assine o documento antes do envio", [item["message"] for item in result.recommendations])
        self.assertEqual(len(result.xml_info["md5"]), 32)
        self.assertIsInstance(result.as_dict(), dict)

    def test_unencodable_text_is_reported_not_raised(self) -> None:
        xml = "<DPS>\udc80</DPS>"

        structure = self.validator.validate_structure(xml)
        self.assertFalse(structure.valid)
        self.assertTrue(structure.errors)

        report = self.validator.validate_against_schema(xml, "dps")
        self.assertFalse(report.valid)
        self.assertTrue(report.errors)

        self.assertFalse(self.validator.comprehensive_report(xml).valid)
