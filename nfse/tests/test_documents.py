from __future__ import annotations

from django.contrib import admin
from django.test import SimpleTestCase

from nfse.admin import NFSeConfigAdmin
from nfse.models import NFSeConfig
from nfse.sefin import documents


class DocumentCheckDigitTests(SimpleTestCase):
    def test_valid_cpf_with_and_without_mask(self) -> None:
        self.assertTrue(documents.is_valid_cpf("52998224725"))
        self.assertTrue(documents.is_valid_cpf("529.982.247-25"))

    def test_cpf_with_wrong_digit_is_rejected(self) -> None:
        self.assertFalse(documents.is_valid_cpf("52998224726"))

    def test_repeated_digits_are_rejected(self) -> None:
        self.assertFalse(documents.is_valid_cpf("11111111111"))
        self.assertFalse(documents.is_valid_cnpj("00000000000000"))

    def test_valid_cnpj(self) -> None:
        self.assertTrue(documents.is_valid_cnpj("11.222.333/0001-81"))
        self.assertFalse(documents.is_valid_cnpj("11.222.333/0001-82"))

    def test_document_kind_by_length(self) -> None:
        self.assertEqual(documents.document_kind("529.982.247-25"), "cpf")
        self.assertEqual(documents.document_kind("11222333000181"), "cnpj")
        self.assertIsNone(documents.document_kind("123"))
        self.assertFalse(documents.is_valid_document("123"))

    def test_formatting(self) -> None:
        self.assertEqual(documents.format_cpf("52998224725"), "529.982.247-25")
        self.assertEqual(documents.format_cnpj("11222333000181"), "11.222.333/0001-81")
        self.assertEqual(documents.format_cnpj("123"), "123")
        self.assertEqual(documents.format_document("52998224725"), "529.982.247-25")
        self.assertEqual(documents.format_document("11222333000181"), "11.222.333/0001-81")


class ConfigAdminTests(SimpleTestCase):
    def test_cnpj_is_listed_with_mask(self) -> None:
        model_admin = NFSeConfigAdmin(NFSeConfig, admin.site)
        self.assertIn("cnpj_formatado", model_admin.list_display)
        self.assertEqual(model_admin.cnpj_formatado(NFSeConfig(cnpj="11222333000181")), "11.222.333/0001-81")
