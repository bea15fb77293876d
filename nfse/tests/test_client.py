from __future__ import annotations

from unittest import mock

from django.test import SimpleTestCase, TestCase

from nfse.models import NFSeConfig
from nfse.sefin import client
from nfse.sefin.compressor import compress_and_encode, decode_and_decompress
from nfse.sefin.errors import CompressionError, SubmissionError
from nfse.sefin.settings import SettingsProvider

from .factories import make_config


class CompressorTests(SimpleTestCase):
    def test_round_trip(self) -> None:
        xml = "<DPS>ação</DPS>"
        self.assertEqual(decode_and_decompress(compress_and_encode(xml)), xml)

    def test_limits(self) -> None:
        with self.assertRaises(CompressionError) as ctx:
            compress_and_encode("   ")
        self.assertEqual(ctx.exception.code, "payload_empty")
        with self.assertRaises(CompressionError) as ctx:
            compress_and_encode("<a>" + "x" * 100 + "</a>", max_size=50)
        self.assertEqual(ctx.exception.code, "payload_too_large")

    def test_invalid_payload(self) -> None:
        with self.assertRaises(CompressionError):
            decode_and_decompress("não é base64")


class SefinClientTests(SimpleTestCase):
    def _client(self, response=None, side_effect=None) -> tuple[client.SefinClient, mock.Mock]:
        http_request = mock.Mock(return_value=response, side_effect=side_effect)
        return client.SefinClient(http_request=http_request), http_request

    def test_endpoints_per_environment(self) -> None:
        production = client.SefinClient(environment=NFSeConfig.Environment.PRODUCAO)
        self.assertEqual(production.base_url, "https://sefin.nfse.gov.br/sefinnacional")
        homologation = client.SefinClient()
        self.assertEqual(homologation.base_url, "https://sefin.producaorestrita.nfse.gov.br/SefinNacional")
        custom = client.SefinClient(base_url="https://proxy.test/api/")
        self.assertEqual(custom.base_url, "https://proxy.test/api")

    def test_unknown_environment(self) -> None:
        with self.assertRaises(ValueError):
            client.SefinClient(environment="local")

    def test_submit_posts_compressed_payload(self) -> None:
        sefin, http_request = self._client({"chaveAcesso": "3550308" + "1" * 43, "idDps": "DPS123"})

        response = sefin.submit("<DPS/>")

        method, url, headers, body = http_request.call_args.args
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/nfse"))
        self.assertEqual(headers["Content-Type"], "application/json")
        self.assertEqual(decode_and_decompress(body["dpsXmlGZipB64"]), "<DPS/>")
        self.assertEqual(response.access_key, "3550308" + "1" * 43)
        self.assertEqual(response.protocol, "DPS123")
        self.assertEqual(response.status, "autorizada")

    def test_submit_without_access_key(self) -> None:
        sefin, _ = self._client({"mensagem": "ok"})
        with self.assertRaises(SubmissionError) as ctx:
            sefin.submit("<DPS/>")
        self.assertEqual(ctx.exception.code, "invalid_response")
        self.assertFalse(ctx.exception.retryable)

    def test_requires_http_request(self) -> None:
        with self.assertRaises(SubmissionError) as ctx:
            client.SefinClient().submit("<DPS/>")
        self.assertEqual(ctx.exception.code, "client_not_configured")

    def test_query_status_decodes_xml(self) -> None:
        sefin, http_request = self._client(
            {"situacao": "cancelada", "nfseXmlGZipB64": compress_and_encode("<NFSe/>")}
        )
        status = sefin.query_status("KEY")
        self.assertTrue(http_request.call_args.args[1].endswith("/nfse/KEY"))
        self.assertEqual(status.status, "cancelada")
        self.assertEqual(status.xml, "<NFSe/>")

    def test_cancel_posts_event(self) -> None:
        sefin, http_request = self._client({"evento": "ok"})
        result = sefin.cancel("KEY", "Erro na emissão do documento")
        method, url, _, body = http_request.call_args.args
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/nfse/KEY/eventos"))
        self.assertEqual(body["motivo"], "Erro na emissão do documento")
        self.assertEqual(result, {"evento": "ok"})

    def test_connection_check(self) -> None:
        sefin, _ = self._client({"status": "ok"})
        self.assertTrue(sefin.test_connection())
        failing, _ = self._client(side_effect=SubmissionError("down", code="connection_error"))
        self.assertFalse(failing.test_connection())


class BuildClientTests(TestCase):
    def test_uses_configured_environment_and_timeout(self) -> None:
        make_config(ambiente=NFSeConfig.Environment.PRODUCAO, timeout_item_segundos=12)
        with mock.patch("nfse.sefin.client.build_requests_http_request") as factory:
            sefin = client.build_client(SettingsProvider())
        self.assertEqual(sefin.environment, NFSeConfig.Environment.PRODUCAO)
        self.assertEqual(factory.call_args.kwargs["timeout"], 12.0)
