"""Client for the NFS-e national API (Sefin Nacional)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, MutableMapping, Optional

from nfse.models import NFSeConfig

from .compressor import compress_and_encode, decode_and_decompress
from .errors import CompressionError, NFSeError, SubmissionError
from .http import ClientCert, HttpJsonRequest, build_requests_http_request
from .secrets import read_setting
from .settings import SettingsProvider

logger = logging.getLogger(__name__)

ENDPOINTS = {
    NFSeConfig.Environment.PRODUCAO: "https://sefin.nfse.gov.br/sefinnacional",
    NFSeConfig.Environment.HOMOLOGACAO: "https://sefin.producaorestrita.nfse.gov.br/SefinNacional",
}


@dataclass
class SubmissionResponse:
    access_key: str
    protocol: str = ""
    status: str = ""
    data: MutableMapping[str, Any] = field(default_factory=dict)


@dataclass
class StatusResponse:
    access_key: str
    status: str
    data: MutableMapping[str, Any] = field(default_factory=dict)
    xml: Optional[str] = None


class SefinClient:
    """Submit signed DPS documents and query/cancel the resulting NFS-e."""

    def __init__(
        self,
        *,
        environment: str = NFSeConfig.Environment.HOMOLOGACAO,
        http_request: Optional[HttpJsonRequest] = None,
        base_url: Optional[str] = None,
    ) -> None:
        if not base_url and environment not in ENDPOINTS:
            raise ValueError(f"Ambiente NFS-e desconhecido: {environment}")
        self._environment = environment
        self._http_request = http_request
        self._base_url = (base_url or ENDPOINTS[environment]).rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def environment(self) -> str:
        return self._environment

    # Public API --------------------------------------------------------------------

    def submit(self, signed_xml: str) -> SubmissionResponse:
        payload = {"dpsXmlGZipB64": compress_and_encode(signed_xml)}
        data = self._request("POST", "/nfse", payload)

        access_key = data.get("chaveAcesso") or data.get("chave_acesso")
        if not access_key:
            raise SubmissionError(
                "Resposta da API sem chave de acesso",
                code="invalid_response",
                retryable=False,
                response=data,
            )
        logger.info("NFS-e: DPS aceita, chave %s", access_key)
        return SubmissionResponse(
            access_key=str(access_key),
            protocol=str(data.get("protocolo") or data.get("idDps") or ""),
            status=str(data.get("status") or "autorizada"),
            data=data,
        )

    def query_status(self, access_key: str) -> StatusResponse:
        data = self._request("GET", f"/nfse/{access_key}")
        xml = None
        encoded = data.get("nfseXmlGZipB64")
        if encoded:
            try:
                xml = decode_and_decompress(encoded)
            except CompressionError:
                logger.warning("NFS-e: XML da nota %s ilegível na consulta", access_key)
        return StatusResponse(
            access_key=access_key,
            status=str(data.get("situacao") or data.get("status") or "desconhecido"),
            data=data,
            xml=xml,
        )

    def cancel(self, access_key: str, reason: str) -> MutableMapping[str, Any]:
        payload = {"chaveAcesso": access_key, "codigoMotivo": "1", "motivo": reason}
        return self._request("POST", f"/nfse/{access_key}/eventos", payload)

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/status")
        except NFSeError as exc:
            logger.warning("NFS-e: API indisponível em %s: %s", self._base_url, exc)
            return False
        return True

    # Internals -----------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> MutableMapping[str, Any]:
        if self._http_request is None:
            raise SubmissionError(
                "Não foi configurado http_request; injete um callable para realizar a requisição",
                code="client_not_configured",
                retryable=False,
            )

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        url = f"{self._base_url}{path}"
        try:
            data = self._http_request(method, url, headers, payload)
        except NFSeError:
            raise
        except Exception as exc:  # pragma: no cover - guard rails for runtime errors
            raise SubmissionError(f"Erro executando requisição NFS-e: {exc}") from exc
        return dict(data or {})


def _client_cert() -> Optional[ClientCert]:
    cert = read_setting("NFSE_CLIENT_CERT_FILE")
    key = read_setting("NFSE_CLIENT_KEY_FILE")
    if cert and key:
        return (cert, key)
    return cert or None


def build_client(settings: SettingsProvider) -> SefinClient:
    """Client for the configured environment using the requests adapter."""

    policy = settings.queue_policy()
    return SefinClient(
        environment=settings.environment,
        base_url=settings.get("api_base_url", None),
        http_request=build_requests_http_request(
            timeout=float(policy.item_timeout_seconds),
            client_cert=_client_cert(),
        ),
    )


__all__ = ["ENDPOINTS", "SefinClient", "StatusResponse", "SubmissionResponse", "build_client"]
