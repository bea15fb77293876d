"""HTTP adapter for the NFS-e national API, backed by requests."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Union

import requests
from requests import Session

from .errors import SubmissionError

HttpJsonRequest = Callable[[str, str, Mapping[str, str], Optional[Mapping[str, Any]]], Mapping[str, Any]]
ClientCert = Union[str, tuple[str, str]]


def _response_body(response: requests.Response) -> Mapping[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text[:2000]}
    return data if isinstance(data, Mapping) else {"data": data}


def _summary(body: Mapping[str, Any]) -> str:
    errors = body.get("erros") or body.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, Mapping):
            return str(first.get("Descricao") or first.get("descricao") or first.get("message") or first)
        return str(first)
    return str(body.get("message") or body.get("raw") or "")


def build_requests_http_request(
    session: Optional[Session] = None,
    timeout: float = 15.0,
    client_cert: Optional[ClientCert] = None,
) -> HttpJsonRequest:
    """Return an HttpJsonRequest callable backed by requests.

    ``client_cert`` is passed to requests for mutual TLS (PEM path or
    ``(cert, key)`` tuple). Transport failures surface as
    :class:`SubmissionError`; 5xx and 429 answers stay retryable, other
    4xx answers are government-side rejections.
    """

    sess = session or requests.Session()
    if client_cert:
        sess.cert = client_cert
    default_timeout = timeout

    def http_request(
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[Mapping[str, Any]] = None,
    ) -> Mapping[str, Any]:
        try:
            response = sess.request(
                method=method,
                url=url,
                json=body,
                headers=dict(headers),
                timeout=default_timeout,
            )
        except requests.Timeout as exc:
            raise SubmissionError(
                f"Tempo esgotado ({default_timeout:g}s) aguardando a API NFS-e",
                code="timeout",
            ) from exc
        except requests.RequestException as exc:
            raise SubmissionError(f"Falha de comunicação com a API NFS-e: {exc}", code="connection_error") from exc

        if response.status_code >= 400:
            data = _response_body(response)
            if response.status_code == 429:
                code, retryable = "rate_limited", True
            elif response.status_code >= 500:
                code, retryable = "server_error", True
            else:
                code, retryable = "rejected", False
            raise SubmissionError(
                f"API NFS-e respondeu {response.status_code}: {_summary(data)}",
                code=code,
                retryable=retryable,
                response=dict(data),
            )

        try:
            return response.json()
        except ValueError as exc:
            raise SubmissionError("A resposta da API NFS-e não é JSON válido", code="invalid_response") from exc

    return http_request


__all__ = ["build_requests_http_request", "ClientCert", "HttpJsonRequest"]
