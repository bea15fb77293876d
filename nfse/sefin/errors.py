"""Error taxonomy shared by the NFS-e emission pipeline."""

from __future__ import annotations

from typing import Optional


class NFSeError(RuntimeError):
    """Base error for the emission pipeline.

    ``code`` is a stable machine-readable identifier persisted on the
    emission/queue records; ``retryable`` tells the queue whether trying
    again without operator action can succeed.
    """

    default_code = "nfse_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if retryable is not None:
            self.retryable = retryable


class ConfigurationError(NFSeError):
    """Merchant configuration is missing or inconsistent."""

    default_code = "configuration_missing"


class GenerationError(NFSeError):
    """The order data cannot produce a DPS without correction."""

    default_code = "generation_failed"


class ValidationError(NFSeError):
    """The generated XML does not conform to the DPS schema."""

    default_code = "schema_invalid"

    def __init__(self, message: str, *, report=None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.report = report


class CertificateError(NFSeError):
    """The certificate store could not provide the active certificate."""

    default_code = "certificate_missing"


class SigningError(NFSeError):
    """The XML could not be signed with the active certificate."""

    default_code = "signature_failed"


class CompressionError(NFSeError):
    default_code = "payload_invalid"


class SubmissionError(NFSeError):
    """Network or government-side failure while talking to the API."""

    default_code = "submission_failed"
    retryable = True

    def __init__(self, message: str, *, response=None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.response = response or {}


class AlreadyEmittedError(NFSeError):
    """The order already has a successful emission."""

    default_code = "already_emitted"

    def __init__(self, order_id: str, access_key: Optional[str] = None) -> None:
        super().__init__(
            f"O pedido {order_id} já possui NFS-e emitida"
            + (f" (chave {access_key})" if access_key else ""),
        )
        self.order_id = order_id
        self.access_key = access_key


class EmissionInProgressError(NFSeError):
    default_code = "emission_in_progress"
    retryable = True


class EmissionNotFoundError(NFSeError):
    default_code = "emission_not_found"


class CancellationError(NFSeError):
    default_code = "cancellation_failed"


class DuplicateQueueItemError(NFSeError):
    """An unresolved queue item already exists for the order."""

    default_code = "duplicate_queue_item"

    def __init__(self, order_id: str, existing_id: Optional[int] = None) -> None:
        super().__init__(f"O pedido {order_id} já está na fila de emissão")
        self.order_id = order_id
        self.existing_id = existing_id


__all__ = [
    "NFSeError",
    "ConfigurationError",
    "GenerationError",
    "ValidationError",
    "CertificateError",
    "SigningError",
    "CompressionError",
    "SubmissionError",
    "AlreadyEmittedError",
    "EmissionInProgressError",
    "EmissionNotFoundError",
    "CancellationError",
    "DuplicateQueueItemError",
]
