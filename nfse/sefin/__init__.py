"""NFS-e (Padrão Nacional) emission pipeline."""

from .automation import AutomationService, CycleResult, ProcessingDecision
from .client import SefinClient, StatusResponse, SubmissionResponse, build_client
from .errors import (
    AlreadyEmittedError,
    CancellationError,
    CertificateError,
    ConfigurationError,
    DuplicateQueueItemError,
    EmissionInProgressError,
    EmissionNotFoundError,
    GenerationError,
    NFSeError,
    SigningError,
    SubmissionError,
    ValidationError,
)
from .factory import Pipeline, build_pipeline, load_order_store
from .http import HttpJsonRequest, build_requests_http_request
from .orders import Address, LineItem, OrderSnapshot, OrderStore
from .queue import QueueRunResult, QueueService
from .secrets import CertificateManager, CertificateNotConfigured, CertificateSecrets
from .service import (
    BatchItemResult,
    BatchResult,
    CancelResult,
    EmissionOutcome,
    EmissionResult,
    EmissionService,
    StatusResult,
)
from .settings import SettingsProvider
from .signer import CertificateBundle, DigitalSigner, SignedDocument, load_certificate_bundle
from .validator import ValidationReport, XsdValidator
from .xml_builder import DpsGenerator, DpsIdentifier, DpsValues

__all__ = [
    "AutomationService",
    "CycleResult",
    "ProcessingDecision",
    "SefinClient",
    "StatusResponse",
    "SubmissionResponse",
    "build_client",
    "AlreadyEmittedError",
    "CancellationError",
    "CertificateError",
    "ConfigurationError",
    "DuplicateQueueItemError",
    "EmissionInProgressError",
    "EmissionNotFoundError",
    "GenerationError",
    "NFSeError",
    "SigningError",
    "SubmissionError",
    "ValidationError",
    "Pipeline",
    "build_pipeline",
    "load_order_store",
    "HttpJsonRequest",
    "build_requests_http_request",
    "Address",
    "LineItem",
    "OrderSnapshot",
    "OrderStore",
    "QueueRunResult",
    "QueueService",
    "CertificateManager",
    "CertificateNotConfigured",
    "CertificateSecrets",
    "BatchItemResult",
    "BatchResult",
    "CancelResult",
    "EmissionOutcome",
    "EmissionResult",
    "EmissionService",
    "StatusResult",
    "SettingsProvider",
    "CertificateBundle",
    "DigitalSigner",
    "SignedDocument",
    "load_certificate_bundle",
    "ValidationReport",
    "XsdValidator",
    "DpsGenerator",
    "DpsIdentifier",
    "DpsValues",
]
