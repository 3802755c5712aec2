from __future__ import annotations


class ServiceError(RuntimeError):
    """Base error for render, download and transcription jobs."""

    code = "service_error"


class ConfigNotFound(ServiceError):
    """Raised when a composition source has no usable compositionConfig block."""

    code = "config_not_found"


class BundleError(ServiceError):
    code = "bundle_error"


class CompositionNotFound(ServiceError):
    code = "composition_not_found"


class EncodeError(ServiceError):
    code = "encode_error"


class Busy(ServiceError):
    """Raised when a service already has a live job."""

    code = "busy"


class AlreadyInProgress(ServiceError):
    """Raised when a download key already has an active transfer."""

    code = "already_in_progress"


class DownloadFailed(ServiceError):
    code = "download_failed"


class Cancelled(ServiceError):
    code = "cancelled"


class ModelUnavailable(ServiceError):
    code = "model_unavailable"


class ExecutableMissing(ServiceError):
    code = "executable_missing"


class ExtractionError(ServiceError):
    code = "extraction_error"


class TranscriptionFailed(ServiceError):
    code = "transcription_failed"


class SpawnError(ServiceError):
    code = "spawn_error"


class ResultParseError(ServiceError):
    code = "result_parse_error"
