"""Exception taxonomy for the verification pipeline.

Leaf functions raise these; pipeline boundaries (``extract_text``,
``parse_fields``, ``AutoVerifier``, ``ClearanceOrchestrator``) convert them
into degraded results so a registration submission never hard-fails.
"""


class VerificationPipelineError(Exception):
    """Base class for all pipeline errors."""


class ExtractionError(VerificationPipelineError):
    """Text could not be pulled from an uploaded file."""


class UnsupportedFileError(ExtractionError):
    """File type cannot be inferred or has no extraction path."""


class OcrUnavailableError(ExtractionError):
    """Tesseract (or its Python binding) is not installed."""


class RasterizationError(ExtractionError):
    """PDF pages could not be rendered to images (poppler missing, timeout)."""


class RegistryLookupError(VerificationPipelineError):
    """An external record registry failed or timed out."""


class PersistenceError(VerificationPipelineError):
    """A store write failed."""
