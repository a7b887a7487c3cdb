"""
Error kinds raised across the ingestion and export pipelines.

Each exception carries a ``kind`` naming the failure class so adapters
(HTTP, CLI) can render a short, actionable message without a traceback.
"""


class DigestError(Exception):
    kind = "Fatal"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(DigestError):
    kind = "Validation"


class NotFound(DigestError):
    kind = "NotFound"


class Conflict(DigestError):
    kind = "Conflict"


class HtmlTooLarge(DigestError):
    kind = "HtmlTooLarge"


class ParseError(DigestError):
    kind = "Parse"


class ExtractionError(DigestError):
    kind = "Extraction"


class NoArticles(DigestError):
    kind = "NoArticles"


class ExportError(DigestError):
    kind = "Fatal"


class ImageRejected(DigestError):
    """A single image was skipped; never propagates past the acquirer."""
    kind = "Transient"


class ImageTooLarge(ImageRejected):
    kind = "ImageTooLarge"
