"""
Error taxonomy for ingestion and analytics

UpstreamError and its subclasses carry enough context (resource, page,
upstream status) for an operator to decide whether to re-run a sync.
"""
from typing import Optional


BODY_EXCERPT_LIMIT = 300


class ShelfSenseError(Exception):
    """Base class for all ShelfSense errors"""

    kind = "error"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class UpstreamError(ShelfSenseError):
    """The commerce platform returned something we can't use"""

    kind = "upstream_error"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body_excerpt: Optional[str] = None,
        resource: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body_excerpt = (body_excerpt or "")[:BODY_EXCERPT_LIMIT]
        self.resource = resource
        self.page: Optional[int] = None  # Filled in by the sync engine

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "status_code": self.status_code,
            "resource": self.resource,
            "page": self.page,
            "body_excerpt": self.body_excerpt or None,
        })
        return data


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout, 429 or 5xx. Safe to retry with backoff."""

    kind = "transient_upstream"
    retryable = True


class UpstreamRejectedError(UpstreamError):
    """4xx (bad credential, missing scope) or an unreadable body. Not retried."""

    kind = "upstream_rejected"


class MalformedRecordError(ShelfSenseError):
    """A single upstream record failed shape validation"""

    kind = "malformed_record"

    def __init__(self, message: str, record_id=None):
        super().__init__(message)
        self.record_id = record_id


class StorageError(ShelfSenseError):
    """A write to the relational store failed"""

    kind = "storage"


class ConfigurationError(ShelfSenseError):
    """Missing store, missing credential or invalid setting. Raised before any I/O."""

    kind = "configuration"
