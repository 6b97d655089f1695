"""Error kinds for the MulTiShop backend.

Request-level errors carry the status code and the literal text body the
webhook caller sees. Bodies never include exception details; those go to
the log.
"""

from __future__ import annotations


class MultishopError(Exception):
    """Base class for all MulTiShop errors."""


class ConfigurationMissing(MultishopError):
    """Required configuration is absent. Raised at startup, never recovered."""


class WebhookError(MultishopError):
    """An error that ends a webhook request with a fixed plain-text response."""

    status_code: int = 400
    response_text: str = "Error: Webhook error"


class MissingHeaders(WebhookError):
    status_code = 400
    response_text = "Error: Missing Svix headers"


class VerificationFailed(WebhookError):
    status_code = 400
    response_text = "Error: Verification error"


class MalformedPayload(WebhookError):
    status_code = 400
    response_text = "Error: Malformed payload"


class DownstreamWriteFailure(WebhookError):
    """Local store (or outbox) write failed after verification."""

    status_code = 500
    response_text = "Error: Webhook processing failed"


class MetadataWriteFailed(MultishopError):
    """The Clerk metadata update failed after retries."""

    def __init__(self, user_id: str, reason: str):
        super().__init__(f"metadata write for {user_id} failed: {reason}")
        self.user_id = user_id
        self.reason = reason
