"""Pydantic v2 response schemas for webhook endpoints."""

from pydantic import BaseModel


class WebhookEventResult(BaseModel):
    event_id: str | None
    event_type: str
    outcome: str  # applied, noop, skipped, ignored, error
    detail: str | None = None


class WebhookResponse(BaseModel):
    """Acknowledgement of a delivery. Always returned with 200 once authenticated."""

    success: bool
    provider: str
    processed: int
    results: list[WebhookEventResult]
    security: dict[str, str]
    error: str | None = None
