"""Progress event schema for streamed generation runs."""

from typing import Any

from pydantic import BaseModel, Field


class ProgressEvent(BaseModel):
    """Structured Server-Sent Event payload for generation progress.

    Centralizes the schema for every progress message so the aggregator and
    the orchestrator emit the same shape. Fields are optional except `status`
    and `step`. The `to_sse` helper renders the wire format; terminal helpers
    produce the final event of a stream.
    """

    status: str = Field(
        ..., description="High-level event type e.g. started, streaming, retry, complete"
    )
    step: str = Field(..., description="Pipeline step identifier")
    provider: str | None = Field(None, description="Provider handling the attempt")
    attempt: int | None = Field(None, ge=1, description="1-based attempt number")
    received_chars: int | None = Field(
        None, ge=0, description="Characters accumulated so far in this attempt"
    )
    detail: str | None = Field(
        None, description="Optional human-readable detail or error message"
    )
    success: bool | None = Field(
        None, description="Final success indicator for terminal events"
    )
    error_code: str | None = Field(
        None, description="Stable machine readable error code for analytics"
    )
    document: dict[str, Any] | None = Field(
        None, description="Generated (or fallback) document on terminal events"
    )

    def to_sse(self) -> str:  # pragma: no cover - trivial
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"

    @property
    def is_terminal(self) -> bool:
        return self.status in {"complete", "error"}

    @classmethod
    def terminal_success(
        cls, provider: str, document: dict[str, Any]
    ) -> "ProgressEvent":  # noqa: D401
        return cls.model_validate(
            {
                "status": "complete",
                "step": "complete",
                "provider": provider,
                "success": True,
                "document": document,
            }
        )

    @classmethod
    def terminal_error(
        cls,
        step: str,
        detail: str,
        error_code: str | None = None,
        document: dict[str, Any] | None = None,
    ) -> "ProgressEvent":  # noqa: D401
        return cls.model_validate(
            {
                "status": "error",
                "step": step,
                "detail": detail,
                "error_code": error_code,
                "success": False,
                "document": document,
            }
        )
