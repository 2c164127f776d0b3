"""Error payloads and the exceptions that carry them.

Every error that reaches a caller is rendered as an `ErrorPayload`: a stable
code, a short title, a generic user-safe detail, and a `meta` block whose
`message` holds the internal reason for diagnostics.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

PROVIDER_DETAIL = (
    "There was a problem connecting to the language model service. "
    "Please check the provider status page for outages."
)
TOOL_DETAIL = (
    "There was a problem parsing the response from the language model. "
    "This is likely a temporary issue, please try again shortly."
)
DOWNSTREAM_DETAIL = "A downstream service is experiencing issues. Please try again shortly."


class ErrorMeta(BaseModel):
    code: int
    title: str
    detail: str
    message: str = "No error message."


class ErrorPayload(BaseModel):
    code: str
    title: str
    detail: str
    meta: ErrorMeta


def _message(value: Any) -> str:
    if value is None:
        return "No error message."
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class ChatError(Exception):
    """Base class for errors surfaced to the caller of a turn."""

    code = "10037"
    title = "Internal Server Error"
    status = 500
    user_detail = DOWNSTREAM_DETAIL

    def __init__(self, detail: str, message: Any = None) -> None:
        super().__init__(f"{detail} ({_message(message)})")
        self.detail = detail
        self.message = _message(message)

    @property
    def payload(self) -> ErrorPayload:
        return ErrorPayload(
            code=self.code,
            title=self.title,
            detail=self.user_detail,
            meta=ErrorMeta(
                code=self.status,
                title=self.title,
                detail=self.detail,
                message=self.message,
            ),
        )


class DownstreamError(ChatError):
    """Vectorstore, document fetch or context assembly failure."""


class ProviderError(ChatError):
    """The model provider call failed."""

    user_detail = PROVIDER_DETAIL


class ToolExecutionError(ChatError):
    """A tool could not be resolved, parsed or executed."""

    user_detail = TOOL_DETAIL


class ToolNotFoundError(ToolExecutionError):
    def __init__(self, name: str) -> None:
        super().__init__("The tool passed by the language model does not exist.", name)
        self.name = name


class MaxToolCallsError(ToolExecutionError):
    def __init__(self, limit: int) -> None:
        super().__init__("Failure during streaming from the language model.", "Max function count reached.")
        self.limit = limit


class UnexpectedError(ChatError):
    code = "10007"
    title = "Unexpected Error"
    status = 400
    user_detail = "An unexpected error occured."

    @property
    def payload(self) -> ErrorPayload:
        payload = super().payload
        payload.meta.title = "Internal Server Error"
        return payload


class MissingParametersError(ChatError):
    """Raised before any provider contact when required inputs are absent."""

    code = "10015"
    title = "Bad Request"
    status = 400
    user_detail = "The request failed because it was not well-formed."

    def __init__(self, required: list[str], passed: list[str]) -> None:
        super().__init__(
            "The request is missing required parameters.",
            f"Required: ({','.join(required)}) -> Passed: ({','.join(passed)}).",
        )
        self.required = required
        self.passed = passed

    @property
    def payload(self) -> ErrorPayload:
        payload = super().payload
        payload.meta.title = "Invalid Query Parameters"
        return payload
