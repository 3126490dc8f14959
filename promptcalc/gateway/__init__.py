"""Completion gateway: retrying OpenAI Responses client and lenient JSON extraction."""

from promptcalc.gateway.client import (
    CallOptions,
    CompletionGateway,
    CompletionRequest,
    CompletionResult,
    GatewayConfig,
    Message,
    OutputFormat,
)
from promptcalc.gateway.errors import (
    BadRequestError,
    GatewayError,
    ParseError,
    RequestTimeoutError,
)

__all__ = [
    "BadRequestError",
    "CallOptions",
    "CompletionGateway",
    "CompletionRequest",
    "CompletionResult",
    "GatewayConfig",
    "GatewayError",
    "Message",
    "OutputFormat",
    "ParseError",
    "RequestTimeoutError",
]
