"""Anthropic Messages API client: one round trip per send()."""

import http.client
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field

from .history import Block, ToolUseBlock, blocks_from_wire
from .report import AgentError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
MESSAGES_PATH = "/v1/messages"
DEFAULT_ENDPOINT = DEFAULT_BASE_URL + MESSAGES_PATH
API_VERSION = "2023-06-01"
OAUTH_BETA = "oauth-2025-04-20"
OAUTH_PREFIX = "sk-ant-oat"
DEFAULT_REQUEST_TIMEOUT = 300
ERROR_BODY_CHARS = 200


class TransportError(AgentError):
    """A failed round trip: network failure, non-200 status, or unusable body."""

    def __init__(self, message: str, *, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class ProtocolError(TransportError):
    """A structurally valid response that breaks the tool-call protocol."""


def auth_type_for(token: str) -> str:
    return "oauth" if token.startswith(OAUTH_PREFIX) else "api_key"


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_wire(cls, data) -> "Usage":
        if not isinstance(data, dict):
            return cls()
        return cls(
            input_tokens=_as_int(data.get("input_tokens")),
            output_tokens=_as_int(data.get("output_tokens")),
        )


def _as_int(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


@dataclass
class ModelResponse:
    content: list[Block] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None
    model: str | None = None

    @property
    def tool_requests(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @classmethod
    def from_wire(cls, data: dict) -> "ModelResponse":
        stop_reason = data.get("stop_reason")
        model = data.get("model")
        return cls(
            content=blocks_from_wire(data.get("content")),
            usage=Usage.from_wire(data.get("usage")),
            stop_reason=stop_reason if isinstance(stop_reason, str) else None,
            model=model if isinstance(model, str) else None,
        )


class MessagesClient:
    """Thin urllib client for POST /v1/messages."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        auth_type: str | None = None,
    ):
        self.api_key = api_key
        self.auth_type = auth_type or (auth_type_for(api_key) if api_key else None)
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return self.base_url + MESSAGES_PATH

    def headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "anthropic-version": API_VERSION,
        }
        if self.auth_type == "oauth":
            headers["authorization"] = f"Bearer {self.api_key}"
            headers["anthropic-beta"] = OAUTH_BETA
        else:
            headers["x-api-key"] = self.api_key or ""
        return headers

    def send(
        self,
        messages: list[dict],
        tools: list[dict],
        *,
        model: str,
        max_tokens: int,
        system: str | None = None,
    ) -> ModelResponse:
        """Perform one round trip. Raises TransportError on any failure."""
        if not self.api_key:
            raise TransportError("Fetch error: no API token available")

        payload: dict = {"model": model, "max_tokens": max_tokens}
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        payload["messages"] = messages

        req = urllib.request.Request(
            self.endpoint,
            data=json.dumps(payload).encode(),
            headers=self.headers(),
            method="POST",
        )
        logger.debug(
            "POST %s model=%s messages=%d", self.endpoint, model, len(messages)
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
                status = resp.status
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise TransportError(
                f"HTTP {e.code}: {body[:ERROR_BODY_CHARS]}", status=e.code, body=body
            ) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            reason = getattr(e, "reason", e)
            raise TransportError(f"Fetch error: {reason}") from e

        if status != 200:
            raise TransportError(
                f"HTTP {status}: {raw[:ERROR_BODY_CHARS]}", status=status, body=raw
            )
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TransportError(
                f"invalid JSON from {self.endpoint}: {e}", status=status, body=raw
            ) from e
        if not isinstance(data, dict):
            raise ProtocolError(
                f"expected a JSON object, got {type(data).__name__}",
                status=status,
                body=raw,
            )
        if data.get("type") == "error":
            err = data.get("error")
            message = err.get("message") if isinstance(err, dict) else None
            raise TransportError(
                f"API error: {message or raw[:ERROR_BODY_CHARS]}",
                status=status,
                body=raw,
            )
        return ModelResponse.from_wire(data)
