from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol

from syncbridge.integrations.documents import Document, dumps, parse_document


@dataclass(frozen=True)
class WebhookRequest:
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    path: str = "/"
    method: str = "POST"

    def __post_init__(self) -> None:
        # Header lookups are case-insensitive; freeze a lower-cased copy.
        normalized = {str(k).lower(): str(v) for k, v in dict(self.headers).items()}
        object.__setattr__(self, "headers", MappingProxyType(normalized))
        object.__setattr__(self, "method", self.method.upper())
        if isinstance(self.body, str):
            object.__setattr__(self, "body", self.body.encode("utf-8"))

    @classmethod
    def from_json(cls, payload: Any, **kwargs: Any) -> "WebhookRequest":
        headers = {"Content-Type": "application/json", **kwargs.pop("headers", {})}
        return cls(body=json.dumps(payload).encode("utf-8"), headers=headers, **kwargs)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def json(self) -> Document:
        return parse_document(self.body)

    def to_payload(self) -> dict[str, Any]:
        # Job-queue safe representation.
        return {
            "body": self.body.decode("utf-8", errors="replace"),
            "headers": dict(self.headers),
            "path": self.path,
            "method": self.method,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WebhookRequest":
        return cls(
            body=str(payload.get("body", "")).encode("utf-8"),
            headers=payload.get("headers") or {},
            path=payload.get("path") or "/",
            method=payload.get("method") or "POST",
        )


_JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass(frozen=True)
class WebhookResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=lambda: dict(_JSON_HEADERS))
    body: str = ""

    @classmethod
    def ok(cls, status: int = 202) -> "WebhookResponse":
        return cls(status=status, headers=dict(_JSON_HEADERS), body='{"o":"k"}')

    @classmethod
    def error(cls, message: str, status: int = 401) -> "WebhookResponse":
        return cls(status=status, headers=dict(_JSON_HEADERS), body=dumps({"message": message}))

    @classmethod
    def json(cls, payload: Any, status: int = 200) -> "WebhookResponse":
        return cls(status=status, headers=dict(_JSON_HEADERS), body=dumps(payload))

    @property
    def accepted(self) -> bool:
        return self.status < 400


class WebhookAuthenticator(Protocol):
    def authenticate(self, request: WebhookRequest, secret: str) -> WebhookResponse: ...


def hmac_digest(secret: str, payload: bytes, *, digest: str = "sha256", encoding: str = "hex") -> str:
    mac = hmac.new(secret.encode("utf-8"), payload, getattr(hashlib, digest))
    if encoding == "base64":
        return base64.b64encode(mac.digest()).decode("ascii")
    return mac.hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


@dataclass(frozen=True)
class AlwaysAccept:
    status: int = 202

    def authenticate(self, request: WebhookRequest, secret: str) -> WebhookResponse:
        return WebhookResponse.ok(self.status)


@dataclass(frozen=True)
class SharedSecretHeader:
    header: str
    success_status: int = 202

    def authenticate(self, request: WebhookRequest, secret: str) -> WebhookResponse:
        provided = request.header(self.header)
        if provided is None:
            return WebhookResponse.error("missing auth header")
        if not secret or not constant_time_equals(provided, secret):
            return WebhookResponse.error("invalid auth header")
        return WebhookResponse.ok(self.success_status)


@dataclass(frozen=True)
class HmacSignature:
    header: str
    digest: str = "sha256"
    encoding: str = "hex"
    # Some sources tag the signature with its algorithm, e.g. "sha256=".
    prefix: str = ""
    success_status: int = 200

    def authenticate(self, request: WebhookRequest, secret: str) -> WebhookResponse:
        provided = request.header(self.header)
        if not provided:
            return WebhookResponse.error("missing hmac")
        if self.prefix:
            if not provided.startswith(self.prefix):
                return WebhookResponse.error("invalid hmac")
            provided = provided[len(self.prefix):]
        if not secret:
            return WebhookResponse.error("invalid hmac")
        expected = hmac_digest(secret, request.body, digest=self.digest, encoding=self.encoding)
        if not constant_time_equals(provided.strip(), expected):
            return WebhookResponse.error("invalid hmac")
        return WebhookResponse.ok(self.success_status)


@dataclass(frozen=True)
class CustomDispatch:
    responder: Callable[[WebhookRequest, str], WebhookResponse]

    def authenticate(self, request: WebhookRequest, secret: str) -> WebhookResponse:
        return self.responder(request, secret)
