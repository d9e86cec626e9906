"""Data models for the Cloudflare tunnel sync controller.

Two families live here: the *desired* state derived from container labels
(:class:`RouteSpec`, :class:`AccessAppSpec`, :class:`AccessPolicySpec`) and the
*remote* records returned by the Cloudflare API (:class:`IngressRule`,
:class:`DNSRecord`, :class:`AccessAppRecord`, ...).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FALLBACK_SERVICE = "http_status:404"
"""Service of the mandatory trailing catch-all ingress rule."""

DNS_RECORD_TYPE = "CNAME"
DNS_RECORD_TTL = 1
"""Cloudflare TTL sentinel meaning "automatic"."""

ACCESS_APP_TYPE = "self_hosted"


# ---------------------------------------------------------------------------
# Container snapshot
# ---------------------------------------------------------------------------


class ContainerInfo(BaseModel):
    """Label metadata of a single running container."""

    id: str
    name: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class SourceRef(BaseModel):
    """Where a desired resource came from."""

    container_id: str = ""
    container_name: str = ""


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------


class RouteKey(BaseModel):
    """Identity of a tunnel ingress rule."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    path: str = ""

    def __str__(self) -> str:
        if not self.path:
            return self.hostname
        return f"{self.hostname}{self.path}"


class RouteSpec(BaseModel):
    """Desired ingress rule derived from container labels."""

    key: RouteKey
    service: str
    origin_server_name: str | None = Field(
        default=None, description="Origin host-header override (None = not managed)"
    )
    no_tls_verify: bool | None = Field(
        default=None, description="Origin TLS-verification override (None = not managed)"
    )
    source: SourceRef = Field(default_factory=SourceRef)


class AccessPolicySpec(BaseModel):
    """Desired Access policy attached to an app.

    A policy is *reference-only* (``managed=False``) when only an ``id`` or
    ``name`` is given: it is attached but its rules are left alone.
    """

    id: str = ""
    name: str = ""
    action: str = ""
    include_emails: list[str] = Field(default_factory=list)
    include_ips: list[str] = Field(default_factory=list)
    managed: bool = False

    @property
    def label(self) -> str:
        return self.name or self.id or "unknown"


class AccessAppSpec(BaseModel):
    """Desired Access application.

    ``tags_set`` distinguishes "tags label absent" (keep remote tags) from
    "tags label present" (enforce ``tags``).
    """

    id: str = ""
    name: str
    domain: str = ""
    policies: list[AccessPolicySpec] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    tags_set: bool = False
    source: SourceRef = Field(default_factory=SourceRef)

    @property
    def key(self) -> str:
        return f"{self.name}@{self.domain}"


# ---------------------------------------------------------------------------
# Remote state: tunnel
# ---------------------------------------------------------------------------


class IngressRule(BaseModel):
    """A tunnel ingress rule as stored by Cloudflare.

    ``origin_request`` is kept as the raw decoded JSON value so that unknown
    keys survive a read-modify-write untouched.
    """

    hostname: str = ""
    path: str = ""
    service: str = ""
    origin_request: Any = None

    @property
    def key(self) -> RouteKey:
        return RouteKey(hostname=self.hostname, path=self.path)

    @property
    def is_catch_all(self) -> bool:
        return not self.hostname and self.service == FALLBACK_SERVICE

    def to_api_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.hostname:
            payload["hostname"] = self.hostname
        if self.path:
            payload["path"] = self.path
        payload["service"] = self.service
        if self.origin_request is not None:
            payload["originRequest"] = self.origin_request
        return payload

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> IngressRule:
        return cls(
            hostname=raw.get("hostname") or "",
            path=raw.get("path") or "",
            service=raw.get("service") or "",
            origin_request=raw.get("originRequest"),
        )


class TunnelConfig(BaseModel):
    """Tunnel configuration: parsed ingress plus the raw config document."""

    ingress: list[IngressRule] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Remote state: DNS
# ---------------------------------------------------------------------------


class Zone(BaseModel):
    id: str
    name: str


class DNSRecord(BaseModel):
    id: str = ""
    type: str = ""
    name: str = ""
    content: str = ""
    proxied: bool = False
    comment: str = ""
    ttl: int = 0


class DNSRecordInput(BaseModel):
    type: str = DNS_RECORD_TYPE
    name: str
    content: str
    proxied: bool = True
    ttl: int = DNS_RECORD_TTL
    comment: str = ""

    def to_api_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "name": self.name,
            "content": self.content,
            "proxied": self.proxied,
        }
        if self.ttl:
            payload["ttl"] = self.ttl
        if self.comment:
            payload["comment"] = self.comment
        return payload


# ---------------------------------------------------------------------------
# Remote state: Access
# ---------------------------------------------------------------------------


class AccessRule(BaseModel):
    """A single include rule; exactly one of ``email`` / ``ip`` is set."""

    email: str = ""
    ip: str = ""


class AccessPolicyRef(BaseModel):
    id: str
    precedence: int = 0


class AccessPolicyRecord(BaseModel):
    id: str = ""
    name: str = ""
    action: str = ""
    include: list[AccessRule] = Field(default_factory=list)
    has_unsupported_rules: bool = False


class AccessPolicyInput(BaseModel):
    name: str
    action: str
    include: list[AccessRule] = Field(default_factory=list)


class AccessAppRecord(BaseModel):
    id: str = ""
    name: str = ""
    domain: str = ""
    type: str = ""
    policies: list[AccessPolicyRef] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class AccessAppInput(BaseModel):
    name: str
    domain: str
    type: str = ACCESS_APP_TYPE
    policies: list[AccessPolicyRef] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
