"""Narrow capability interfaces each reconciler depends on.

:class:`~cf_tunnel_sync.cloudflare_client.CloudflareClient` satisfies all three;
tests substitute in-memory fakes for just the one they need.
"""

from __future__ import annotations

from typing import Protocol

from cf_tunnel_sync.models import (
    AccessAppInput,
    AccessAppRecord,
    AccessPolicyInput,
    AccessPolicyRecord,
    DNSRecord,
    DNSRecordInput,
    TunnelConfig,
    Zone,
)


class TunnelConfigAPI(Protocol):
    """Read / replace the tunnel's single configuration document."""

    def get_tunnel_config(self) -> TunnelConfig: ...

    def update_tunnel_config(self, config: TunnelConfig) -> None: ...


class DNSAPI(Protocol):
    def list_zones(self) -> list[Zone]: ...

    def list_dns_records(self, zone_id: str, record_type: str, name: str = "") -> list[DNSRecord]: ...

    def create_dns_record(self, zone_id: str, record: DNSRecordInput) -> DNSRecord: ...

    def update_dns_record(self, zone_id: str, record_id: str, record: DNSRecordInput) -> DNSRecord: ...

    def delete_dns_record(self, zone_id: str, record_id: str) -> None: ...


class AccessAPI(Protocol):
    """Access apps, policies and tags. Policies are never deleted."""

    def list_access_apps(self) -> list[AccessAppRecord]: ...

    def create_access_app(self, app: AccessAppInput) -> AccessAppRecord: ...

    def update_access_app(self, app_id: str, app: AccessAppInput) -> AccessAppRecord: ...

    def delete_access_app(self, app_id: str) -> None: ...

    def list_access_policies(self) -> list[AccessPolicyRecord]: ...

    def create_access_policy(self, policy: AccessPolicyInput) -> AccessPolicyRecord: ...

    def update_access_policy(self, policy_id: str, policy: AccessPolicyInput) -> AccessPolicyRecord: ...

    def ensure_access_tag(self, name: str) -> None: ...
