"""Shared fixtures: in-memory stand-ins for the Cloudflare gateways."""

from __future__ import annotations

import itertools

import pytest

from cf_tunnel_sync.cloudflare_client import CloudflareAPIError
from cf_tunnel_sync.models import (
    AccessAppInput,
    AccessAppRecord,
    AccessPolicyInput,
    AccessPolicyRecord,
    DNSRecord,
    DNSRecordInput,
    IngressRule,
    TunnelConfig,
    Zone,
)


class FakeTunnelAPI:
    def __init__(self, rules: list[IngressRule] | None = None, raw: dict | None = None) -> None:
        self.config = TunnelConfig(ingress=list(rules or []), raw=dict(raw or {}))
        self.updates: list[TunnelConfig] = []

    def get_tunnel_config(self) -> TunnelConfig:
        return self.config.model_copy(deep=True)

    def update_tunnel_config(self, config: TunnelConfig) -> None:
        self.updates.append(config)
        self.config = config.model_copy(deep=True)


class FakeDNSAPI:
    def __init__(self, zones: list[Zone] | None = None) -> None:
        self.zones = list(zones or [])
        self.records: dict[str, list[DNSRecord]] = {z.id: [] for z in self.zones}
        self.created: list[tuple[str, DNSRecordInput]] = []
        self.updated: list[tuple[str, str, DNSRecordInput]] = []
        self.deleted: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    def add_record(self, zone_id: str, **fields) -> DNSRecord:
        record = DNSRecord(id=fields.pop("id", f"rec-{next(self._ids)}"), **fields)
        self.records.setdefault(zone_id, []).append(record)
        return record

    def list_zones(self) -> list[Zone]:
        return list(self.zones)

    def list_dns_records(self, zone_id: str, record_type: str, name: str = "") -> list[DNSRecord]:
        # Like the API, a name filter matches records of any type.
        if name:
            return [r for r in self.records.get(zone_id, []) if r.name == name]
        return [r for r in self.records.get(zone_id, []) if r.type == record_type]

    def create_dns_record(self, zone_id: str, record: DNSRecordInput) -> DNSRecord:
        self.created.append((zone_id, record))
        return self.add_record(zone_id, **record.model_dump())

    def update_dns_record(self, zone_id: str, record_id: str, record: DNSRecordInput) -> DNSRecord:
        self.updated.append((zone_id, record_id, record))
        records = self.records[zone_id]
        for index, existing in enumerate(records):
            if existing.id == record_id:
                records[index] = DNSRecord(id=record_id, **record.model_dump())
                return records[index]
        raise CloudflareAPIError("record not found", status_code=404)

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        self.deleted.append((zone_id, record_id))
        self.records[zone_id] = [r for r in self.records[zone_id] if r.id != record_id]


class FakeAccessAPI:
    def __init__(
        self,
        apps: list[AccessAppRecord] | None = None,
        policies: list[AccessPolicyRecord] | None = None,
        tags: set[str] | None = None,
    ) -> None:
        self.apps = list(apps or [])
        self.policies = list(policies or [])
        self.tags = set(tags or ())
        self.calls: list[tuple] = []
        self._ids = itertools.count(1)

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if not c[0].startswith("list")]

    def list_access_apps(self) -> list[AccessAppRecord]:
        self.calls.append(("list_access_apps",))
        return [a.model_copy(deep=True) for a in self.apps]

    def create_access_app(self, app: AccessAppInput) -> AccessAppRecord:
        self.calls.append(("create_access_app", app))
        record = AccessAppRecord(id=f"app-{next(self._ids)}", **app.model_dump())
        self.apps.append(record)
        return record

    def update_access_app(self, app_id: str, app: AccessAppInput) -> AccessAppRecord:
        self.calls.append(("update_access_app", app_id, app))
        record = AccessAppRecord(id=app_id, **app.model_dump())
        self.apps = [record if a.id == app_id else a for a in self.apps]
        return record

    def delete_access_app(self, app_id: str) -> None:
        self.calls.append(("delete_access_app", app_id))
        self.apps = [a for a in self.apps if a.id != app_id]

    def list_access_policies(self) -> list[AccessPolicyRecord]:
        self.calls.append(("list_access_policies",))
        return [p.model_copy(deep=True) for p in self.policies]

    def create_access_policy(self, policy: AccessPolicyInput) -> AccessPolicyRecord:
        self.calls.append(("create_access_policy", policy))
        record = AccessPolicyRecord(id=f"pol-{next(self._ids)}", **policy.model_dump())
        self.policies.append(record)
        return record

    def update_access_policy(self, policy_id: str, policy: AccessPolicyInput) -> AccessPolicyRecord:
        self.calls.append(("update_access_policy", policy_id, policy))
        record = AccessPolicyRecord(id=policy_id, **policy.model_dump())
        self.policies = [record if p.id == policy_id else p for p in self.policies]
        return record

    def ensure_access_tag(self, name: str) -> None:
        self.calls.append(("ensure_access_tag", name))
        self.tags.add(name)


@pytest.fixture()
def tunnel_api() -> FakeTunnelAPI:
    return FakeTunnelAPI()


@pytest.fixture()
def access_api() -> FakeAccessAPI:
    return FakeAccessAPI()
