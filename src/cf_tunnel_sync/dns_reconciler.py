"""DNS reconciler: one proxied CNAME per tunnel hostname.

Each hostname is handled in the most specific zone of the account that
contains it. Records are only touched when they carry the ownership comment
or already point at the tunnel.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from cf_tunnel_sync.cloudflare_client import CloudflareAPIError
from cf_tunnel_sync.gateway import DNSAPI
from cf_tunnel_sync.models import DNS_RECORD_TTL, DNS_RECORD_TYPE, DNSRecord, DNSRecordInput, RouteSpec, Zone
from cf_tunnel_sync.ownership import dns_managed_comment

logger = structlog.get_logger(__name__)


@dataclass
class DNSSyncResult:
    """Hostnames acted upon during one pass (dry-run entries included)."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def normalize_hostname(hostname: str) -> str:
    return hostname.strip().rstrip(".").lower()


def unique_hostnames(routes: list[RouteSpec]) -> list[str]:
    return sorted({normalize_hostname(r.key.hostname) for r in routes if r.key.hostname.strip()})


def order_zones(zones: list[Zone]) -> list[Zone]:
    """Longest zone name first, so child zones win over their parents."""
    return sorted(zones, key=lambda z: len(z.name), reverse=True)


def hostname_in_zone(hostname: str, zone_name: str) -> bool:
    host = normalize_hostname(hostname)
    zone = normalize_hostname(zone_name)
    return host == zone or host.endswith("." + zone)


def assign_hostnames_to_zones(hostnames: list[str], zones: list[Zone]) -> list[tuple[Zone, list[str]]]:
    """Pair each zone (longest first) with the hostnames it claims.

    A hostname is claimed by the first matching zone only.
    """
    claimed: set[str] = set()
    assignments: list[tuple[Zone, list[str]]] = []
    for zone in order_zones(zones):
        mine = [h for h in hostnames if h not in claimed and hostname_in_zone(h, zone.name)]
        claimed.update(mine)
        assignments.append((zone, mine))
    return assignments


class DNSReconciler:
    """Creates, updates and (optionally) deletes tunnel CNAME records.

    Parameters
    ----------
    api:
        DNS gateway.
    tunnel_id:
        Tunnel the records should point at (``<id>.cfargotunnel.com``).
    managed_by:
        Ownership value written into the record comment.
    dry_run:
        Log intended writes without issuing them.
    manage_dns:
        Allow creating and updating records.
    delete_dns:
        Allow deleting owned records whose hostname is no longer desired.
    """

    def __init__(
        self,
        api: DNSAPI,
        tunnel_id: str,
        managed_by: str = "",
        dry_run: bool = False,
        manage_dns: bool = False,
        delete_dns: bool = False,
    ) -> None:
        self._api = api
        self._tunnel_id = tunnel_id
        self._managed_comment = dns_managed_comment(managed_by)
        self._dry_run = dry_run
        self._manage = manage_dns
        self._delete = delete_dns

    @property
    def tunnel_target(self) -> str:
        return f"{self._tunnel_id}.cfargotunnel.com"

    def reconcile(self, routes: list[RouteSpec]) -> DNSSyncResult:
        result = DNSSyncResult()
        if not self._manage and not self._delete:
            return result

        hostnames = unique_hostnames(routes)
        if not hostnames and not self._delete:
            return result

        zones = self._api.list_zones()
        if not zones:
            logger.warning("no_zones_for_account_dns_sync_skipped")
            return result

        for zone, claimed in assign_hostnames_to_zones(hostnames, zones):
            if self._delete:
                try:
                    self._delete_stale_records(zone, set(claimed), result)
                except CloudflareAPIError as exc:
                    logger.error("dns_list_records_failed", zone=zone.name, error=str(exc))
                    continue
            if self._manage:
                for hostname in claimed:
                    self._upsert_record(zone, hostname, result)

        return result

    # -- deletion ---------------------------------------------------------------

    def _delete_stale_records(self, zone: Zone, claimed: set[str], result: DNSSyncResult) -> None:
        records = self._api.list_dns_records(zone.id, DNS_RECORD_TYPE)
        for record in records:
            hostname = normalize_hostname(record.name)
            if hostname in claimed:
                continue
            if record.comment != self._managed_comment:
                continue
            logger.warning("deleting_managed_dns_record_no_longer_desired", hostname=hostname, zone=zone.name)
            result.deleted.append(hostname)
            if self._dry_run:
                continue
            try:
                self._api.delete_dns_record(zone.id, record.id)
            except CloudflareAPIError as exc:
                logger.error("dns_record_delete_failed", hostname=hostname, zone=zone.name, error=str(exc))

    # -- upsert -----------------------------------------------------------------

    def _desired_record(self, hostname: str) -> DNSRecordInput:
        return DNSRecordInput(
            type=DNS_RECORD_TYPE,
            name=hostname,
            content=self.tunnel_target,
            proxied=True,
            ttl=DNS_RECORD_TTL,
            comment=self._managed_comment,
        )

    def _upsert_record(self, zone: Zone, hostname: str, result: DNSSyncResult) -> None:
        try:
            records = self._api.list_dns_records(zone.id, DNS_RECORD_TYPE, hostname)
        except CloudflareAPIError as exc:
            logger.error("dns_list_records_failed", hostname=hostname, zone=zone.name, error=str(exc))
            return

        if len(records) > 1:
            logger.warning("multiple_dns_records_found_skipping", hostname=hostname, zone=zone.name)
            result.skipped.append(hostname)
            return

        desired = self._desired_record(hostname)

        if not records:
            logger.info("creating_dns_record", hostname=hostname, zone=zone.name, dry_run=self._dry_run)
            result.created.append(hostname)
            if self._dry_run:
                return
            try:
                self._api.create_dns_record(zone.id, desired)
            except CloudflareAPIError as exc:
                logger.error("dns_record_create_failed", hostname=hostname, zone=zone.name, error=str(exc))
            return

        record = records[0]
        if record.type != DNS_RECORD_TYPE:
            logger.warning("dns_record_not_cname_skipping", hostname=hostname, zone=zone.name, type=record.type)
            result.skipped.append(hostname)
            return
        if not self._is_managed(record, desired):
            logger.warning("dns_record_not_managed_skipping", hostname=hostname, zone=zone.name)
            result.skipped.append(hostname)
            return
        if _record_matches(record, desired):
            logger.debug("dns_record_up_to_date", hostname=hostname, zone=zone.name)
            return

        logger.info("updating_dns_record", hostname=hostname, zone=zone.name, dry_run=self._dry_run)
        result.updated.append(hostname)
        if self._dry_run:
            return
        try:
            self._api.update_dns_record(zone.id, record.id, desired)
        except CloudflareAPIError as exc:
            logger.error("dns_record_update_failed", hostname=hostname, zone=zone.name, error=str(exc))

    def _is_managed(self, record: DNSRecord, desired: DNSRecordInput) -> bool:
        if record.comment == self._managed_comment:
            return True
        return record.content.lower() == desired.content.lower()


def _record_matches(record: DNSRecord, desired: DNSRecordInput) -> bool:
    return (
        record.content.lower() == desired.content.lower()
        and record.proxied == desired.proxied
        and record.comment == desired.comment
    )
