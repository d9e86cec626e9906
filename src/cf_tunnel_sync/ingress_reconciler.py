"""Ingress reconciler: converges the tunnel's ordered ingress rule list.

The tunnel config is a single document, so every change is a full
read-modify-write. Rules are keyed by ``(hostname, path)``; the catch-all rule
is always regenerated at the end of the list.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from cf_tunnel_sync.gateway import TunnelConfigAPI
from cf_tunnel_sync.models import FALLBACK_SERVICE, IngressRule, RouteKey, RouteSpec

logger = structlog.get_logger(__name__)

ORIGIN_SERVER_NAME = "originServerName"
NO_TLS_VERIFY = "noTLSVerify"


@dataclass
class IngressPlan:
    """Outcome of one ingress reconciliation."""

    rules: list[IngressRule] = field(default_factory=list)
    removed: list[IngressRule] = field(default_factory=list)
    changed: bool = False
    applied: bool = False


# ---------------------------------------------------------------------------
# Origin request merge
# ---------------------------------------------------------------------------


def merge_origin_request(
    existing: Any,
    origin_server_name: str | None,
    no_tls_verify: bool | None,
    route: str = "",
) -> dict[str, Any] | None:
    """Merge the two managed origin fields into an existing ``originRequest``.

    Managed fields are set when given and removed when ``None``; every other key
    is passed through untouched. Returns ``existing`` itself when nothing
    changed, and ``None`` when the result would be empty.
    """
    if existing is None and origin_server_name is None and no_tls_verify is None:
        return None

    changed = False
    merged: dict[str, Any]
    if existing is None:
        merged = {}
    elif isinstance(existing, dict):
        merged = dict(existing)
    else:
        logger.warning("origin_request_invalid_rebuilding", route=route, value=repr(existing)[:100])
        merged = {}
        changed = True

    if origin_server_name is not None:
        current = merged.get(ORIGIN_SERVER_NAME)
        if not (isinstance(current, str) and current == origin_server_name):
            merged[ORIGIN_SERVER_NAME] = origin_server_name
            changed = True
    elif ORIGIN_SERVER_NAME in merged:
        del merged[ORIGIN_SERVER_NAME]
        changed = True

    if no_tls_verify is not None:
        current = merged.get(NO_TLS_VERIFY)
        if not (isinstance(current, bool) and current == no_tls_verify):
            merged[NO_TLS_VERIFY] = no_tls_verify
            changed = True
    elif NO_TLS_VERIFY in merged:
        del merged[NO_TLS_VERIFY]
        changed = True

    if not changed:
        return existing
    return merged or None


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def ingress_equal(left: list[IngressRule], right: list[IngressRule]) -> bool:
    if len(left) != len(right):
        return False
    for a, b in zip(left, right):
        if (a.hostname, a.path, a.service) != (b.hostname, b.path, b.service):
            return False
        if _canonical(a.origin_request) != _canonical(b.origin_request):
            return False
    return True


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class IngressReconciler:
    """Builds and (optionally) writes the desired tunnel ingress list.

    Parameters
    ----------
    api:
        Tunnel configuration gateway.
    dry_run:
        Log intended writes without issuing them.
    manage_tunnel:
        Allow writing the tunnel configuration at all.
    """

    def __init__(self, api: TunnelConfigAPI, dry_run: bool = False, manage_tunnel: bool = False) -> None:
        self._api = api
        self._dry_run = dry_run
        self._manage = manage_tunnel

    def reconcile(self, desired: list[RouteSpec]) -> IngressPlan:
        config = self._api.get_tunnel_config()
        existing = config.ingress

        rules, removed = self.build_desired_ingress(desired, existing)
        plan = IngressPlan(rules=rules, removed=removed)

        for rule in removed:
            logger.warning("ingress_rule_not_in_labels_will_be_removed", rule=str(rule.key), service=rule.service)

        if ingress_equal(existing, rules):
            logger.debug("tunnel_ingress_up_to_date", rules=len(rules))
            return plan

        plan.changed = True
        if not self._manage:
            logger.warning(
                "tunnel_ingress_differs_unmanaged_skipping",
                desired_rules=len(rules),
                existing_rules=len(existing),
                removed=[str(r.key) for r in removed],
            )
            return plan

        logger.info(
            "updating_tunnel_ingress",
            desired_rules=len(rules),
            existing_rules=len(existing),
            removed=[str(r.key) for r in removed],
            dry_run=self._dry_run,
        )
        if self._dry_run:
            return plan

        self._api.update_tunnel_config(config.model_copy(update={"ingress": rules}))
        plan.applied = True
        return plan

    def build_desired_ingress(
        self,
        desired: list[RouteSpec],
        existing: list[IngressRule],
    ) -> tuple[list[IngressRule], list[IngressRule]]:
        """Return ``(rules_to_write, live_rules_dropped)``."""
        existing_by_key: dict[RouteKey, IngressRule] = {}
        duplicates: set[RouteKey] = set()
        for rule in existing:
            if rule.is_catch_all:
                continue
            if not rule.hostname:
                logger.warning("ingress_rule_missing_hostname_will_be_replaced", service=rule.service)
                continue
            if rule.key in existing_by_key:
                duplicates.add(rule.key)
                continue
            existing_by_key[rule.key] = rule

        for key in sorted(duplicates, key=str):
            logger.warning("duplicate_ingress_rules_keeping_first", rule=str(key))

        rules: list[IngressRule] = []
        desired_keys: set[RouteKey] = set()
        for route in desired:
            if route.key in desired_keys:
                logger.warning("duplicate_desired_route_ignored", rule=str(route.key))
                continue
            desired_keys.add(route.key)

            live = existing_by_key.get(route.key)
            rules.append(
                IngressRule(
                    hostname=route.key.hostname,
                    path=route.key.path,
                    service=route.service,
                    origin_request=merge_origin_request(
                        live.origin_request if live else None,
                        route.origin_server_name,
                        route.no_tls_verify,
                        route=str(route.key),
                    ),
                )
            )
        rules.sort(key=lambda r: str(r.key))

        removed = sorted(
            (rule for key, rule in existing_by_key.items() if key not in desired_keys),
            key=lambda r: str(r.key),
        )

        rules.append(IngressRule(service=FALLBACK_SERVICE))
        return rules, removed
