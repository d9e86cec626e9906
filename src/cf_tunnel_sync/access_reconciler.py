"""Access reconciler: converges Access applications and their policies.

Each desired app goes through the same steps, independently of the others:

1. resolve (and, for managed policies, create or update) its policies,
2. ensure its tags exist,
3. find the live app by ID or by ``(name, domain)``,
4. create, update or leave it alone.

After all apps, live apps carrying the ownership tag that were not touched are
deleted. Policies are never deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import structlog

from cf_tunnel_sync.cloudflare_client import CloudflareAPIError
from cf_tunnel_sync.gateway import AccessAPI
from cf_tunnel_sync.models import (
    ACCESS_APP_TYPE,
    AccessAppInput,
    AccessAppRecord,
    AccessAppSpec,
    AccessPolicyInput,
    AccessPolicyRecord,
    AccessPolicyRef,
    AccessPolicySpec,
    AccessRule,
)
from cf_tunnel_sync.ownership import access_managed_tag, has_managed_tag, merge_tags, string_sets_equal

logger = structlog.get_logger(__name__)


class AppOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    ABORTED = "aborted"


@dataclass
class AccessSyncResult:
    """Per-app outcomes plus the policy and deletion side effects of one pass."""

    apps: dict[str, AppOutcome] = field(default_factory=dict)
    policies_created: list[str] = field(default_factory=list)
    policies_updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


class _Lookup(str, Enum):
    FOUND = "found"
    MISSING = "missing"
    AMBIGUOUS = "ambiguous"


# ---------------------------------------------------------------------------
# Live-state index
# ---------------------------------------------------------------------------


def _app_key(name: str, domain: str) -> tuple[str, str]:
    return name.lower(), domain.lower()


class _LiveIndex:
    """Lookup tables over the live apps and policies, kept current within a pass."""

    def __init__(self, apps: list[AccessAppRecord], policies: list[AccessPolicyRecord]) -> None:
        self.apps_by_id: dict[str, AccessAppRecord] = {}
        self.apps_by_key: dict[tuple[str, str], list[AccessAppRecord]] = {}
        self.policies_by_id: dict[str, AccessPolicyRecord] = {}
        self.policies_by_name: dict[str, list[AccessPolicyRecord]] = {}
        for app in apps:
            self.add_app(app)
        for policy in policies:
            self.add_policy(policy)

    def add_app(self, app: AccessAppRecord) -> None:
        if app.id:
            self.apps_by_id[app.id] = app
        self.apps_by_key.setdefault(_app_key(app.name, app.domain), []).append(app)

    def add_policy(self, policy: AccessPolicyRecord) -> None:
        if policy.id:
            self.policies_by_id[policy.id] = policy
        if policy.name:
            self.policies_by_name.setdefault(policy.name.lower(), []).append(policy)

    def replace_policy(self, policy: AccessPolicyRecord) -> None:
        """Swap in the record returned by an update so later apps see the new state."""
        previous = self.policies_by_id.get(policy.id)
        if previous is not None and previous.name:
            bucket = self.policies_by_name.get(previous.name.lower(), [])
            self.policies_by_name[previous.name.lower()] = [p for p in bucket if p.id != policy.id]
        self.add_policy(policy)

    def candidates_for(self, app: AccessAppSpec) -> list[AccessAppRecord]:
        """Every live app the desired app could refer to, ambiguous matches included."""
        if app.id:
            found = self.apps_by_id.get(app.id)
            return [found] if found else []
        return list(self.apps_by_key.get(_app_key(app.name, app.domain), []))


# ---------------------------------------------------------------------------
# Comparison helpers
# ---------------------------------------------------------------------------


def normalize_rules(emails: list[str], ips: list[str]) -> list[str]:
    result = [f"email:{e.strip().lower()}" for e in emails]
    result += [f"ip:{ip.strip().lower()}" for ip in ips]
    return sorted(result)


def normalize_rule_list(rules: list[AccessRule]) -> list[str]:
    result: list[str] = []
    for rule in rules:
        if rule.email:
            result.append(f"email:{rule.email.lower()}")
        if rule.ip:
            result.append(f"ip:{rule.ip.lower()}")
    return sorted(result)


def policy_needs_update(spec: AccessPolicySpec, record: AccessPolicyRecord) -> bool:
    if record.action.lower() != spec.action.lower():
        return True
    return normalize_rules(spec.include_emails, spec.include_ips) != normalize_rule_list(record.include)


def ordered_policy_ids(refs: list[AccessPolicyRef]) -> list[str]:
    """Policy IDs ordered by precedence (missing precedence = list position)."""
    ordered = [(ref.precedence or index + 1, ref.id) for index, ref in enumerate(refs) if ref.id]
    ordered.sort(key=lambda item: item[0])
    return [policy_id for _, policy_id in ordered]


def app_needs_update(record: AccessAppRecord, desired: AccessAppInput) -> bool:
    if record.name != desired.name or record.domain != desired.domain:
        return True
    # An empty remote type means "unset" and never forces an update.
    if record.type and record.type != desired.type:
        return True
    if ordered_policy_ids(record.policies) != ordered_policy_ids(desired.policies):
        return True
    return not string_sets_equal(record.tags, desired.tags)


def _clean_tags(tags: list[str]) -> list[str]:
    cleaned: list[str] = []
    for tag in tags:
        trimmed = tag.strip()
        if trimmed and trimmed not in cleaned:
            cleaned.append(trimmed)
    return cleaned


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class AccessReconciler:
    """Converges Access apps, their policy references and tags.

    Parameters
    ----------
    api:
        Access gateway.
    managed_by:
        Ownership value; the tag ``managed-by=<value>`` marks apps this
        controller may delete.
    dry_run:
        Log intended writes without issuing them.
    manage_access:
        Allow creating, updating and deleting Access resources.
    """

    def __init__(
        self,
        api: AccessAPI,
        managed_by: str = "",
        dry_run: bool = False,
        manage_access: bool = False,
    ) -> None:
        self._api = api
        self._managed_tag = access_managed_tag(managed_by)
        self._dry_run = dry_run
        self._manage = manage_access

    def reconcile(self, apps: list[AccessAppSpec]) -> AccessSyncResult:
        result = AccessSyncResult()
        if not apps and not self._manage:
            return result

        existing_apps = self._api.list_access_apps()
        existing_policies = self._api.list_access_policies() if apps else []
        index = _LiveIndex(existing_apps, existing_policies)

        touched: set[str] = set()
        for app in sorted(apps, key=lambda a: _app_key(a.name, a.domain)):
            log = logger.bind(app=app.name, domain=app.domain)
            try:
                outcome = self._reconcile_app(app, index, touched, result)
            except CloudflareAPIError as exc:
                log.error("access_app_reconcile_failed", error=str(exc))
                outcome = AppOutcome.ABORTED
            if outcome in (AppOutcome.ABORTED, AppOutcome.SKIPPED):
                self._protect(app, index, touched)
            result.apps[app.key] = outcome

        self._delete_orphaned_apps(existing_apps, touched, result)
        return result

    # -- per app ----------------------------------------------------------------

    def _reconcile_app(
        self,
        app: AccessAppSpec,
        index: _LiveIndex,
        touched: set[str],
        result: AccessSyncResult,
    ) -> AppOutcome:
        log = logger.bind(app=app.name, domain=app.domain)

        tagging = self._ensure_managed_tag(log)

        policy_refs = self._resolve_policies(app, index, result)
        if policy_refs is None:
            return AppOutcome.ABORTED
        if not policy_refs:
            log.warning("access_app_has_no_resolved_policies_skipping")
            return AppOutcome.ABORTED

        explicit_tags = self._resolve_explicit_tags(app)

        lookup, record = self._resolve_app(app, index)
        if lookup is _Lookup.AMBIGUOUS:
            return AppOutcome.SKIPPED

        if record is None:
            if app.id:
                return AppOutcome.SKIPPED
            return self._create_app(app, policy_refs, explicit_tags, tagging, index, touched)

        touched.add(record.id)
        desired = self._build_app_input(app, policy_refs, explicit_tags, record.tags, tagging)
        if not app_needs_update(record, desired):
            log.debug("access_app_up_to_date", id=record.id)
            return AppOutcome.UNCHANGED
        if not self._manage:
            log.warning("access_app_differs_unmanaged_skipping_update", id=record.id)
            return AppOutcome.UNCHANGED

        log.info("updating_access_app", id=record.id, dry_run=self._dry_run)
        if self._dry_run:
            return AppOutcome.UPDATED
        try:
            self._api.update_access_app(record.id, desired)
        except CloudflareAPIError as exc:
            log.error("access_app_update_failed", id=record.id, error=str(exc))
            return AppOutcome.UNCHANGED
        return AppOutcome.UPDATED

    def _create_app(
        self,
        app: AccessAppSpec,
        policy_refs: list[AccessPolicyRef],
        explicit_tags: list[str] | None,
        tagging: bool,
        index: _LiveIndex,
        touched: set[str],
    ) -> AppOutcome:
        log = logger.bind(app=app.name, domain=app.domain)
        if not self._manage:
            log.warning("access_app_missing_unmanaged_skipping_create")
            return AppOutcome.SKIPPED
        log.info("creating_access_app", dry_run=self._dry_run)
        if self._dry_run:
            return AppOutcome.CREATED

        desired = self._build_app_input(app, policy_refs, explicit_tags, [], tagging)
        try:
            created = self._api.create_access_app(desired)
        except CloudflareAPIError as exc:
            log.error("access_app_create_failed", error=str(exc))
            return AppOutcome.ABORTED
        index.add_app(created)
        if created.id:
            touched.add(created.id)
        return AppOutcome.CREATED

    def _build_app_input(
        self,
        app: AccessAppSpec,
        policy_refs: list[AccessPolicyRef],
        explicit_tags: list[str] | None,
        existing_tags: list[str],
        tagging: bool,
    ) -> AccessAppInput:
        tags = list(explicit_tags) if explicit_tags is not None else list(existing_tags)
        if tagging:
            tags = merge_tags(tags, self._managed_tag)
        return AccessAppInput(
            name=app.name,
            domain=app.domain,
            type=ACCESS_APP_TYPE,
            policies=policy_refs,
            tags=tags,
        )

    def _resolve_app(self, app: AccessAppSpec, index: _LiveIndex) -> tuple[_Lookup, AccessAppRecord | None]:
        if app.id:
            record = index.apps_by_id.get(app.id)
            if record is None:
                logger.warning("access_app_id_not_found", app=app.name, id=app.id)
                return _Lookup.MISSING, None
            return _Lookup.FOUND, record

        matches = index.apps_by_key.get(_app_key(app.name, app.domain), [])
        if not matches:
            return _Lookup.MISSING, None
        if len(matches) > 1:
            logger.warning(
                "multiple_access_apps_share_name_and_domain_skipping",
                app=app.name,
                domain=app.domain,
                ids=[m.id for m in matches],
            )
            return _Lookup.AMBIGUOUS, None
        return _Lookup.FOUND, matches[0]

    def _protect(self, app: AccessAppSpec, index: _LiveIndex, touched: set[str]) -> None:
        """Keep live counterparts of an unfinished app out of orphan cleanup."""
        for record in index.candidates_for(app):
            if record.id:
                touched.add(record.id)

    # -- tags -------------------------------------------------------------------

    def _ensure_managed_tag(self, log: structlog.stdlib.BoundLogger) -> bool:
        """Make sure the ownership tag exists; returns whether apps may be tagged."""
        if not self._manage:
            return False
        if self._dry_run:
            log.debug("would_ensure_access_tag", tag=self._managed_tag)
            return True
        try:
            self._api.ensure_access_tag(self._managed_tag)
        except CloudflareAPIError as exc:
            log.warning("access_tag_ensure_failed_proceeding_untagged", tag=self._managed_tag, error=str(exc))
            return False
        return True

    def _resolve_explicit_tags(self, app: AccessAppSpec) -> list[str] | None:
        """Return the tag list to enforce, or ``None`` to keep the live tags."""
        if not app.tags_set:
            return None
        tags = _clean_tags(app.tags)
        if not tags or not self._manage or self._dry_run:
            return tags

        for tag in tags:
            try:
                self._api.ensure_access_tag(tag)
            except CloudflareAPIError as exc:
                logger.warning("access_app_tag_ensure_failed", app=app.name, tag=tag, error=str(exc))
                logger.warning("access_app_tags_not_ensured_keeping_existing", app=app.name)
                return None
        return tags

    # -- policies ---------------------------------------------------------------

    def _resolve_policies(
        self,
        app: AccessAppSpec,
        index: _LiveIndex,
        result: AccessSyncResult,
    ) -> list[AccessPolicyRef] | None:
        """Resolve the app's policies in precedence order; ``None`` aborts the app."""
        log = logger.bind(app=app.name)
        refs: list[AccessPolicyRef] = []

        for policy in app.policies:
            precedence = len(refs) + 1

            if policy.id:
                record = index.policies_by_id.get(policy.id)
                if record is None:
                    if not policy.managed:
                        # App-scoped policies are not listed at account scope.
                        log.warning("access_policy_id_not_found_using_id_reference", policy=policy.id)
                        refs.append(AccessPolicyRef(id=policy.id, precedence=precedence))
                        continue
                    log.warning("access_policy_id_not_found", policy=policy.label)
                    return None
                refs.append(AccessPolicyRef(id=record.id, precedence=precedence))
                self._update_policy_if_needed(app, policy, record, index, result)
                continue

            matches = index.policies_by_name.get(policy.name.lower(), [])
            if len(matches) > 1:
                log.warning("multiple_access_policies_share_name_skipping", policy=policy.name)
                return None

            if not matches:
                if not policy.managed:
                    log.warning("access_policy_name_not_found_skipping_app", policy=policy.label)
                    return None
                if not self._manage:
                    log.warning("access_policy_missing_unmanaged_skipping_create", policy=policy.label)
                    continue
                log.info("creating_access_policy", policy=policy.label, dry_run=self._dry_run)
                result.policies_created.append(policy.label)
                if self._dry_run:
                    continue
                try:
                    created = self._api.create_access_policy(self._build_policy_input(policy))
                except CloudflareAPIError as exc:
                    log.error("access_policy_create_failed", policy=policy.label, error=str(exc))
                    return None
                index.add_policy(created)
                refs.append(AccessPolicyRef(id=created.id, precedence=precedence))
                continue

            record = matches[0]
            refs.append(AccessPolicyRef(id=record.id, precedence=precedence))
            self._update_policy_if_needed(app, policy, record, index, result)

        return refs

    def _update_policy_if_needed(
        self,
        app: AccessAppSpec,
        spec: AccessPolicySpec,
        record: AccessPolicyRecord,
        index: _LiveIndex,
        result: AccessSyncResult,
    ) -> None:
        log = logger.bind(app=app.name, policy=spec.label)
        if not spec.managed:
            log.debug("access_policy_reference_only_skipping_update")
            return
        if record.has_unsupported_rules:
            log.warning("access_policy_has_unsupported_rules_will_be_replaced", id=record.id)
        if not policy_needs_update(spec, record):
            log.debug("access_policy_up_to_date", id=record.id)
            return
        if not self._manage:
            log.warning("access_policy_differs_unmanaged_skipping_update", id=record.id)
            return

        log.info("updating_access_policy", id=record.id, dry_run=self._dry_run)
        result.policies_updated.append(spec.label)
        if self._dry_run:
            return
        try:
            updated = self._api.update_access_policy(record.id, self._build_policy_input(spec))
        except CloudflareAPIError as exc:
            log.error("access_policy_update_failed", id=record.id, error=str(exc))
            return
        index.replace_policy(updated)

    @staticmethod
    def _build_policy_input(spec: AccessPolicySpec) -> AccessPolicyInput:
        include = [AccessRule(email=email) for email in spec.include_emails]
        include += [AccessRule(ip=ip) for ip in spec.include_ips]
        return AccessPolicyInput(name=spec.name, action=spec.action, include=include)

    # -- orphans ----------------------------------------------------------------

    def _delete_orphaned_apps(
        self,
        existing: list[AccessAppRecord],
        touched: set[str],
        result: AccessSyncResult,
    ) -> None:
        if not self._manage:
            return

        for app in existing:
            if not app.id or app.id in touched:
                continue
            if not has_managed_tag(app.tags, self._managed_tag):
                continue
            logger.warning("managed_access_app_no_longer_desired_deleting", app=app.name, id=app.id, dry_run=self._dry_run)
            result.deleted.append(app.id)
            if self._dry_run:
                continue
            try:
                self._api.delete_access_app(app.id)
            except CloudflareAPIError as exc:
                logger.error("access_app_delete_failed", app=app.name, id=app.id, error=str(exc))
