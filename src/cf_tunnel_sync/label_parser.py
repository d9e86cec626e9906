"""Container label parsing.

Turns the ``cloudflare.tunnel.*`` and ``cloudflare.access.*`` labels of running
containers into desired :class:`RouteSpec` and :class:`AccessAppSpec` objects.
Invalid containers are skipped; the problems are returned as
:class:`LabelError` values, never raised.
"""

from __future__ import annotations

from typing import Any

from cf_tunnel_sync.models import AccessAppSpec, AccessPolicySpec, ContainerInfo, RouteKey, RouteSpec, SourceRef

TUNNEL_PREFIX = "cloudflare.tunnel."
LABEL_ENABLE = TUNNEL_PREFIX + "enable"
LABEL_HOSTNAME = TUNNEL_PREFIX + "hostname"
LABEL_PATH = TUNNEL_PREFIX + "path"
LABEL_SERVICE = TUNNEL_PREFIX + "service"
LABEL_ORIGIN_SERVER_NAME = TUNNEL_PREFIX + "origin.server-name"
LABEL_ORIGIN_NO_TLS_VERIFY = TUNNEL_PREFIX + "origin.no-tls-verify"

ACCESS_PREFIX = "cloudflare.access."
ACCESS_ENABLE = ACCESS_PREFIX + "enable"
ACCESS_APP_NAME = ACCESS_PREFIX + "app.name"
ACCESS_APP_DOMAIN = ACCESS_PREFIX + "app.domain"
ACCESS_APP_ID = ACCESS_PREFIX + "app.id"
ACCESS_APP_TAGS = ACCESS_PREFIX + "app.tags"
ACCESS_POLICY_PREFIX = ACCESS_PREFIX + "policy."

POLICY_ACTIONS = ("allow", "deny")

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class LabelError(ValueError):
    """A container's labels could not be turned into desired state."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_bool(value: str) -> bool:
    """Parse a label boolean; raises ``ValueError`` for anything unrecognised."""
    value = value.strip()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean {value!r}")


def split_comma_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _collect_suffixes(labels: dict[str, str], base: str) -> set[str]:
    prefix = base + "."
    return {key[len(prefix):] for key in labels if key.startswith(prefix) and key[len(prefix):]}


def _is_enabled(container: ContainerInfo, label: str, errors: list[LabelError]) -> bool:
    value = container.labels.get(label)
    if value is None:
        return False
    try:
        return parse_bool(value)
    except ValueError as exc:
        errors.append(LabelError(f"container {container.name}: invalid {label} label: {exc}"))
        return False


def _parse_origin(
    container: ContainerInfo,
    server_name_label: str,
    no_tls_verify_label: str,
) -> tuple[str | None, bool | None]:
    labels = container.labels
    server_name: str | None = None
    if server_name_label in labels:
        server_name = labels[server_name_label].strip()
        if not server_name:
            raise LabelError(f"container {container.name}: {server_name_label} cannot be empty")

    no_tls_verify: bool | None = None
    if no_tls_verify_label in labels:
        try:
            no_tls_verify = parse_bool(labels[no_tls_verify_label])
        except ValueError as exc:
            raise LabelError(f"container {container.name}: invalid {no_tls_verify_label} label: {exc}") from exc

    return server_name, no_tls_verify


def _build_route(container: ContainerInfo, suffix: str = "") -> RouteSpec:
    """Build the route for the base labels (``suffix=""``) or a suffixed set."""
    tail = f".{suffix}" if suffix else ""
    hostname_label = LABEL_HOSTNAME + tail
    service_label = LABEL_SERVICE + tail
    path_label = LABEL_PATH + tail
    labels = container.labels

    hostname = labels.get(hostname_label, "").strip()
    service = labels.get(service_label, "").strip()
    path = labels.get(path_label, "").strip()

    if not hostname:
        raise LabelError(f"container {container.name}: missing required {hostname_label} label")
    if not service:
        raise LabelError(f"container {container.name}: missing required {service_label} label")
    if path and not path.startswith("/"):
        raise LabelError(f"container {container.name}: {path_label} must start with '/'")

    server_name, no_tls_verify = _parse_origin(
        container, LABEL_ORIGIN_SERVER_NAME + tail, LABEL_ORIGIN_NO_TLS_VERIFY + tail
    )
    return RouteSpec(
        key=RouteKey(hostname=hostname, path=path),
        service=service,
        origin_server_name=server_name,
        no_tls_verify=no_tls_verify,
        source=SourceRef(container_id=container.id, container_name=container.name),
    )


# ---------------------------------------------------------------------------
# Tunnel routes
# ---------------------------------------------------------------------------


def parse_containers(containers: list[ContainerInfo]) -> tuple[list[RouteSpec], list[LabelError]]:
    """Return the desired ingress routes and any label validation errors.

    Containers are visited in ID order. Each enabled container yields its base
    route plus one route per ``hostname.<s>`` / ``service.<s>`` pair.
    """
    routes: list[RouteSpec] = []
    errors: list[LabelError] = []
    seen: set[RouteKey] = set()

    def append(route: RouteSpec) -> None:
        if route.key in seen:
            errors.append(LabelError(f"duplicate route definition for {route.key}"))
            return
        seen.add(route.key)
        routes.append(route)

    for container in sorted(containers, key=lambda c: c.id):
        if not _is_enabled(container, LABEL_ENABLE, errors):
            continue

        try:
            append(_build_route(container))
        except LabelError as exc:
            errors.append(exc)
            continue

        host_suffixes = _collect_suffixes(container.labels, LABEL_HOSTNAME)
        service_suffixes = _collect_suffixes(container.labels, LABEL_SERVICE)
        for suffix in sorted(host_suffixes - service_suffixes):
            errors.append(
                LabelError(
                    f"container {container.name}: {LABEL_HOSTNAME}.{suffix} is set without "
                    f"matching {LABEL_SERVICE}.{suffix}; skipping"
                )
            )
        for suffix in sorted(service_suffixes - host_suffixes):
            errors.append(
                LabelError(
                    f"container {container.name}: {LABEL_SERVICE}.{suffix} is set without "
                    f"matching {LABEL_HOSTNAME}.{suffix}; skipping"
                )
            )

        for suffix in sorted(host_suffixes & service_suffixes):
            try:
                append(_build_route(container, suffix))
            except LabelError as exc:
                errors.append(LabelError(f"{exc}; skipping"))

    return routes, errors


# ---------------------------------------------------------------------------
# Access apps
# ---------------------------------------------------------------------------


def _parse_policies(container: ContainerInfo) -> tuple[list[AccessPolicySpec], list[LabelError]]:
    errors: list[LabelError] = []
    builders: dict[int, dict[str, Any]] = {}

    for label, value in sorted(container.labels.items()):
        if not label.startswith(ACCESS_POLICY_PREFIX):
            continue
        index_part, _, field = label[len(ACCESS_POLICY_PREFIX):].partition(".")
        if not field:
            errors.append(LabelError(f"container {container.name}: invalid access policy label {label}"))
            continue
        try:
            index = int(index_part)
        except ValueError:
            index = 0
        if index < 1:
            errors.append(LabelError(f"container {container.name}: invalid access policy index in {label}"))
            continue

        builder = builders.setdefault(index, {})
        trimmed = value.strip()
        if field == "id":
            builder["id"] = trimmed
        elif field == "name":
            builder["name"] = trimmed
        elif field == "action":
            builder["action"] = trimmed.lower()
        elif field == "include.emails":
            builder["include_emails"] = split_comma_list(trimmed)
        elif field == "include.ips":
            builder["include_ips"] = split_comma_list(trimmed)
        else:
            errors.append(LabelError(f"container {container.name}: unknown access policy label {label}"))

    policies: list[AccessPolicySpec] = []
    for index in sorted(builders):
        policy = AccessPolicySpec(**builders[index])
        has_rules = bool(policy.include_emails or policy.include_ips)
        prefix = f"container {container.name}: access policy {index}"

        if not policy.action and not has_rules:
            if not policy.id and not policy.name:
                errors.append(LabelError(f"{prefix} missing id or name"))
                continue
            policies.append(policy)
            continue

        if not policy.name:
            errors.append(LabelError(f"{prefix} missing name"))
            continue
        if not policy.action:
            errors.append(LabelError(f"{prefix} missing action"))
            continue
        if policy.action not in POLICY_ACTIONS:
            errors.append(LabelError(f"{prefix} has invalid action {policy.action!r}"))
            continue
        if not has_rules:
            errors.append(LabelError(f"{prefix} has no include rules"))
            continue
        policy.managed = True
        policies.append(policy)

    return policies, errors


def parse_access_containers(containers: list[ContainerInfo]) -> tuple[list[AccessAppSpec], list[LabelError]]:
    """Return the desired Access apps (sorted by ``name@domain``) and any errors."""
    apps: dict[tuple[str, str], AccessAppSpec] = {}
    errors: list[LabelError] = []

    for container in sorted(containers, key=lambda c: c.id):
        if not _is_enabled(container, ACCESS_ENABLE, errors):
            continue

        labels = container.labels
        name = labels.get(ACCESS_APP_NAME, "").strip()
        domain = labels.get(ACCESS_APP_DOMAIN, "").strip()
        app_id = labels.get(ACCESS_APP_ID, "").strip()
        tags_set = ACCESS_APP_TAGS in labels
        tags = split_comma_list(labels[ACCESS_APP_TAGS]) if tags_set else []

        if not name:
            errors.append(LabelError(f"container {container.name}: missing required {ACCESS_APP_NAME} label"))
            continue
        if not domain:
            domain = labels.get(LABEL_HOSTNAME, "").strip()
            if not domain:
                errors.append(
                    LabelError(
                        f"container {container.name}: missing {ACCESS_APP_DOMAIN}; "
                        f"set {ACCESS_APP_DOMAIN} or {LABEL_HOSTNAME}"
                    )
                )
                continue

        policies, policy_errors = _parse_policies(container)
        errors.extend(policy_errors)
        if not policies:
            errors.append(LabelError(f"container {container.name}: no access policies configured"))
            continue

        key = (name, domain)
        if key in apps:
            errors.append(LabelError(f"duplicate access app definition for {name}@{domain}"))
            continue

        apps[key] = AccessAppSpec(
            id=app_id,
            name=name,
            domain=domain,
            policies=policies,
            tags=tags,
            tags_set=tags_set,
            source=SourceRef(container_id=container.id, container_name=container.name),
        )

    return sorted(apps.values(), key=lambda a: a.key), errors
