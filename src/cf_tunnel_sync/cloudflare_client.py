"""HTTP client for the Cloudflare v4 API (tunnel config, DNS, Access)."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import structlog

from cf_tunnel_sync.models import (
    ACCESS_APP_TYPE,
    AccessAppInput,
    AccessAppRecord,
    AccessPolicyInput,
    AccessPolicyRecord,
    AccessPolicyRef,
    AccessRule,
    DNSRecord,
    DNSRecordInput,
    IngressRule,
    TunnelConfig,
    Zone,
)

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"
USER_AGENT = "docker-cloudflare-tunnel-sync"

_ZONES_PER_PAGE = 50
_RECORDS_PER_PAGE = 100


class CloudflareAPIError(Exception):
    """Raised when a Cloudflare API call fails (transport, HTTP status or envelope)."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CloudflareClient:
    """Single-attempt calls against the Cloudflare API.

    Parameters
    ----------
    api_token:
        API token sent as a bearer token.
    account_id:
        Account owning the tunnel, zones and Access resources.
    tunnel_id:
        Tunnel whose ingress configuration is managed.
    base_url:
        API root; defaults to the public v4 endpoint.
    timeout:
        HTTP timeout in seconds.
    """

    def __init__(
        self,
        api_token: str,
        account_id: str,
        tunnel_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        self._api_token = api_token
        self._account_id = account_id
        self._tunnel_id = tunnel_id
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._client: httpx.Client | None = None

    # -- lifecycle --------------------------------------------------------------

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_token}",
                    "User-Agent": USER_AGENT,
                },
                timeout=self._timeout,
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    # -- endpoints --------------------------------------------------------------

    def _config_url(self) -> str:
        return f"/accounts/{self._account_id}/cfd_tunnel/{self._tunnel_id}/configurations"

    def _access_url(self, kind: str, suffix: str = "") -> str:
        path = f"/accounts/{self._account_id}/access/{kind}"
        return f"{path}/{suffix}" if suffix else path

    def _dns_records_url(self, zone_id: str, record_id: str = "") -> str:
        path = f"/zones/{zone_id}/dns_records"
        return f"{path}/{record_id}" if record_id else path

    # -- tunnel configuration ---------------------------------------------------

    def get_tunnel_config(self) -> TunnelConfig:
        """Fetch the tunnel configuration and parse its ingress rules."""
        body = self._request("GET", self._config_url(), "get tunnel config")
        result = body.get("result") or {}
        raw = result.get("config") or {}
        if not isinstance(raw, dict):
            raise CloudflareAPIError("invalid tunnel config: 'config' is not an object", body=body)

        raw_ingress = raw.get("ingress") or []
        if not isinstance(raw_ingress, list) or not all(isinstance(r, dict) for r in raw_ingress):
            raise CloudflareAPIError("invalid ingress rules in tunnel config", body=body)

        return TunnelConfig(
            ingress=[IngressRule.from_api(r) for r in raw_ingress],
            raw=raw,
        )

    def update_tunnel_config(self, config: TunnelConfig) -> None:
        """Replace the tunnel configuration, keeping non-ingress keys from ``config.raw``."""
        payload = dict(config.raw)
        payload["ingress"] = [rule.to_api_payload() for rule in config.ingress]
        logger.info("updating_tunnel_config", tunnel_id=self._tunnel_id, rules=len(config.ingress))
        self._request("PUT", self._config_url(), "update tunnel config", json={"config": payload})

    # -- DNS --------------------------------------------------------------------

    def list_zones(self) -> list[Zone]:
        """List every zone of the account (all pages)."""
        params = {"account.id": self._account_id, "per_page": _ZONES_PER_PAGE}
        return [
            Zone(id=raw.get("id", ""), name=raw.get("name", ""))
            for raw in self._paginate("/zones", "list zones", params)
        ]

    def list_dns_records(self, zone_id: str, record_type: str, name: str = "") -> list[DNSRecord]:
        params: dict[str, Any] = {"per_page": _RECORDS_PER_PAGE}
        if record_type:
            params["type"] = record_type
        if name:
            params["name"] = name
        return [
            self._parse_dns_record(raw)
            for raw in self._paginate(self._dns_records_url(zone_id), f"list DNS records in zone {zone_id}", params)
        ]

    def create_dns_record(self, zone_id: str, record: DNSRecordInput) -> DNSRecord:
        logger.info("creating_dns_record", zone_id=zone_id, name=record.name)
        body = self._request(
            "POST",
            self._dns_records_url(zone_id),
            f"create DNS record {record.name}",
            json=record.to_api_payload(),
        )
        return self._parse_dns_record(body.get("result") or {})

    def update_dns_record(self, zone_id: str, record_id: str, record: DNSRecordInput) -> DNSRecord:
        logger.info("updating_dns_record", zone_id=zone_id, record_id=record_id, name=record.name)
        body = self._request(
            "PUT",
            self._dns_records_url(zone_id, record_id),
            f"update DNS record {record_id}",
            json=record.to_api_payload(),
        )
        return self._parse_dns_record(body.get("result") or {})

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        logger.info("deleting_dns_record", zone_id=zone_id, record_id=record_id)
        self._request("DELETE", self._dns_records_url(zone_id, record_id), f"delete DNS record {record_id}")

    # -- Access apps ------------------------------------------------------------

    def list_access_apps(self) -> list[AccessAppRecord]:
        return [self._parse_access_app(raw) for raw in self._paginate(self._access_url("apps"), "list access apps")]

    def create_access_app(self, app: AccessAppInput) -> AccessAppRecord:
        logger.info("creating_access_app", name=app.name, domain=app.domain)
        body = self._request(
            "POST", self._access_url("apps"), f"create access app {app.name}", json=self._access_app_payload(app)
        )
        return self._parse_access_app(body.get("result") or {})

    def update_access_app(self, app_id: str, app: AccessAppInput) -> AccessAppRecord:
        logger.info("updating_access_app", id=app_id, name=app.name)
        body = self._request(
            "PUT",
            self._access_url("apps", app_id),
            f"update access app {app_id}",
            json=self._access_app_payload(app),
        )
        return self._parse_access_app(body.get("result") or {})

    def delete_access_app(self, app_id: str) -> None:
        logger.info("deleting_access_app", id=app_id)
        self._request("DELETE", self._access_url("apps", app_id), f"delete access app {app_id}")

    # -- Access policies --------------------------------------------------------

    def list_access_policies(self) -> list[AccessPolicyRecord]:
        return [
            self._parse_access_policy(raw)
            for raw in self._paginate(self._access_url("policies"), "list access policies")
        ]

    def create_access_policy(self, policy: AccessPolicyInput) -> AccessPolicyRecord:
        logger.info("creating_access_policy", name=policy.name)
        body = self._request(
            "POST",
            self._access_url("policies"),
            f"create access policy {policy.name}",
            json=self._access_policy_payload(policy),
        )
        return self._parse_access_policy(body.get("result") or {})

    def update_access_policy(self, policy_id: str, policy: AccessPolicyInput) -> AccessPolicyRecord:
        logger.info("updating_access_policy", id=policy_id, name=policy.name)
        body = self._request(
            "PUT",
            self._access_url("policies", policy_id),
            f"update access policy {policy_id}",
            json=self._access_policy_payload(policy),
        )
        return self._parse_access_policy(body.get("result") or {})

    # -- Access tags ------------------------------------------------------------

    def ensure_access_tag(self, name: str) -> None:
        """Create the Access tag ``name`` unless it already exists."""
        if not name.strip():
            return
        if self._access_tag_exists(name):
            return
        logger.info("creating_access_tag", name=name)
        self._request("POST", self._access_url("tags"), f"create access tag {name}", json={"name": name})

    def _access_tag_exists(self, name: str) -> bool:
        url = self._access_url("tags", quote(name, safe=""))
        try:
            resp = self.client.get(url)
        except httpx.HTTPError as exc:
            raise CloudflareAPIError(f"Cloudflare request failed during get access tag {name}: {exc}") from exc
        if resp.status_code == 404:
            return False
        body = self._decode(resp, f"get access tag {name}")
        result = body.get("result") or {}
        return bool(result.get("name"))

    # -- transport helpers ------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        context: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        logger.debug("cloudflare_request", method=method, url=url, params=params)
        try:
            resp = self.client.request(method, url, json=json, params=params)
        except httpx.HTTPError as exc:
            raise CloudflareAPIError(f"Cloudflare request failed during {context}: {exc}") from exc
        return self._decode(resp, context)

    def _paginate(self, url: str, context: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Collect ``result`` items across pages using ``result_info.total_pages``."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            page_params = dict(params or {})
            page_params["page"] = page
            body = self._request("GET", url, context, params=page_params)
            result = body.get("result") or []
            if not isinstance(result, list):
                raise CloudflareAPIError(f"Unexpected result during {context}: expected a list", body=body)
            items.extend(r for r in result if isinstance(r, dict))

            total_pages = (body.get("result_info") or {}).get("total_pages") or 0
            if not total_pages or page >= total_pages:
                return items
            page += 1

    @staticmethod
    def _decode(resp: httpx.Response, context: str) -> dict[str, Any]:
        """Decode the ``{success, errors, result}`` envelope, raising on any failure."""
        if not resp.content:
            raise CloudflareAPIError(
                f"Cloudflare API returned an empty response during {context}: HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise CloudflareAPIError(
                f"Cloudflare API returned non-JSON during {context}: HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            ) from exc
        if not isinstance(body, dict):
            raise CloudflareAPIError(
                f"Cloudflare API returned an unexpected body during {context}",
                status_code=resp.status_code,
                body=body,
            )

        if resp.status_code >= 400:
            summary = _error_summary(body)
            if summary == "unknown error":
                summary = resp.text.strip()
            raise CloudflareAPIError(
                f"Cloudflare API error during {context}: HTTP {resp.status_code}: {summary}",
                status_code=resp.status_code,
                body=body,
            )
        if not body.get("success"):
            raise CloudflareAPIError(
                f"Cloudflare API error during {context}: {_error_summary(body)}",
                status_code=resp.status_code,
                body=body,
            )
        return body

    # -- payload helpers --------------------------------------------------------

    @staticmethod
    def _access_app_payload(app: AccessAppInput) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": app.name,
            "domain": app.domain,
            "type": app.type.strip() or ACCESS_APP_TYPE,
        }
        policies = [{"id": ref.id, "precedence": ref.precedence} for ref in app.policies if ref.id]
        if policies:
            payload["policies"] = policies
        if app.tags:
            payload["tags"] = list(app.tags)
        return payload

    @staticmethod
    def _access_policy_payload(policy: AccessPolicyInput) -> dict[str, Any]:
        include: list[dict[str, dict[str, str]]] = []
        for rule in policy.include:
            if rule.email:
                include.append({"email": {"email": rule.email}})
            if rule.ip:
                include.append({"ip": {"ip": rule.ip}})
        return {"name": policy.name, "decision": policy.action, "include": include}

    # -- parsing helpers --------------------------------------------------------

    @staticmethod
    def _parse_dns_record(raw: dict[str, Any]) -> DNSRecord:
        return DNSRecord(
            id=raw.get("id") or "",
            type=raw.get("type") or "",
            name=raw.get("name") or "",
            content=raw.get("content") or "",
            proxied=bool(raw.get("proxied", False)),
            comment=raw.get("comment") or "",
            ttl=int(raw.get("ttl") or 0),
        )

    @staticmethod
    def _parse_access_app(raw: dict[str, Any]) -> AccessAppRecord:
        return AccessAppRecord(
            id=raw.get("id") or "",
            name=raw.get("name") or "",
            domain=raw.get("domain") or "",
            type=raw.get("type") or "",
            policies=_parse_policy_refs(raw.get("policies") or []),
            tags=[t for t in raw.get("tags") or [] if isinstance(t, str)],
        )

    @staticmethod
    def _parse_access_policy(raw: dict[str, Any]) -> AccessPolicyRecord:
        include, unsupported = _parse_access_rules(raw.get("include") or [])
        return AccessPolicyRecord(
            id=raw.get("id") or "",
            name=raw.get("name") or "",
            action=raw.get("decision") or "",
            include=include,
            has_unsupported_rules=unsupported,
        )


def _parse_policy_refs(raw: list[Any]) -> list[AccessPolicyRef]:
    """Policies come back either as bare IDs or as ``{id, precedence}`` objects."""
    refs: list[AccessPolicyRef] = []
    for index, item in enumerate(raw):
        if isinstance(item, str):
            if item:
                refs.append(AccessPolicyRef(id=item, precedence=index + 1))
            continue
        if isinstance(item, dict) and item.get("id"):
            precedence = item.get("precedence") or index + 1
            refs.append(AccessPolicyRef(id=item["id"], precedence=int(precedence)))
    return refs


def _parse_access_rules(raw: list[Any]) -> tuple[list[AccessRule], bool]:
    rules: list[AccessRule] = []
    unsupported = False
    for entry in raw:
        if not isinstance(entry, dict):
            unsupported = True
            continue
        for kind, value in entry.items():
            if kind == "email" and isinstance(value, dict):
                if value.get("email"):
                    rules.append(AccessRule(email=value["email"]))
            elif kind == "ip" and isinstance(value, dict):
                if value.get("ip"):
                    rules.append(AccessRule(ip=value["ip"]))
            else:
                unsupported = True
    return rules, unsupported


def _error_summary(body: dict[str, Any]) -> str:
    errors = body.get("errors") or []
    messages = [str(e.get("message", "")) for e in errors if isinstance(e, dict)]
    messages = [m for m in messages if m]
    return "; ".join(messages) if messages else "unknown error"
