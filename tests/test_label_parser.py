"""Tests for container label parsing."""

from __future__ import annotations

import pytest

from cf_tunnel_sync.label_parser import LabelError, parse_access_containers, parse_bool, parse_containers
from cf_tunnel_sync.models import ContainerInfo


def _messages(errors: list[LabelError]) -> list[str]:
    return [str(e) for e in errors]


class TestParseBool:
    @pytest.mark.parametrize("value", ["1", "t", "T", "TRUE", "true", "True"])
    def test_true(self, value: str) -> None:
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["0", "f", "F", "FALSE", "false", "False"])
    def test_false(self, value: str) -> None:
        assert parse_bool(value) is False

    @pytest.mark.parametrize("value", ["yes", "on", "tRuE", ""])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_bool(value)


class TestParseContainers:
    def test_basic_route(self) -> None:
        container = ContainerInfo(
            id="c1",
            name="web",
            labels={
                "cloudflare.tunnel.enable": "true",
                "cloudflare.tunnel.hostname": " web.example.com ",
                "cloudflare.tunnel.service": "http://web:80",
                "cloudflare.tunnel.path": "/app",
                "cloudflare.tunnel.origin.server-name": "web.internal",
                "cloudflare.tunnel.origin.no-tls-verify": "1",
            },
        )
        routes, errors = parse_containers([container])

        assert errors == []
        assert len(routes) == 1
        route = routes[0]
        assert str(route.key) == "web.example.com/app"
        assert route.service == "http://web:80"
        assert route.origin_server_name == "web.internal"
        assert route.no_tls_verify is True
        assert route.source.container_name == "web"

    def test_origin_options_absent_are_none(self) -> None:
        labels = {
            "cloudflare.tunnel.enable": "true",
            "cloudflare.tunnel.hostname": "a.example.com",
            "cloudflare.tunnel.service": "http://a",
        }
        routes, _ = parse_containers([ContainerInfo(id="c1", name="a", labels=labels)])
        assert routes[0].origin_server_name is None
        assert routes[0].no_tls_verify is None

    def test_disabled_and_unlabelled_are_ignored(self) -> None:
        routes, errors = parse_containers(
            [
                ContainerInfo(id="c1", labels={"cloudflare.tunnel.enable": "false"}),
                ContainerInfo(id="c2", labels={"other": "x"}),
            ]
        )
        assert routes == []
        assert errors == []

    def test_invalid_enable(self) -> None:
        routes, errors = parse_containers([ContainerInfo(id="c1", name="web", labels={"cloudflare.tunnel.enable": "yes"})])
        assert routes == []
        assert "invalid cloudflare.tunnel.enable" in _messages(errors)[0]

    @pytest.mark.parametrize(
        ("labels", "fragment"),
        [
            ({"cloudflare.tunnel.service": "http://a"}, "missing required cloudflare.tunnel.hostname"),
            ({"cloudflare.tunnel.hostname": "a.example.com"}, "missing required cloudflare.tunnel.service"),
            (
                {"cloudflare.tunnel.hostname": "a.example.com", "cloudflare.tunnel.service": "http://a",
                 "cloudflare.tunnel.path": "app"},
                "must start with '/'",
            ),
            (
                {"cloudflare.tunnel.hostname": "a.example.com", "cloudflare.tunnel.service": "http://a",
                 "cloudflare.tunnel.origin.server-name": "  "},
                "cannot be empty",
            ),
            (
                {"cloudflare.tunnel.hostname": "a.example.com", "cloudflare.tunnel.service": "http://a",
                 "cloudflare.tunnel.origin.no-tls-verify": "maybe"},
                "invalid cloudflare.tunnel.origin.no-tls-verify",
            ),
        ],
    )
    def test_validation_errors(self, labels: dict[str, str], fragment: str) -> None:
        labels = {"cloudflare.tunnel.enable": "true", **labels}
        routes, errors = parse_containers([ContainerInfo(id="c1", name="web", labels=labels)])
        assert routes == []
        assert len(errors) == 1
        assert fragment in str(errors[0])
        assert isinstance(errors[0], ValueError)

    def test_suffixed_routes(self) -> None:
        labels = {
            "cloudflare.tunnel.enable": "true",
            "cloudflare.tunnel.hostname": "web.example.com",
            "cloudflare.tunnel.service": "http://web:80",
            "cloudflare.tunnel.hostname.admin": "admin.example.com",
            "cloudflare.tunnel.service.admin": "https://web:8443",
            "cloudflare.tunnel.origin.no-tls-verify.admin": "true",
            "cloudflare.tunnel.hostname.orphan": "orphan.example.com",
            "cloudflare.tunnel.service.lonely": "http://lonely",
        }
        routes, errors = parse_containers([ContainerInfo(id="c1", name="web", labels=labels)])

        assert [str(r.key) for r in routes] == ["web.example.com", "admin.example.com"]
        assert routes[1].no_tls_verify is True
        assert routes[0].no_tls_verify is None
        messages = _messages(errors)
        assert len(messages) == 2
        assert "cloudflare.tunnel.hostname.orphan is set without matching" in messages[0]
        assert "cloudflare.tunnel.service.lonely is set without matching" in messages[1]

    def test_invalid_suffixed_route_keeps_base_route(self) -> None:
        labels = {
            "cloudflare.tunnel.enable": "true",
            "cloudflare.tunnel.hostname": "web.example.com",
            "cloudflare.tunnel.service": "http://web:80",
            "cloudflare.tunnel.hostname.x": "x.example.com",
            "cloudflare.tunnel.service.x": "http://x",
            "cloudflare.tunnel.path.x": "nope",
        }
        routes, errors = parse_containers([ContainerInfo(id="c1", name="web", labels=labels)])
        assert [str(r.key) for r in routes] == ["web.example.com"]
        assert str(errors[0]).endswith("; skipping")

    def test_duplicate_keys_across_containers(self) -> None:
        labels = {
            "cloudflare.tunnel.enable": "true",
            "cloudflare.tunnel.hostname": "web.example.com",
            "cloudflare.tunnel.service": "http://web:80",
        }
        routes, errors = parse_containers(
            [ContainerInfo(id="b", name="second", labels=labels), ContainerInfo(id="a", name="first", labels=labels)]
        )
        assert len(routes) == 1
        assert routes[0].source.container_name == "first"
        assert _messages(errors) == ["duplicate route definition for web.example.com"]


class TestParseAccessContainers:
    def _labels(self, **extra: str) -> dict[str, str]:
        labels = {
            "cloudflare.access.enable": "true",
            "cloudflare.access.app.name": "App",
            "cloudflare.access.app.domain": "app.example.com",
            "cloudflare.access.policy.1.name": "allow-team",
            "cloudflare.access.policy.1.action": "ALLOW",
            "cloudflare.access.policy.1.include.emails": "a@example.com, b@example.com,",
        }
        labels.update(extra)
        return labels

    def test_managed_policy(self) -> None:
        apps, errors = parse_access_containers([ContainerInfo(id="c1", name="app", labels=self._labels())])

        assert errors == []
        app = apps[0]
        assert app.key == "App@app.example.com"
        assert app.tags_set is False
        policy = app.policies[0]
        assert policy.managed is True
        assert policy.action == "allow"
        assert policy.include_emails == ["a@example.com", "b@example.com"]

    def test_domain_falls_back_to_tunnel_hostname(self) -> None:
        labels = self._labels(**{"cloudflare.tunnel.hostname": "web.example.com"})
        del labels["cloudflare.access.app.domain"]
        apps, _ = parse_access_containers([ContainerInfo(id="c1", labels=labels)])
        assert apps[0].domain == "web.example.com"

    def test_missing_domain_without_hostname(self) -> None:
        labels = self._labels()
        del labels["cloudflare.access.app.domain"]
        apps, errors = parse_access_containers([ContainerInfo(id="c1", name="app", labels=labels)])
        assert apps == []
        assert "missing cloudflare.access.app.domain" in str(errors[0])

    def test_reference_only_policies_ordered_by_index(self) -> None:
        labels = {
            "cloudflare.access.enable": "true",
            "cloudflare.access.app.name": "App",
            "cloudflare.access.app.domain": "app.example.com",
            "cloudflare.access.policy.10.id": "pol-10",
            "cloudflare.access.policy.2.name": "shared",
        }
        apps, errors = parse_access_containers([ContainerInfo(id="c1", labels=labels)])
        assert errors == []
        assert [(p.id, p.name, p.managed) for p in apps[0].policies] == [("", "shared", False), ("pol-10", "", False)]

    def test_tags_label_presence_sets_flag(self) -> None:
        apps, _ = parse_access_containers(
            [ContainerInfo(id="c1", labels=self._labels(**{"cloudflare.access.app.tags": ""}))]
        )
        assert apps[0].tags_set is True
        assert apps[0].tags == []

    @pytest.mark.parametrize(
        ("extra", "fragment"),
        [
            ({"cloudflare.access.policy.1.action": "maybe"}, "invalid action"),
            ({"cloudflare.access.policy.1.name": ""}, "missing name"),
            ({"cloudflare.access.policy.1.include.emails": ""}, "no include rules"),
            ({"cloudflare.access.policy.2.action": "deny"}, "missing name"),
            ({"cloudflare.access.policy.x.name": "bad"}, "invalid access policy index"),
            ({"cloudflare.access.policy.1.include.groups": "g"}, "unknown access policy label"),
            ({"cloudflare.access.policy.3": "bad"}, "invalid access policy label"),
        ],
    )
    def test_policy_errors(self, extra: dict[str, str], fragment: str) -> None:
        _, errors = parse_access_containers([ContainerInfo(id="c1", name="app", labels=self._labels(**extra))])
        assert any(fragment in str(e) for e in errors), _messages(errors)

    def test_no_valid_policies_drops_app(self) -> None:
        labels = self._labels(**{"cloudflare.access.policy.1.action": "maybe"})
        apps, errors = parse_access_containers([ContainerInfo(id="c1", name="app", labels=labels)])
        assert apps == []
        assert "no access policies configured" in str(errors[-1])

    def test_duplicate_apps(self) -> None:
        apps, errors = parse_access_containers(
            [ContainerInfo(id="c1", labels=self._labels()), ContainerInfo(id="c2", labels=self._labels())]
        )
        assert len(apps) == 1
        assert _messages(errors) == ["duplicate access app definition for App@app.example.com"]

    def test_sorted_by_name_and_domain(self) -> None:
        first = self._labels(**{"cloudflare.access.app.name": "zeta"})
        second = self._labels(**{"cloudflare.access.app.name": "alpha"})
        apps, _ = parse_access_containers([ContainerInfo(id="c1", labels=first), ContainerInfo(id="c2", labels=second)])
        assert [a.name for a in apps] == ["alpha", "zeta"]
