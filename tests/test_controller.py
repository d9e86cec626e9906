"""Tests for the controller module (unit-level, mocking external dependencies)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from cf_tunnel_sync.cloudflare_client import CloudflareAPIError
from cf_tunnel_sync.config import ControllerSettings
from cf_tunnel_sync.controller import SyncController
from cf_tunnel_sync.models import ContainerInfo, IngressRule, TunnelConfig, Zone


def _make_settings(**overrides) -> ControllerSettings:
    defaults = {
        "api_token": "test-token",
        "account_id": "acct",
        "tunnel_id": "tun",
        "poll_interval": 30,
        "log_level": "WARNING",
        "log_format": "console",
    }
    defaults.update(overrides)
    return ControllerSettings(**defaults)


def _web_container() -> ContainerInfo:
    return ContainerInfo(
        id="c1",
        name="web",
        labels={
            "cloudflare.tunnel.enable": "true",
            "cloudflare.tunnel.hostname": "web.example.com",
            "cloudflare.tunnel.service": "http://web:80",
        },
    )


def _make_controller(containers: list[ContainerInfo] | None = None, **overrides) -> tuple[SyncController, MagicMock]:
    cloudflare = MagicMock()
    cloudflare.get_tunnel_config.return_value = TunnelConfig(ingress=[IngressRule(service="http_status:404")])
    cloudflare.list_zones.return_value = [Zone(id="z1", name="example.com")]
    cloudflare.list_dns_records.return_value = []
    cloudflare.list_access_apps.return_value = []
    cloudflare.list_access_policies.return_value = []

    reader = MagicMock()
    reader.list_running_containers.return_value = containers if containers is not None else [_web_container()]

    controller = SyncController(_make_settings(**overrides), cloudflare=cloudflare, docker_reader=reader)
    return controller, cloudflare


class TestSyncControllerInit:
    def test_builds_client_from_settings(self) -> None:
        controller = SyncController(_make_settings(api_base_url="https://api.example.test/client/v4/"))
        assert controller._cloudflare._base_url == "https://api.example.test/client/v4"
        assert controller._cloudflare._api_token == "test-token"

    def test_stop_is_safe_when_not_started(self) -> None:
        controller = SyncController(_make_settings())
        controller.stop()
        controller.stop()


class TestSyncOnce:
    def test_runs_all_reconcilers_in_order(self) -> None:
        controller, cloudflare = _make_controller(manage_tunnel=True, manage_dns=True)

        report = controller.sync_once()

        assert report.ingress is not None and report.ingress.applied
        written = cloudflare.update_tunnel_config.call_args.args[0]
        assert [r.hostname for r in written.ingress] == ["web.example.com", ""]
        assert report.dns is not None and report.dns.created == ["web.example.com"]
        cloudflare.create_dns_record.assert_called_once()
        names = [c[0] for c in cloudflare.method_calls]
        assert names.index("update_tunnel_config") < names.index("list_zones")

    def test_read_only_by_default(self) -> None:
        controller, cloudflare = _make_controller()
        controller.sync_once()
        cloudflare.update_tunnel_config.assert_not_called()
        cloudflare.list_zones.assert_not_called()
        cloudflare.list_access_apps.assert_not_called()

    def test_ingress_failure_does_not_block_other_reconcilers(self) -> None:
        controller, cloudflare = _make_controller(manage_dns=True, manage_access=True)
        cloudflare.get_tunnel_config.side_effect = CloudflareAPIError("boom", status_code=500)

        report = controller.sync_once()

        assert report.ingress is None
        assert report.dns is not None and report.dns.created == ["web.example.com"]
        assert report.access is not None
        cloudflare.list_zones.assert_called_once()
        cloudflare.list_access_apps.assert_called_once()

    def test_dns_failure_is_isolated(self) -> None:
        controller, cloudflare = _make_controller(manage_dns=True, manage_access=True)
        cloudflare.list_zones.side_effect = CloudflareAPIError("boom", status_code=500)

        report = controller.sync_once()

        assert report.dns is None
        assert report.ingress is not None
        cloudflare.list_access_apps.assert_called_once()

    def test_access_failure_is_isolated(self) -> None:
        controller, cloudflare = _make_controller(manage_dns=True, manage_access=True)
        cloudflare.list_access_apps.side_effect = CloudflareAPIError("denied", status_code=403)

        report = controller.sync_once()

        assert report.access is None
        assert report.ingress is not None
        assert report.dns is not None and report.dns.created == ["web.example.com"]

    def test_invalid_labels_do_not_fail_pass(self) -> None:
        broken = ContainerInfo(id="c2", name="broken", labels={"cloudflare.tunnel.enable": "nope"})
        controller, cloudflare = _make_controller([broken, _web_container()], manage_tunnel=True)
        report = controller.sync_once()
        assert report.ingress is not None
        assert [r.hostname for r in report.ingress.rules] == ["web.example.com", ""]

    def test_docker_failure_propagates(self) -> None:
        controller, _ = _make_controller()
        controller._docker.list_running_containers.side_effect = DockerException("socket missing")
        with pytest.raises(DockerException):
            controller.sync_once()


class TestRun:
    def test_run_once_exits_after_first_pass(self) -> None:
        controller, _ = _make_controller(run_once=True)
        with patch.object(controller, "sync_once") as sync_once:
            controller.run()
        sync_once.assert_called_once()

    def test_pass_errors_do_not_stop_loop(self) -> None:
        controller, _ = _make_controller(poll_interval=0.01)
        calls = []

        def _failing_pass():
            calls.append(1)
            if len(calls) >= 3:
                controller.stop()
            raise CloudflareAPIError("flaky")

        with patch.object(controller, "sync_once", side_effect=_failing_pass):
            controller.run()
        assert len(calls) == 3

    def test_stop_closes_clients(self) -> None:
        controller, cloudflare = _make_controller()
        controller.stop()
        cloudflare.close.assert_called_once()
        controller._docker.close.assert_called_once()
