"""Main controller loop: ties the Docker reader, label parser, Cloudflare
client and the three reconcilers together.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass

import structlog

from cf_tunnel_sync.access_reconciler import AccessReconciler, AccessSyncResult
from cf_tunnel_sync.cloudflare_client import CloudflareAPIError, CloudflareClient
from cf_tunnel_sync.config import ControllerSettings
from cf_tunnel_sync.dns_reconciler import DNSReconciler, DNSSyncResult
from cf_tunnel_sync.docker_reader import DockerReader
from cf_tunnel_sync.ingress_reconciler import IngressPlan, IngressReconciler
from cf_tunnel_sync.label_parser import parse_access_containers, parse_containers

logger = structlog.get_logger(__name__)


@dataclass
class PassReport:
    """What one sync pass did; a field is ``None`` when that reconciler failed."""

    ingress: IngressPlan | None
    dns: DNSSyncResult | None
    access: AccessSyncResult | None


class SyncController:
    """Top-level orchestrator.

    Each pass:

    1. snapshots the labels of running containers,
    2. converges the tunnel ingress rules,
    3. converges the tunnel CNAME records,
    4. converges the Access apps and policies.

    Parameters
    ----------
    settings:
        Fully-resolved controller configuration.
    cloudflare:
        Client to use instead of one built from ``settings``.
    docker_reader:
        Reader to use instead of one built from ``settings``.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        cloudflare: CloudflareClient | None = None,
        docker_reader: DockerReader | None = None,
    ) -> None:
        self._settings = settings
        self._stop_event = threading.Event()
        self._pass_lock = threading.Lock()
        self._pass_ids = itertools.count(1)

        self._cloudflare = cloudflare or CloudflareClient(
            api_token=settings.api_token,
            account_id=settings.account_id,
            tunnel_id=settings.tunnel_id,
            base_url=settings.api_base_url,
            timeout=settings.api_timeout,
        )
        self._docker = docker_reader or DockerReader(
            host=settings.docker_host,
            api_version=settings.docker_api_version,
        )

        self._ingress = IngressReconciler(
            self._cloudflare,
            dry_run=settings.dry_run,
            manage_tunnel=settings.manage_tunnel,
        )
        self._dns = DNSReconciler(
            self._cloudflare,
            tunnel_id=settings.tunnel_id,
            managed_by=settings.managed_by,
            dry_run=settings.dry_run,
            manage_dns=settings.manage_dns,
            delete_dns=settings.delete_dns,
        )
        self._access = AccessReconciler(
            self._cloudflare,
            managed_by=settings.managed_by,
            dry_run=settings.dry_run,
            manage_access=settings.manage_access,
        )

    # -- lifecycle --------------------------------------------------------------

    def run(self) -> None:
        """Run an initial pass, then one pass per poll interval until stopped."""
        logger.info(
            "controller_starting",
            tunnel_id=self._settings.tunnel_id,
            poll_interval=self._settings.poll_interval,
            run_once=self._settings.run_once,
            dry_run=self._settings.dry_run,
            manage_tunnel=self._settings.manage_tunnel,
            manage_dns=self._settings.manage_dns,
            delete_dns=self._settings.delete_dns,
            manage_access=self._settings.manage_access,
            managed_by=self._settings.managed_by,
        )

        self._safe_sync()
        if self._settings.run_once:
            logger.info("run_once_complete")
            return

        while not self._stop_event.wait(timeout=self._settings.poll_interval):
            self._safe_sync()

    def stop(self) -> None:
        """Gracefully shut down the controller."""
        if self._stop_event.is_set():
            return
        logger.info("controller_stopping")
        self._stop_event.set()
        self._cloudflare.close()
        self._docker.close()
        logger.info("controller_stopped")

    # -- reconciliation ---------------------------------------------------------

    def _safe_sync(self) -> None:
        try:
            self.sync_once()
        except Exception:
            logger.exception("sync_pass_failed")

    def sync_once(self) -> PassReport:
        """Execute a single sync pass.

        Raises
        ------
        docker.errors.DockerException
            If the running containers cannot be listed. Reconciler failures
            are logged and do not stop the remaining reconcilers.
        """
        with self._pass_lock, structlog.contextvars.bound_contextvars(pass_id=next(self._pass_ids)):
            containers = self._docker.list_running_containers()
            logger.debug("sync_pass_started", containers=len(containers))

            routes, errors = parse_containers(containers)
            for error in errors:
                logger.warning("label_validation_failed", error=str(error))

            ingress: IngressPlan | None
            try:
                ingress = self._ingress.reconcile(routes)
            except CloudflareAPIError as exc:
                logger.error("ingress_sync_failed", error=str(exc))
                ingress = None

            dns: DNSSyncResult | None
            try:
                dns = self._dns.reconcile(routes)
            except CloudflareAPIError as exc:
                logger.error("dns_sync_failed", error=str(exc))
                dns = None

            apps, access_errors = parse_access_containers(containers)
            for error in access_errors:
                logger.warning("access_label_validation_failed", error=str(error))

            access: AccessSyncResult | None
            try:
                access = self._access.reconcile(apps)
            except CloudflareAPIError as exc:
                logger.error("access_sync_failed", error=str(exc))
                access = None

            logger.info(
                "sync_pass_complete",
                routes=len(routes),
                access_apps=len(apps),
                ingress_changed=ingress.changed if ingress else None,
                ingress_applied=ingress.applied if ingress else None,
            )
            return PassReport(ingress=ingress, dns=dns, access=access)
