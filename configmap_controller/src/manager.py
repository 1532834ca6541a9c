from __future__ import annotations

import logging
import threading
from typing import Any

from prometheus_client import start_http_server

from configmap_controller.src.config import ManagerConfig
from configmap_controller.src.controller import ConfigMapController
from configmap_controller.src.health import ProbeRegistry, ping, start_health_server
from configmap_controller.src.kube import KubeClients
from configmap_controller.src.leader import LeaseLeaderElector
from configmap_controller.src.reconciler import ConfigMapReconciler
from configmap_controller.src.restart import DeploymentRestarter

LOGGER = logging.getLogger(__name__)

# Must exceed the informer's stream shutdown time so a leadership handoff
# never leaves two watch loops running.
CONTROLLER_STOP_TIMEOUT_SECONDS = 45


def build_controller(config: ManagerConfig, clients: KubeClients) -> ConfigMapController:
    """Wire restarter, reconciler and controller from configuration."""
    timeout = config.request_timeout_seconds
    restarter = DeploymentRestarter(apps_api=clients.apps, request_timeout=timeout)
    reconciler = ConfigMapReconciler(core_api=clients.core, restarter=restarter, request_timeout=timeout)
    return ConfigMapController(
        core_api=clients.core,
        reconciler=reconciler,
        namespace=config.watch_namespace,
        max_concurrent_reconciles=config.max_concurrent_reconciles,
    )


class Manager:
    """Runs the ConfigMap controller with probes, metrics and optional leader election.

    Losing leadership stops the controller and ends :meth:`run`; the process
    is expected to exit and be restarted by its Deployment, matching
    controller-runtime managers.
    """

    def __init__(
        self,
        config: ManagerConfig,
        clients: KubeClients,
        controller: ConfigMapController | None = None,
        elector: LeaseLeaderElector | None = None,
    ) -> None:
        self.config = config
        self.clients = clients
        self.controller = controller if controller is not None else build_controller(config, clients)
        if elector is None and config.leader_election_enabled:
            elector = LeaseLeaderElector.from_config(clients.coordination, config)
        self.elector = elector
        self.probes = ProbeRegistry()
        self.probes.add_healthz_check("ping", ping)
        self.probes.add_readyz_check("ping", ping)
        self._servers: list[Any] = []
        self._controller_thread: threading.Thread | None = None
        self._state_lock = threading.Lock()

    def start_endpoints(self) -> None:
        self._servers.append(start_health_server(self.probes, self.config.health_probe_port))
        if self.config.metrics_port:
            server, _ = start_http_server(self.config.metrics_port)
            self._servers.append(server)
            LOGGER.info("Metrics server listening on :%d", self.config.metrics_port)

    def stop_endpoints(self) -> None:
        for server in self._servers:
            server.shutdown()
        self._servers.clear()

    def _start_controller(self, shutdown_event: threading.Event) -> None:
        with self._state_lock:
            if shutdown_event.is_set():
                return
            if self._controller_thread is not None and self._controller_thread.is_alive():
                LOGGER.error("Refusing to start a second controller while the previous one is running")
                shutdown_event.set()
                return

            def _run() -> None:
                try:
                    self.controller.run_forever(shutdown_event=shutdown_event)
                except Exception:
                    LOGGER.exception("Controller thread crashed")
                finally:
                    # The controller only returns on shutdown or a fatal informer error.
                    shutdown_event.set()

            self._controller_thread = threading.Thread(target=_run, daemon=True, name="controller")
            self._controller_thread.start()

    def _stop_controller(self, shutdown_event: threading.Event) -> None:
        with self._state_lock:
            self.controller.request_stop()
            shutdown_event.set()
            thread = self._controller_thread
            if thread is None:
                return
            thread.join(timeout=CONTROLLER_STOP_TIMEOUT_SECONDS)
            if thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss", CONTROLLER_STOP_TIMEOUT_SECONDS
                )
                return
            self._controller_thread = None

    def run(self, shutdown_event: threading.Event) -> None:
        """Block until ``shutdown_event`` is set or the controller stops."""
        self.start_endpoints()
        try:
            if self.elector is None:
                LOGGER.info("Leader election disabled, starting controller")
                self._start_controller(shutdown_event)
                shutdown_event.wait()
                self._stop_controller(shutdown_event)
                return

            def on_stopped_leading() -> None:
                LOGGER.info("Stopped leading, shutting down controller")
                self._stop_controller(shutdown_event)

            self.elector.run(
                on_started_leading=lambda: self._start_controller(shutdown_event),
                on_stopped_leading=on_stopped_leading,
                stop_event=shutdown_event,
            )
            self._stop_controller(shutdown_event)
        finally:
            self.stop_endpoints()
