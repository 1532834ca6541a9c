from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from configmap_controller.src.config import ManagerConfig
from configmap_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Lease-based leader election on ``coordination.k8s.io/v1``.

    Only the replica holding the Lease runs the ConfigMap controller. Every
    ``retry_period_seconds`` the elector:

    1. Reads the Lease, creating it (and becoming leader) when missing.
    2. Renews it when this identity is the holder.
    3. Takes it over once the other holder's ``renewTime`` is older than
       ``leaseDurationSeconds``.
    4. Treats ``409 Conflict`` as a lost race and retries next cycle.

    A leader that cannot renew for ``renew_deadline_seconds`` steps down and
    ``on_stopped_leading`` is called. Timestamps are UTC.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @classmethod
    def from_config(cls, coordination_api: CoordinationV1Api, config: ManagerConfig) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.leader_election_namespace,
            lease_name=config.leader_election_id,
            identity=config.leader_election_identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _lease_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renew_time = spec.renew_time
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renew_time).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew cycle. Returns True while this replica holds the Lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s/%s: %s", self.namespace, self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, "", self.identity):
            return self._update_lease(lease, now)
        if not self._lease_expired(spec, now):
            return False
        LOGGER.info("Lease %s held by %s expired, taking over", self.lease_name, spec.holder_identity)
        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s created concurrently by another replica", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s/%s", self.namespace, self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Write this identity into the Lease, renewing or acquiring it.

        ``acquireTime`` and ``leaseTransitions`` only change when the holder
        changes.
        """
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        spec = lease.spec
        if spec.holder_identity != self.identity:
            spec.acquire_time = now
            if spec.holder_identity:
                spec.lease_transitions = (spec.lease_transitions or 0) + 1
        elif spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` so a standby replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(name=self.lease_name, namespace=self.namespace)
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s/%s", self.namespace, self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _step_down(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until ``stop_event``, invoking the callbacks on leadership changes."""
        LOGGER.info(
            "Attempting to acquire leader lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        waiting_since = time.monotonic()
        last_renewed = waiting_since
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held and not self._is_leader:
                self._is_leader = True
                last_renewed = time.monotonic()
                LOGGER.info("Successfully acquired lease %s (identity=%s)", self.lease_name, self.identity)
                METRICS.leader_state.set(1)
                METRICS.leader_transitions_total.labels(transition="acquired").inc()
                METRICS.leader_acquire_latency_seconds.observe(last_renewed - waiting_since)
                on_started_leading()
            elif held:
                last_renewed = time.monotonic()
            elif self._is_leader:
                since_renew = time.monotonic() - last_renewed
                if since_renew < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renew,
                    )
                else:
                    LOGGER.error("Leader lease lost after %.2fs without renewal", since_renew)
                    self._step_down()
                    waiting_since = time.monotonic()
                    on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._step_down()
            on_stopped_leading()
