from __future__ import annotations

import logging
import threading
import time
import uuid

from kubernetes.client import CoreV1Api

from configmap_controller.src.constants import CONTROLLER_NAME
from configmap_controller.src.errors import ReconcileCancelled
from configmap_controller.src.events import ResourceEvent
from configmap_controller.src.informer import ConfigMapInformer
from configmap_controller.src.kube import NamespacedName
from configmap_controller.src.metrics import METRICS
from configmap_controller.src.predicates import ConfigMapChangedPredicate
from configmap_controller.src.reconciler import ConfigMapReconciler, Result
from configmap_controller.src.workqueue import RateLimitingQueue

# How long an idle worker blocks on the queue before re-checking for stop.
_WORKER_POLL_SECONDS = 1.0


class ConfigMapController:
    """Feeds filtered ConfigMap events through a work queue into the reconciler.

    The informer thread calls :meth:`handle_event`; accepted events enqueue
    the ConfigMap key. ``max_concurrent_reconciles`` worker threads drain the
    queue, and the queue guarantees a key is never reconciled by two workers
    at once.

    Result handling per key:

    - ``requeue=True`` (with or without an error): rate-limited re-add.
    - error with ``requeue=False``: logged and counted, then forgotten.
    - success: forgotten, resetting the key's backoff.

    Exceptions escaping the reconciler are logged and requeued like a
    transient error so a single bad object cannot kill a worker.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        reconciler: ConfigMapReconciler,
        *,
        namespace: str | None = None,
        max_concurrent_reconciles: int = 1,
        name: str = CONTROLLER_NAME,
        predicate: ConfigMapChangedPredicate | None = None,
        queue: RateLimitingQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be >= 1")
        self.name = name
        self.reconciler = reconciler
        self.predicate = predicate if predicate is not None else ConfigMapChangedPredicate()
        self.queue = queue if queue is not None else RateLimitingQueue()
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.logger = logger or logging.getLogger(__name__)
        self.informer = ConfigMapInformer(
            core_api=core_api,
            on_event=self.handle_event,
            namespace=namespace,
        )
        self._stop = threading.Event()

    @property
    def ready(self) -> threading.Event:
        return self.informer.synced

    def handle_event(self, event: ResourceEvent) -> None:
        accepted = self.predicate.accepts(event)
        METRICS.events_total.labels(event=event.type.value, accepted=str(accepted).lower()).inc()
        if not accepted:
            return
        key = NamespacedName.of(event.obj)
        if key is None:
            return
        self.logger.debug("Enqueue ConfigMap %s", key, extra={"controller": self.name})
        self.queue.add(key)

    def _reconcile_handler(self, key: NamespacedName) -> Result:
        started = time.monotonic()
        try:
            return self.reconciler.reconcile(key, stop_event=self._stop)
        except Exception as exc:
            self.logger.exception(
                "Recovered from unexpected error reconciling ConfigMap %s",
                key,
                extra={"controller": self.name, "namespace": key.namespace, "resource_name": key.name},
            )
            return Result(requeue=True, error=exc)
        finally:
            METRICS.reconcile_time_seconds.labels(controller=self.name).observe(time.monotonic() - started)

    def process_next_item(self, timeout: float | None = _WORKER_POLL_SECONDS) -> bool:
        """Reconcile one key from the queue. Returns False once the queue is shut down."""
        key, shutdown = self.queue.get(timeout=timeout)
        if shutdown:
            return False
        if key is None:
            return True

        reconcile_id = uuid.uuid4().hex[:12]
        fields = {
            "controller": self.name,
            "reconcile_id": reconcile_id,
            "namespace": key.namespace,
            "resource_name": key.name,
        }
        try:
            result = self._reconcile_handler(key)
            self._handle_result(key, result, fields)
        finally:
            self.queue.done(key)
        return True

    def _handle_result(self, key: NamespacedName, result: Result, fields: dict[str, str]) -> None:
        if isinstance(result.error, ReconcileCancelled):
            METRICS.reconcile_total.labels(controller=self.name, result="cancelled").inc()
            self.queue.forget(key)
            return

        if result.error is not None:
            METRICS.reconcile_errors_total.labels(controller=self.name).inc()
            METRICS.reconcile_total.labels(controller=self.name, result="error").inc()
            if result.requeue:
                self.logger.error(
                    "Reconciler error for %s, requeueing (attempt %d): %s",
                    key,
                    self.queue.num_requeues(key) + 1,
                    result.error,
                    extra=fields,
                )
                self.queue.add_rate_limited(key)
            else:
                self.logger.error("Reconciler error for %s, not requeued: %s", key, result.error, extra=fields)
                self.queue.forget(key)
            return

        if result.requeue:
            METRICS.reconcile_total.labels(controller=self.name, result="requeue").inc()
            self.queue.add_rate_limited(key)
            return

        METRICS.reconcile_total.labels(controller=self.name, result="success").inc()
        self.queue.forget(key)

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def request_stop(self) -> None:
        """Stop the informer, shut the queue down and cancel in-flight reconciles."""
        self._stop.set()
        self.informer.request_stop()
        self.queue.shut_down()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run the informer and workers until ``shutdown_event`` or :meth:`request_stop`."""
        stop = shutdown_event or threading.Event()
        self._stop.clear()

        informer_thread = threading.Thread(
            target=self.informer.run_forever,
            kwargs={"stop_event": stop},
            daemon=True,
            name=f"{self.name}-informer",
        )
        informer_thread.start()
        self.logger.info("Waiting for ConfigMap cache to sync", extra={"controller": self.name})

        workers = [
            threading.Thread(target=self._worker, daemon=True, name=f"{self.name}-worker-{index}")
            for index in range(self.max_concurrent_reconciles)
        ]
        for worker in workers:
            worker.start()
        self.logger.info(
            "Started %d reconcile worker(s)", len(workers), extra={"controller": self.name}
        )

        while not stop.is_set() and not self._stop.is_set():
            if not informer_thread.is_alive():
                self.logger.error("ConfigMap informer exited; stopping controller", extra={"controller": self.name})
                break
            stop.wait(timeout=_WORKER_POLL_SECONDS)

        self.request_stop()
        for worker in workers:
            worker.join(timeout=_WORKER_POLL_SECONDS * 5)
        informer_thread.join(timeout=_WORKER_POLL_SECONDS * 5)
        self.logger.info("Controller stopped", extra={"controller": self.name})
