from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api

from ekspose.src.config import ControllerConfig, load_config
from ekspose.src.informer import DeploymentInformer
from ekspose.src.keys import InvalidKeyError, WorkloadRef, meta_namespace_key, split_meta_namespace_key
from ekspose.src.kube import KubeClients
from ekspose.src.metrics import METRICS
from ekspose.src.resources import InvalidInputError, build_ingress, build_service
from ekspose.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

QUEUE_NAME = "ekspose"
WORKER_RESTART_SECONDS = 1.0


class CacheMissError(RuntimeError):
    """The API server has the Deployment but the local cache has not caught up yet."""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync cycle for a Deployment.

    ``action`` is ``"created"`` (records converged into existence),
    ``"deleted"`` (records torn down) or ``"skipped"``.  The ``*_changed``
    flags report whether this cycle actually created or deleted the record,
    as opposed to finding it already in the desired state.
    """

    ref: WorkloadRef
    action: str
    service_changed: bool = False
    ingress_changed: bool = False


class ExposeController:
    """Keeps a Service and an Ingress in step with every watched Deployment.

    Informer notifications (add, update and delete alike) are reduced to a
    ``namespace/name`` key and pushed onto a shared :class:`RateLimitingQueue`.
    Worker threads pull keys and run :meth:`sync_deployment`, which never
    trusts the notification type: it asks the API server whether the
    Deployment exists right now and converges towards that answer.

    Both directions are idempotent.  ``409 AlreadyExists`` on create and
    ``404 NotFound`` on delete count as success, so any cycle can be replayed
    and a half-finished create (Service made, Ingress failed) completes on the
    next retry without rollback.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        networking_api: NetworkingV1Api,
        informer: DeploymentInformer,
        queue: RateLimitingQueue | None = None,
        workers: int = 1,
        ingress_class_name: str | None = None,
        cache_sync_timeout_seconds: float | None = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.core_api = core_api
        self.apps_api = apps_api
        self.networking_api = networking_api
        self.informer = informer
        self.queue = queue if queue is not None else RateLimitingQueue(name=QUEUE_NAME)
        self.workers = workers
        self.ingress_class_name = ingress_class_name
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

        informer.add_event_handler(
            on_add=self.handle_add,
            on_update=self.handle_update,
            on_delete=self.handle_delete,
        )

    # -- change feed -------------------------------------------------------

    def _enqueue(self, obj: Any, event: str) -> None:
        try:
            key = meta_namespace_key(obj)
        except InvalidKeyError:
            self.logger.warning("Dropping Deployment %s notification without identity", event, exc_info=True)
            return
        self.logger.debug("Deployment %s notification for %s", event, key)
        self.queue.add(key)

    def handle_add(self, obj: Any) -> None:
        self._enqueue(obj, "add")

    def handle_update(self, old: Any, new: Any) -> None:
        self._enqueue(new, "update")

    def handle_delete(self, obj: Any) -> None:
        self._enqueue(obj, "delete")

    # -- dispatcher --------------------------------------------------------

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Wait for the cache, run the workers until *shutdown_event*, then drain.

        A cache that does not sync within ``cache_sync_timeout_seconds`` is
        logged and the workers start anyway.  On shutdown the queue is closed
        so blocked workers wake up; syncs already running are allowed to
        finish before this method returns.
        """
        stop = shutdown_event or threading.Event()
        self.logger.info("Starting controller with %d worker(s)", self.workers)

        timeout = self.cache_sync_timeout_seconds or None
        if not self.informer.wait_for_cache_sync(stop, timeout=timeout):
            if stop.is_set():
                self.queue.shut_down()
                return
            self.logger.warning(
                "Deployment cache did not sync within %ss; starting workers anyway", timeout
            )

        threads = [
            threading.Thread(
                target=self.run_worker,
                args=(stop,),
                name=f"{QUEUE_NAME}-worker-{index}",
                daemon=True,
            )
            for index in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        self.ready.set()

        stop.wait()
        self.logger.info("Shutting down work queue")
        self.ready.clear()
        self.queue.shut_down()
        for thread in threads:
            thread.join()
        self.logger.info("All workers stopped")

    def run_worker(self, stop: threading.Event) -> None:
        """Process items until the queue shuts down, restarting after a crash."""
        while not stop.is_set():
            try:
                while not stop.is_set():
                    if not self.process_next_item():
                        return
            except Exception:
                self.logger.exception("Worker loop crashed; restarting in %ss", WORKER_RESTART_SECONDS)
                stop.wait(timeout=WORKER_RESTART_SECONDS)

    def process_next_item(self) -> bool:
        """Handle one queue item.  Returns ``False`` once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            self._process_item(key)
        finally:
            self.queue.done(key)
        return True

    def _process_item(self, key: Any) -> None:
        try:
            ref = split_meta_namespace_key(key)
        except InvalidKeyError:
            self.logger.error("Dropping malformed work item %r", key, exc_info=True)
            self.queue.forget(key)
            return

        try:
            self.sync_deployment(ref)
        except InvalidInputError:
            METRICS.sync_total.labels(result="error").inc()
            self.logger.exception("Dropping %s: cannot derive Service or Ingress", ref)
            self.queue.forget(key)
            return
        except Exception:
            METRICS.sync_total.labels(result="error").inc()
            self.logger.exception(
                "Sync of Deployment %s failed; requeueing (attempt %d)",
                ref,
                self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)

    # -- reconciler --------------------------------------------------------

    def sync_deployment(self, ref: WorkloadRef) -> SyncResult:
        """Converge the Service and Ingress for *ref* towards the live Deployment state.

        The existence check goes to the API server, not the cache: a delete
        notification can arrive before the cache evicts the object, and a
        name can be reused between notification and processing.  Raises on
        any error that should be retried.
        """
        try:
            self.apps_api.read_namespaced_deployment(name=ref.name, namespace=ref.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return self._teardown(ref)
            raise

        deployment = self.informer.get(ref.namespace, ref.name)
        if deployment is None:
            raise CacheMissError(f"Deployment {ref} exists but is not in the local cache yet")
        return self._converge(ref, deployment)

    def _converge(self, ref: WorkloadRef, deployment: Any) -> SyncResult:
        service = build_service(deployment)
        if not service.spec.selector:
            # A selector-less Service would adopt no pods at all; wait for
            # an update that brings template labels instead.
            self.logger.warning("Deployment %s has no template labels; not exposing it", ref)
            METRICS.sync_total.labels(result="skipped").inc()
            return SyncResult(ref=ref, action="skipped")

        service_created = self._create_idempotent(
            "Service",
            ref,
            lambda: self.core_api.create_namespaced_service(namespace=ref.namespace, body=service),
        )
        ingress = build_ingress(service, ingress_class_name=self.ingress_class_name)
        ingress_created = self._create_idempotent(
            "Ingress",
            ref,
            lambda: self.networking_api.create_namespaced_ingress(
                namespace=ref.namespace, body=ingress
            ),
        )

        METRICS.sync_total.labels(result="created").inc()
        return SyncResult(
            ref=ref,
            action="created",
            service_changed=service_created,
            ingress_changed=ingress_created,
        )

    def _teardown(self, ref: WorkloadRef) -> SyncResult:
        self.logger.info("Deployment %s no longer exists; removing its Ingress and Service", ref)
        ingress_deleted = self._delete_idempotent(
            "Ingress",
            ref,
            lambda: self.networking_api.delete_namespaced_ingress(
                name=ref.name, namespace=ref.namespace
            ),
        )
        service_deleted = self._delete_idempotent(
            "Service",
            ref,
            lambda: self.core_api.delete_namespaced_service(name=ref.name, namespace=ref.namespace),
        )

        METRICS.sync_total.labels(result="deleted").inc()
        return SyncResult(
            ref=ref,
            action="deleted",
            service_changed=service_deleted,
            ingress_changed=ingress_deleted,
        )

    def _create_idempotent(self, kind: str, ref: WorkloadRef, create: Callable[[], Any]) -> bool:
        try:
            create()
        except ApiException as exc:
            if exc.status == 409:
                self.logger.debug("%s %s already exists", kind, ref)
                return False
            raise
        self.logger.info("Created %s %s", kind, ref)
        return True

    def _delete_idempotent(self, kind: str, ref: WorkloadRef, delete: Callable[[], Any]) -> bool:
        try:
            delete()
        except ApiException as exc:
            if exc.status == 404:
                self.logger.debug("%s %s already absent", kind, ref)
                return False
            raise
        self.logger.info("Deleted %s %s", kind, ref)
        return True


def build_controller(clients: KubeClients, config: ControllerConfig) -> ExposeController:
    """Wire an informer, a rate-limited queue and the controller from *config*."""
    informer = DeploymentInformer(
        apps_api=clients.apps_api,
        namespace=config.namespace,
        resync_seconds=config.resync_seconds,
    )
    queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=config.queue_base_delay_seconds,
            max_delay=config.queue_max_delay_seconds,
            qps=float(config.queue_qps),
            burst=config.queue_burst,
        ),
        name=QUEUE_NAME,
    )
    return ExposeController(
        core_api=clients.core_api,
        apps_api=clients.apps_api,
        networking_api=clients.networking_api,
        informer=informer,
        queue=queue,
        workers=config.workers,
        ingress_class_name=config.ingress_class_name,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )


def build_controller_from_env(
    clients: KubeClients, env: Mapping[str, str] | None = None
) -> ExposeController:
    """Construct an :class:`ExposeController` from environment variables.

    See :func:`ekspose.src.config.load_config` for the variables and their
    defaults (``WATCH_NAMESPACE``, ``WORKERS``, ``RESYNC_SECONDS``, ...).
    """
    return build_controller(clients, load_config(env))
