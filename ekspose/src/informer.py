from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api

from ekspose.src.keys import InvalidKeyError, meta_namespace_key
from ekspose.src.metrics import METRICS

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


@dataclass(frozen=True)
class EventHandler:
    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class DeploymentInformer:
    """List-then-watch cache of Deployments with add/update/delete callbacks.

    The local store is an eventually-consistent replica keyed by
    ``namespace/name``.  It lags the API server and must not be used to
    decide whether a Deployment still exists.

    Lifecycle of :meth:`run`:

    1. List Deployments (one namespace or all) and replace the store,
       emitting ``on_add`` for new keys, ``on_update`` for known keys and
       ``on_delete`` for keys that vanished.  The first successful list marks
       the cache as synced.
    2. Watch from the list's ``resourceVersion`` and apply each event.
    3. On ``410 Gone`` or every ``resync_seconds``, go back to step 1.
    4. ``401``/``403`` stop the loop; other errors back off with jitter,
       doubling up to 30 s.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str | None = None,
        resync_seconds: int = 600,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None:
        self._handlers.append(EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete))

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_cache_sync(
        self, stop_event: threading.Event, timeout: float | None = None
    ) -> bool:
        """Block until the first list has been stored.

        Returns ``False`` if *stop_event* fires or *timeout* elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._synced.is_set():
            if stop_event.is_set():
                return False
            wait_for = 0.1
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait_for = min(wait_for, remaining)
            self._synced.wait(timeout=wait_for)
        return True

    def get(self, namespace: str, name: str) -> Any | None:
        with self._store_lock:
            return self._store.get(f"{namespace}/{name}")

    def list_keys(self) -> list[str]:
        with self._store_lock:
            return sorted(self._store)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_func(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.namespace:
            return self.apps_api.list_namespaced_deployment, {"namespace": self.namespace}
        return self.apps_api.list_deployment_for_all_namespaces, {}

    def _key_for(self, obj: Any) -> str | None:
        try:
            return meta_namespace_key(obj)
        except InvalidKeyError:
            self.logger.warning("Ignoring Deployment with incomplete identity", exc_info=True)
            return None

    def _dispatch(self, kind: str, *objs: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, f"on_{kind}")
            if callback is None:
                continue
            try:
                callback(*objs)
            except Exception:
                self.logger.exception("Deployment %s handler failed", kind)

    def _replace(self, items: list[Any]) -> None:
        """Replace the store with a fresh listing and emit the resulting diff."""
        fresh: dict[str, Any] = {}
        for obj in items:
            key = self._key_for(obj)
            if key is not None:
                fresh[key] = obj

        with self._store_lock:
            previous = self._store
            self._store = fresh

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("add", obj)
            else:
                self._dispatch("update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("delete", old)

    def _relist(self) -> str | None:
        list_func, kwargs = self._list_func()
        listing = list_func(**kwargs)
        self._replace(list(getattr(listing, "items", None) or []))
        self._synced.set()
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _apply_event(self, event_type: str, obj: Any) -> None:
        key = self._key_for(obj)
        if key is None:
            return

        if event_type == "DELETED":
            with self._store_lock:
                old = self._store.pop(key, None)
            self._dispatch("delete", old if old is not None else obj)
            return

        with self._store_lock:
            old = self._store.get(key)
            self._store[key] = obj
        if old is None:
            self._dispatch("add", obj)
        else:
            self._dispatch("update", old, obj)

    def _watch_timeout_seconds(self, next_resync: float | None, now_monotonic: float) -> int:
        if next_resync is None:
            return WATCH_TIMEOUT_SECONDS
        remaining = int(next_resync - now_monotonic)
        return min(WATCH_TIMEOUT_SECONDS, max(1, remaining))

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        needs_list = True
        next_resync: float | None = None
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            now = time.monotonic()
            if needs_list or (next_resync is not None and now >= next_resync):
                try:
                    resource_version = self._relist()
                    needs_list = False
                    if self.resync_seconds > 0:
                        next_resync = time.monotonic() + self.resync_seconds
                    self.logger.info("Listed Deployments; watching from resourceVersion %s", resource_version)
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied while listing Deployments (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                        return
                    self.logger.exception("Deployment list failed")
                    METRICS.watch_errors_total.inc()
                    needs_list = True
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error while listing Deployments")
                    METRICS.watch_errors_total.inc()
                    needs_list = True
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_func, kwargs = self._list_func()
                stream = watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._watch_timeout_seconds(next_resync, time.monotonic()),
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        self.logger.warning("Watch returned an error event; re-listing")
                        needs_list = True
                        break
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version
                    if event_type == "BOOKMARK":
                        continue

                    self._apply_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; only a
                # fresh list gives us a consistent starting point again.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    needs_list = True
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
