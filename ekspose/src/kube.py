from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    """API clients for the three resource kinds the controller touches."""

    core_api: CoreV1Api
    apps_api: AppsV1Api
    networking_api: NetworkingV1Api


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    With an explicit *kubeconfig* path that file is tried first, falling back
    to in-cluster config if it cannot be loaded.  Without a path, in-cluster
    config is tried first with the default local kubeconfig as fallback.
    Raises :class:`ConfigException` when neither source works.
    """
    if kubeconfig:
        try:
            config.load_kube_config(config_file=kubeconfig)
            LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
            return
        except (ConfigException, OSError) as exc:
            LOGGER.warning(
                "Failed to load kubeconfig %s (%s); falling back to in-cluster configuration",
                kubeconfig,
                exc,
            )
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return

    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return Core, Apps and Networking API clients using the active kube configuration."""
    return KubeClients(
        core_api=client.CoreV1Api(),
        apps_api=client.AppsV1Api(),
        networking_api=client.NetworkingV1Api(),
    )
