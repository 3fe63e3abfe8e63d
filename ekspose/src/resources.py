from __future__ import annotations

from typing import Any

from kubernetes import client

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "ekspose"
REWRITE_TARGET_ANNOTATION = "nginx.ingress.kubernetes.io/rewrite-target"
SERVICE_PORT_NAME = "http"
SERVICE_PORT = 80


class InvalidInputError(ValueError):
    """Raised when a source object lacks the identity needed to derive records."""


def _identity(obj: Any, kind: str) -> tuple[str, str]:
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        raise InvalidInputError(f"{kind} must have a namespace and name")
    return namespace, name


def template_labels(deployment: Any) -> dict[str, str]:
    """Return the pod template labels of a Deployment, or an empty dict."""
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return {k: str(v) for k, v in labels.items() if isinstance(k, str)}


def build_service(deployment: Any) -> client.V1Service:
    """Build the Service that exposes *deployment* on port 80.

    The Service shares the Deployment's namespace and name and selects pods by
    the Deployment's template labels. An empty selector is returned as-is;
    callers decide whether to create it.
    """
    namespace, name = _identity(deployment, "Deployment")
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        ),
        spec=client.V1ServiceSpec(
            selector=template_labels(deployment),
            ports=[client.V1ServicePort(name=SERVICE_PORT_NAME, port=SERVICE_PORT)],
        ),
    )


def build_ingress(service: Any, ingress_class_name: str | None = None) -> client.V1Ingress:
    """Build the Ingress routing ``/<name>`` to *service* on port 80.

    The rewrite-target annotation strips the path prefix before the request
    reaches the backend.
    """
    namespace, name = _identity(service, "Service")
    path = client.V1HTTPIngressPath(
        path=f"/{name}",
        path_type="Prefix",
        backend=client.V1IngressBackend(
            service=client.V1IngressServiceBackend(
                name=name,
                port=client.V1ServiceBackendPort(number=SERVICE_PORT),
            )
        ),
    )
    return client.V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            annotations={REWRITE_TARGET_ANNOTATION: "/"},
        ),
        spec=client.V1IngressSpec(
            ingress_class_name=ingress_class_name,
            rules=[client.V1IngressRule(http=client.V1HTTPIngressRuleValue(paths=[path]))],
        ),
    )
