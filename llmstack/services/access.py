from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from llmstack.models import ServiceEndpoint
from llmstack.proc import AdapterCommandError, CommandRunner, run_command
from llmstack.services.kube_adapter import KubeAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndpointAccess:
    service: str
    namespace: str
    label: str
    url: str | None
    port_forward: str


def resolve_node_host(kube: KubeAdapter, *, runner: CommandRunner | None = None) -> str:
    """Node address for NodePort URLs: the minikube IP on a minikube context, else localhost."""
    try:
        context = kube.current_context()
    except AdapterCommandError as exc:
        logger.warning("Could not read current kubectl context: %s", exc)
        return "localhost"
    if "minikube" not in context:
        return "localhost"
    try:
        result = run_command(["minikube", "ip"], runner=runner, error_message="Failed to read minikube IP")
    except AdapterCommandError as exc:
        logger.warning("Detected minikube context but could not read its IP: %s", exc)
        return "localhost"
    return result.stdout.strip() or "localhost"


def resolve_endpoints(
    kube: KubeAdapter,
    endpoints: Iterable[ServiceEndpoint],
    *,
    host: str,
) -> list[EndpointAccess]:
    resolved: list[EndpointAccess] = []
    for endpoint in endpoints:
        port_forward = f"kubectl port-forward svc/{endpoint.service} -n {endpoint.namespace} <local-port>:<service-port>"
        url = None
        try:
            node_port = kube.service_node_port(endpoint.service, namespace=endpoint.namespace)
        except AdapterCommandError as exc:
            logger.warning("Service %s not found yet; it may still be starting up: %s", endpoint.service, exc)
            node_port = None
        if node_port is not None:
            url = f"http://{host}:{node_port}"
        else:
            logger.warning("Could not determine access details for %s", endpoint.service)
        resolved.append(
            EndpointAccess(
                service=endpoint.service,
                namespace=endpoint.namespace,
                label=endpoint.label or endpoint.service,
                url=url,
                port_forward=port_forward,
            )
        )
    return resolved
