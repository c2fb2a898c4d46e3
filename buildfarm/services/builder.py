"""
BuildKit Builder

Assembles a build farm from certificate material:
- Secret with ca.pem / cert.pem / key.pem
- buildkitd StatefulSet (replicas mount the secret, each has its own cache)
- Service exposing TCP 1234

create_buildkit_builder() only builds the desired state. apply() submits it
to a cluster; destroy() removes it again.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml
from kubernetes import client

from ..config import get_settings
from .kubernetes.helpers import (
    PvConfig,
    create_buildkitd_service_manifest,
    create_buildkitd_stateful_set,
    create_cert_secret_manifest,
    create_owner_reference,
    get_resource_names,
)

logger = logging.getLogger(__name__)


@dataclass
class BuildkitBuilderArgs:
    ca_cert_pem: str
    cert_pem: str
    private_key_pem: str
    replicas: int = 1
    namespace: Optional[str] = None
    pv_config: Union[PvConfig, Dict[str, str], None] = None
    node_selector: Optional[Dict[str, str]] = None
    tolerations: Optional[List[client.V1Toleration]] = None
    resources: Optional[client.V1ResourceRequirements] = None
    hostname: Optional[str] = None
    service_type: Optional[str] = None
    service_annotations: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        for attr in ("ca_cert_pem", "cert_pem", "private_key_pem"):
            if not getattr(self, attr):
                raise ValueError(f"{attr} is required")
        if self.replicas < 0:
            raise ValueError(f"replicas must be >= 0, got {self.replicas}")
        if isinstance(self.pv_config, dict):
            self.pv_config = PvConfig(
                storage_class=self.pv_config["storage_class"],
                size=self.pv_config["size"],
            )


@dataclass
class DeployedBuildkitBuilder:
    """Objects as returned by the API server after apply."""

    secret: client.V1Secret
    stateful_set: client.V1StatefulSet
    service: client.V1Service


@dataclass
class BuildkitBuilder:
    """Desired state of one build farm."""

    name: str
    namespace: str
    secret: client.V1Secret
    stateful_set: client.V1StatefulSet
    service: client.V1Service

    def to_manifests(self) -> List[Dict[str, Any]]:
        """Return the Secret, StatefulSet and Service as plain dicts."""
        api_client = client.ApiClient()
        return [
            api_client.sanitize_for_serialization(obj)
            for obj in (self.secret, self.stateful_set, self.service)
        ]

    def render_yaml(self) -> str:
        return yaml.safe_dump_all(self.to_manifests(), default_flow_style=False, sort_keys=False)

    async def apply(self, k8s=None) -> DeployedBuildkitBuilder:
        """
        Submit the build farm to the cluster.

        Order: Secret, StatefulSet, then the Secret again and the Service,
        both owned by the StatefulSet so deleting it cascades to them.

        Args:
            k8s: KubernetesClient (default: global client)

        Returns:
            DeployedBuildkitBuilder with the live objects
        """
        if k8s is None:
            from .kubernetes.client import get_k8s_client
            k8s = get_k8s_client()

        logger.info(f"[K8S] Applying build farm {self.name} in namespace {self.namespace}")

        await k8s.apply_secret(self.secret, self.namespace)
        stateful_set = await k8s.apply_stateful_set(self.stateful_set, self.namespace)
        owner = create_owner_reference(stateful_set)

        secret = copy.deepcopy(self.secret)
        secret.metadata.owner_references = [owner]
        secret = await k8s.apply_secret(secret, self.namespace)

        service = copy.deepcopy(self.service)
        service.metadata.owner_references = [owner]
        service = await k8s.apply_service(service, self.namespace)

        return DeployedBuildkitBuilder(secret=secret, stateful_set=stateful_set, service=service)

    async def destroy(self, k8s=None) -> None:
        await destroy_buildkit_builder(self.name, self.namespace, k8s)


async def destroy_buildkit_builder(name: str, namespace: Optional[str] = None, k8s=None) -> None:
    """
    Delete a build farm by name.

    The Secret and Service follow the StatefulSet via owner references;
    they are also deleted directly in case they were created without them.
    Per-replica PVCs are kept.
    """
    if k8s is None:
        from .kubernetes.client import get_k8s_client
        k8s = get_k8s_client()

    namespace = namespace or get_settings().default_namespace
    names = get_resource_names(name)

    logger.info(f"[K8S] Destroying build farm {name} in namespace {namespace}")
    await k8s.delete_stateful_set(names["stateful_set"], namespace)
    await k8s.delete_service(names["service"], namespace)
    await k8s.delete_secret(names["secret"], namespace)


def create_buildkit_builder(name: str, args: BuildkitBuilderArgs) -> BuildkitBuilder:
    """
    Build the desired state of a mutual-TLS buildkitd cluster.

    Args:
        name: Logical builder name; resource names derive from it
        args: Certificate material and deployment options

    Returns:
        BuildkitBuilder holding the Secret, StatefulSet and Service
    """
    settings = get_settings()
    namespace = args.namespace or settings.default_namespace

    secret = create_cert_secret_manifest(
        name=name,
        namespace=namespace,
        ca_cert_pem=args.ca_cert_pem,
        cert_pem=args.cert_pem,
        private_key_pem=args.private_key_pem
    )

    stateful_set = create_buildkitd_stateful_set(
        name=name,
        namespace=namespace,
        image=settings.buildkit_image,
        cert_secret_name=secret.metadata.name,
        replicas=args.replicas,
        pv_config=args.pv_config,
        node_selector=args.node_selector,
        tolerations=args.tolerations,
        resources=args.resources
    )

    service = create_buildkitd_service_manifest(
        name=name,
        namespace=namespace,
        service_type=args.service_type or settings.default_service_type,
        hostname=args.hostname,
        service_annotations=args.service_annotations
    )

    storage = f"pvc {args.pv_config.size} ({args.pv_config.storage_class})" if args.pv_config else "emptyDir"
    logger.debug(
        f"Built {get_resource_names(name)['stateful_set']}: replicas={args.replicas}, "
        f"storage={storage}, service={service.spec.type}"
    )

    return BuildkitBuilder(
        name=name,
        namespace=namespace,
        secret=secret,
        stateful_set=stateful_set,
        service=service
    )
