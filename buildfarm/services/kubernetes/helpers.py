"""
Kubernetes Manifest Helpers for BuildKit Build Farms

Pure functions that build the desired-state objects of one build farm:
- Certificate Secret: ca.pem / cert.pem / key.pem for buildkitd mutual TLS
- buildkitd StatefulSet: stable replica identity, optional per-replica PVC
- buildkitd Service: single TCP port (1234), LoadBalancer by default

Nothing here talks to the API server; see client.py for that.
"""

from kubernetes import client
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

MANAGED_BY = "docker-buildfarm"

BUILDKITD_PORT = 1234
BUILDKITD_SOCKET = "unix:///run/user/1000/buildkit/buildkitd.sock"
BUILDKITD_USER_ID = 1000

CERTS_VOLUME = "certs"
CERTS_MOUNT_PATH = "/certs"
CACHE_VOLUME = "buildkitd"
CACHE_MOUNT_PATH = "/home/user/.local/share/buildkit"

HOSTNAME_ANNOTATION = "external-dns.alpha.kubernetes.io/hostname"

WORKER_STATUS_COMMAND = ["buildctl", "debug", "workers"]


@dataclass
class PvConfig:
    """Per-replica persistent cache volume."""

    storage_class: str
    size: str


# =============================================================================
# Names and Labels
# =============================================================================

def get_resource_names(name: str) -> Dict[str, str]:
    """
    Get the deterministic resource names for a build farm.

    Args:
        name: Logical builder name

    Returns:
        Dict with secret, stateful_set, service and app label value
    """
    return {
        "secret": f"{name}-buildkit-certs",
        "stateful_set": f"{name}-buildkitd",
        "service": f"{name}-buildkitd",
        "app": f"{name}-buildkitd",
    }


def get_selector_labels(name: str) -> Dict[str, str]:
    return {"app": get_resource_names(name)["app"]}


def get_standard_labels(name: str) -> Dict[str, str]:
    """
    Get standard labels for build farm resources.

    Every child of a builder carries the same instance label, which is how
    they are grouped under one component.
    """
    return {
        **get_selector_labels(name),
        "app.kubernetes.io/name": "buildkitd",
        "app.kubernetes.io/instance": name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


# =============================================================================
# Certificate Secret
# =============================================================================

def create_cert_secret_manifest(
    name: str,
    namespace: str,
    ca_cert_pem: str,
    cert_pem: str,
    private_key_pem: str
) -> client.V1Secret:
    """
    Create the Secret holding buildkitd's TLS material.

    Args:
        name: Logical builder name
        namespace: Kubernetes namespace
        ca_cert_pem: CA certificate clients are verified against
        cert_pem: Server certificate presented by buildkitd
        private_key_pem: Server private key

    Returns:
        V1Secret manifest
    """
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=get_resource_names(name)["secret"],
            namespace=namespace,
            labels=get_standard_labels(name)
        ),
        type="Opaque",
        string_data={
            "ca.pem": ca_cert_pem,
            "cert.pem": cert_pem,
            "key.pem": private_key_pem,
        }
    )


# =============================================================================
# buildkitd StatefulSet
# =============================================================================

def create_worker_status_probe() -> client.V1Probe:
    """Probe that succeeds while buildkitd answers `buildctl debug workers`."""
    return client.V1Probe(
        _exec=client.V1ExecAction(command=list(WORKER_STATUS_COMMAND)),
        initial_delay_seconds=5,
        period_seconds=30
    )


def create_buildkitd_container(
    image: str,
    resources: Optional[client.V1ResourceRequirements] = None
) -> client.V1Container:
    """
    Create the buildkitd container spec.

    buildkitd listens on a local socket and on TCP 1234 at the same time,
    and only accepts TLS clients signed by the CA from the mounted secret.

    Args:
        image: buildkitd image (rootless variant)
        resources: Optional requests/limits

    Returns:
        V1Container
    """
    return client.V1Container(
        name="buildkitd",
        image=image,
        resources=resources,
        args=[
            "--addr", BUILDKITD_SOCKET,
            "--addr", f"tcp://0.0.0.0:{BUILDKITD_PORT}",
            "--tlscacert", f"{CERTS_MOUNT_PATH}/ca.pem",
            "--tlscert", f"{CERTS_MOUNT_PATH}/cert.pem",
            "--tlskey", f"{CERTS_MOUNT_PATH}/key.pem",
            # Rootless buildkitd cannot create a new PID namespace inside a pod
            "--oci-worker-no-process-sandbox",
        ],
        readiness_probe=create_worker_status_probe(),
        liveness_probe=create_worker_status_probe(),
        # buildkitd does its own sandboxing, which an outer seccomp/AppArmor profile blocks
        security_context=client.V1SecurityContext(
            seccomp_profile=client.V1SeccompProfile(type="Unconfined"),
            app_armor_profile=client.V1AppArmorProfile(type="Unconfined"),
            run_as_user=BUILDKITD_USER_ID,
            run_as_group=BUILDKITD_USER_ID
        ),
        ports=[
            client.V1ContainerPort(container_port=BUILDKITD_PORT)
        ],
        volume_mounts=[
            client.V1VolumeMount(
                name=CERTS_VOLUME,
                read_only=True,
                mount_path=CERTS_MOUNT_PATH
            ),
            client.V1VolumeMount(
                name=CACHE_VOLUME,
                mount_path=CACHE_MOUNT_PATH
            )
        ]
    )


def create_cache_claim_template(pv_config: PvConfig) -> client.V1PersistentVolumeClaim:
    """Claim template giving each replica its own cache volume."""
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=CACHE_VOLUME),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=pv_config.storage_class,
            resources=client.V1VolumeResourceRequirements(
                requests={"storage": pv_config.size}
            )
        )
    )


def create_buildkitd_stateful_set(
    name: str,
    namespace: str,
    image: str,
    cert_secret_name: str,
    replicas: int = 1,
    pv_config: Optional[PvConfig] = None,
    node_selector: Optional[Dict[str, str]] = None,
    tolerations: Optional[List[client.V1Toleration]] = None,
    resources: Optional[client.V1ResourceRequirements] = None
) -> client.V1StatefulSet:
    """
    Create the buildkitd StatefulSet manifest.

    Storage is either/or: with pv_config every replica gets a PVC from the
    "buildkitd" claim template; without it the cache is an emptyDir.

    Args:
        name: Logical builder name
        namespace: Kubernetes namespace
        image: buildkitd image
        cert_secret_name: Secret mounted read-only at /certs
        replicas: Number of buildkitd replicas
        pv_config: Optional persistent cache configuration
        node_selector: Optional node selector
        tolerations: Optional tolerations
        resources: Optional container requests/limits

    Returns:
        V1StatefulSet manifest
    """
    names = get_resource_names(name)
    labels = get_standard_labels(name)

    volumes = [
        client.V1Volume(
            name=CERTS_VOLUME,
            secret=client.V1SecretVolumeSource(secret_name=cert_secret_name)
        )
    ]
    volume_claim_templates = None

    if pv_config:
        volume_claim_templates = [create_cache_claim_template(pv_config)]
    else:
        volumes.append(
            client.V1Volume(
                name=CACHE_VOLUME,
                empty_dir=client.V1EmptyDirVolumeSource()
            )
        )

    pod_spec = client.V1PodSpec(
        node_selector=node_selector,
        tolerations=tolerations,
        containers=[create_buildkitd_container(image, resources)],
        volumes=volumes
    )

    return client.V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=client.V1ObjectMeta(
            name=names["stateful_set"],
            namespace=namespace,
            labels=labels
        ),
        spec=client.V1StatefulSetSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(
                match_labels=get_selector_labels(name)
            ),
            service_name=names["service"],
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=pod_spec
            ),
            volume_claim_templates=volume_claim_templates
        )
    )


# =============================================================================
# Service
# =============================================================================

def merge_service_annotations(
    hostname: Optional[str] = None,
    service_annotations: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """
    Build Service annotations.

    The external-dns hostname annotation is added first, then caller
    annotations are applied on top (caller wins on key collision).
    """
    annotations: Dict[str, str] = {}
    if hostname:
        annotations[HOSTNAME_ANNOTATION] = hostname
    annotations.update(service_annotations or {})
    return annotations


def create_buildkitd_service_manifest(
    name: str,
    namespace: str,
    service_type: str = "LoadBalancer",
    hostname: Optional[str] = None,
    service_annotations: Optional[Dict[str, str]] = None
) -> client.V1Service:
    """
    Create the Service exposing buildkitd on TCP 1234.

    Args:
        name: Logical builder name
        namespace: Kubernetes namespace
        service_type: LoadBalancer (default), NodePort or ClusterIP
        hostname: Optional external DNS hostname
        service_annotations: Extra annotations

    Returns:
        V1Service manifest
    """
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=get_resource_names(name)["service"],
            namespace=namespace,
            labels=get_standard_labels(name),
            annotations=merge_service_annotations(hostname, service_annotations)
        ),
        spec=client.V1ServiceSpec(
            ports=[
                client.V1ServicePort(
                    port=BUILDKITD_PORT,
                    protocol="TCP"
                )
            ],
            type=service_type,
            selector=get_selector_labels(name)
        )
    )


# =============================================================================
# Ownership
# =============================================================================

def create_owner_reference(stateful_set: client.V1StatefulSet) -> client.V1OwnerReference:
    """
    Create an owner reference to a live StatefulSet.

    The StatefulSet must come back from the API server so that its
    server-assigned uid is populated. Objects carrying this reference are
    garbage-collected when the StatefulSet is deleted.
    """
    if not stateful_set.metadata.uid:
        raise ValueError(f"StatefulSet {stateful_set.metadata.name} has no uid yet")

    return client.V1OwnerReference(
        api_version="apps/v1",
        kind="StatefulSet",
        name=stateful_set.metadata.name,
        uid=stateful_set.metadata.uid,
        block_owner_deletion=True
    )
