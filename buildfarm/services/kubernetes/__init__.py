"""
Kubernetes Module - BuildKit Build Farm Resources

- KubernetesClient: Applies Secrets, StatefulSets and Services (create or patch)
- Helpers: Pure manifest builders for the certificate Secret, the buildkitd
  StatefulSet and its Service

Per-replica storage:
- With a PvConfig, each buildkitd replica gets its own PVC from a claim template
- Without one, the build cache lives in an emptyDir and is lost with the pod
"""

from .client import KubernetesClient, ProvisioningError, get_k8s_client
from .helpers import (
    PvConfig,
    # Names and labels
    get_resource_names,
    get_selector_labels,
    get_standard_labels,
    # Manifests
    create_cert_secret_manifest,
    create_buildkitd_container,
    create_buildkitd_stateful_set,
    create_buildkitd_service_manifest,
    merge_service_annotations,
    create_owner_reference,
)

__all__ = [
    # Client
    "KubernetesClient",
    "ProvisioningError",
    "get_k8s_client",
    # Names and labels
    "PvConfig",
    "get_resource_names",
    "get_selector_labels",
    "get_standard_labels",
    # Manifest Helpers
    "create_cert_secret_manifest",
    "create_buildkitd_container",
    "create_buildkitd_stateful_set",
    "create_buildkitd_service_manifest",
    "merge_service_annotations",
    "create_owner_reference",
]
