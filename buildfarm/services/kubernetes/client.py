"""
Kubernetes Client for Applying Build Farms

This module submits the desired-state objects built by helpers.py to the
Kubernetes API: create, or patch when the object already exists.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised when the API server rejects a build farm resource."""
    pass


class KubernetesClient:
    """
    Applies build farm resources (Secrets, StatefulSets, Services).

    Every apply method is create-or-update: a 409 Conflict on create turns
    into a patch of the existing object. The object returned by the API
    server is handed back so callers can use server-assigned fields.
    """

    def __init__(self, context: Optional[str] = None):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        from ...config import get_settings

        self.settings = get_settings()
        context = context or self.settings.k8s_context or None

        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config(context=context)
                logger.info(f"Loaded kubeconfig (context: {context or 'current'})")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise ProvisioningError("Cannot load Kubernetes configuration") from e

        self.apps_v1 = client.AppsV1Api()
        self.core_v1 = client.CoreV1Api()

    async def _create_or_patch(
        self,
        kind: str,
        body,
        namespace: str,
        create: Callable,
        patch: Callable
    ):
        name = body.metadata.name
        try:
            result = await asyncio.to_thread(create, namespace=namespace, body=body)
            logger.info(f"[K8S] ✅ Created {kind}: {name}")
            return result
        except ApiException as e:
            if e.status != 409:
                logger.error(f"[K8S] Failed to create {kind} {name}: {e.reason}")
                raise ProvisioningError(f"Failed to create {kind} {name}: {e.reason}") from e

        logger.info(f"[K8S] {kind} {name} exists, updating...")
        try:
            result = await asyncio.to_thread(patch, name=name, namespace=namespace, body=body)
        except ApiException as e:
            logger.error(f"[K8S] Failed to update {kind} {name}: {e.reason}")
            raise ProvisioningError(f"Failed to update {kind} {name}: {e.reason}") from e
        logger.info(f"[K8S] ✅ Updated {kind}: {name}")
        return result

    async def _delete(self, kind: str, delete: Callable, name: str, namespace: str, **kwargs) -> None:
        try:
            await asyncio.to_thread(delete, name=name, namespace=namespace, **kwargs)
            logger.info(f"[K8S] Deleted {kind}: {name}")
        except ApiException as e:
            if e.status != 404:
                raise ProvisioningError(f"Failed to delete {kind} {name}: {e.reason}") from e
            logger.debug(f"[K8S] {kind} {name} already gone")

    # =========================================================================
    # SECRET MANAGEMENT
    # =========================================================================

    async def apply_secret(self, secret: client.V1Secret, namespace: str) -> client.V1Secret:
        """Create or update a Secret."""
        return await self._create_or_patch(
            "Secret",
            secret,
            namespace,
            self.core_v1.create_namespaced_secret,
            self.core_v1.patch_namespaced_secret
        )

    async def delete_secret(self, name: str, namespace: str) -> None:
        """Delete a Secret."""
        await self._delete("Secret", self.core_v1.delete_namespaced_secret, name, namespace)

    # =========================================================================
    # STATEFULSET LIFECYCLE
    # =========================================================================

    async def apply_stateful_set(
        self,
        stateful_set: client.V1StatefulSet,
        namespace: str
    ) -> client.V1StatefulSet:
        """Create or update a StatefulSet."""
        return await self._create_or_patch(
            "StatefulSet",
            stateful_set,
            namespace,
            self.apps_v1.create_namespaced_stateful_set,
            self.apps_v1.patch_namespaced_stateful_set
        )

    async def delete_stateful_set(
        self,
        name: str,
        namespace: str,
        propagation_policy: str = "Foreground"
    ) -> None:
        """
        Delete a StatefulSet.

        With Foreground propagation, objects owned by the StatefulSet (pods,
        and the Secret / Service of a build farm) are removed first.
        """
        await self._delete(
            "StatefulSet",
            self.apps_v1.delete_namespaced_stateful_set,
            name,
            namespace,
            propagation_policy=propagation_policy
        )

    async def wait_for_stateful_set_ready(
        self,
        name: str,
        namespace: str,
        timeout: int = 120
    ) -> client.V1StatefulSet:
        """
        Wait until every replica of a StatefulSet runs the current revision and is ready.

        The controller must have observed the latest generation, otherwise
        pods from a previous rollout would count as ready.
        """
        for _ in range(timeout):
            try:
                stateful_set = await asyncio.to_thread(
                    self.apps_v1.read_namespaced_stateful_set,
                    name=name,
                    namespace=namespace
                )

                desired = stateful_set.spec.replicas or 0
                status = stateful_set.status
                generation = stateful_set.metadata.generation if stateful_set.metadata else None

                observed = status.observed_generation if status else None
                ready = (status.ready_replicas or 0) if status else 0
                updated = (status.updated_replicas or 0) if status else 0

                rolled_out = generation is None or (observed is not None and observed >= generation)

                if rolled_out and updated == desired and ready == desired:
                    logger.info(f"[K8S] StatefulSet {name} is ready ({ready}/{desired})")
                    return stateful_set

            except ApiException as e:
                if e.status != 404:
                    logger.warning(f"[K8S] Error checking StatefulSet status: {e}")

            await asyncio.sleep(1)

        raise ProvisioningError(f"StatefulSet {name} did not become ready within {timeout} seconds")

    # =========================================================================
    # SERVICE MANAGEMENT
    # =========================================================================

    async def apply_service(self, service: client.V1Service, namespace: str) -> client.V1Service:
        """Create or update a Service."""
        return await self._create_or_patch(
            "Service",
            service,
            namespace,
            self.core_v1.create_namespaced_service,
            self.core_v1.patch_namespaced_service
        )

    async def delete_service(self, name: str, namespace: str) -> None:
        """Delete a Service."""
        await self._delete("Service", self.core_v1.delete_namespaced_service, name, namespace)


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
