"""
In-use index: which tags of which repositories cluster workloads reference.

Images are collected from pods and from replica set templates in every
namespace. Replica sets scaled to zero are included on purpose: they are the
rollback targets of deployments, and their images must survive collection.
"""

import os
from dataclasses import dataclass
from typing import AbstractSet, Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from registry_lifecycle.error_utils import create_kubernetes_error
from registry_lifecycle.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 500


@dataclass(frozen=True)
class ImageReference:
    """A parsed ``[host/]path[:tag][@digest]`` image reference"""
    host: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None


def parse_image_reference(reference: str) -> Optional[ImageReference]:
    """Split an image reference into host, repository path, tag and digest.

    The first path component is treated as a registry host when it contains
    a '.' or ':' or is 'localhost' (Docker's reference rules). References
    without a host get an empty host.

    Returns:
        Parsed reference, or None for an empty string
    """
    reference = (reference or "").strip()
    if not reference:
        return None

    digest = None
    if "@" in reference:
        reference, digest = reference.split("@", 1)

    tag = None
    last_slash = reference.rfind("/")
    last_colon = reference.rfind(":")
    if last_colon > last_slash:
        reference, tag = reference[:last_colon], reference[last_colon + 1:]

    host = ""
    parts = reference.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        host, reference = parts

    return ImageReference(host=host, repository=reference, tag=tag or None, digest=digest)


def build_in_use_index(image_references: Iterable[str], registry_host: str,
                       project: Optional[str] = None) -> Dict[str, Set[str]]:
    """Group tagged references to the managed registry by repository.

    Args:
        image_references: Image strings declared by cluster workloads
        registry_host: Host of the managed registry (e.g. 'eu.gcr.io')
        project: If set, only repositories under '<project>/' are kept

    Returns:
        Mapping of repository path (host stripped) to referenced tags
    """
    index: Dict[str, Set[str]] = {}
    project_prefix = f"{project.strip('/')}/" if project else None

    for raw in image_references:
        ref = parse_image_reference(raw)
        if ref is None or ref.host != registry_host:
            continue
        if project_prefix and not ref.repository.startswith(project_prefix):
            continue
        if not ref.tag:
            # digest-only or implicit tags are not protected
            continue
        index.setdefault(ref.repository, set()).add(ref.tag)

    return index


def tags_for(index: Mapping[str, AbstractSet[str]], repository: str) -> AbstractSet[str]:
    """In-use tags for a repository, empty when nothing references it."""
    return index.get(repository) or frozenset()


def _pod_spec_images(spec: Any) -> List[str]:
    if spec is None:
        return []
    containers = list(spec.containers or []) + list(spec.init_containers or [])
    containers += list(getattr(spec, "ephemeral_containers", None) or [])
    return [c.image for c in containers if getattr(c, "image", None)]


class ClusterImageCollector:
    """Lists image references of pods and replica sets across all namespaces"""

    def __init__(self, core_v1_client=None, apps_v1_client=None, page_size: int = DEFAULT_PAGE_SIZE):
        self.logger = get_logger(__name__)
        self.page_size = page_size

        if core_v1_client is None or apps_v1_client is None:
            self._load_kubernetes_config()
        self.core_v1_client = core_v1_client or client.CoreV1Api()
        self.apps_v1_client = apps_v1_client or client.AppsV1Api()

    def _load_kubernetes_config(self) -> None:
        """Load in-cluster config when running in a pod, local kubeconfig otherwise."""
        in_cluster = bool(
            os.environ.get("KUBERNETES_SERVICE_HOST")
            or os.path.exists("/var/run/secrets/kubernetes.io/serviceaccount/token")
        )
        try:
            if in_cluster:
                config.load_incluster_config()
                self.logger.info("Kubernetes client initialized with in-cluster config")
            else:
                config.load_kube_config()
                self.logger.info("Kubernetes client initialized from local kubeconfig")
        except Exception as e:
            try:
                config.load_incluster_config()
                self.logger.info("Kubernetes client fallback to in-cluster config succeeded")
            except Exception as e2:
                self.logger.error(f"Failed to initialize Kubernetes client: {e}; fallback error: {e2}")
                raise create_kubernetes_error("load cluster configuration", e)

    def _list_all(self, list_fn: Callable, operation: str) -> List[Any]:
        """Call a Kubernetes list endpoint, following continue tokens."""
        items = []
        continue_token = None
        try:
            while True:
                kwargs = {"limit": self.page_size}
                if continue_token:
                    kwargs["_continue"] = continue_token
                response = list_fn(**kwargs)
                items.extend(response.items or [])
                continue_token = getattr(response.metadata, "_continue", None)
                if not continue_token:
                    return items
        except ApiException as e:
            self.logger.error(f"Kubernetes API error during {operation}: {e}")
            raise create_kubernetes_error(operation, e)
        except (TransportError, OSError) as e:
            self.logger.error(f"Kubernetes API unreachable during {operation}: {e}")
            raise create_kubernetes_error(operation, e)

    def list_pod_images(self) -> List[str]:
        """Images of every pod: containers, init containers and reported statuses."""
        pods = self._list_all(self.core_v1_client.list_pod_for_all_namespaces, "list pods in all namespaces")
        images = []
        for pod in pods:
            images.extend(_pod_spec_images(pod.spec))
            status = pod.status
            if status is not None:
                for cs in list(status.container_statuses or []) + list(status.init_container_statuses or []):
                    if cs.image:
                        images.append(cs.image)
        self.logger.info(f"Found {len(pods)} pods in the cluster")
        return images

    def list_replica_set_images(self) -> List[str]:
        """Template images of every replica set, including ones scaled to zero."""
        replica_sets = self._list_all(self.apps_v1_client.list_replica_set_for_all_namespaces,
                                      "list replicasets in all namespaces")
        images = []
        dormant = 0
        for rs in replica_sets:
            if rs.spec is None or rs.spec.template is None:
                continue
            if not rs.spec.replicas:
                dormant += 1
            images.extend(_pod_spec_images(rs.spec.template.spec))
        self.logger.info(f"Found {len(replica_sets)} replica sets in the cluster ({dormant} scaled to zero)")
        return images

    def collect_image_references(self) -> List[str]:
        """Every declared image reference, de-duplicated and sorted.

        Raises:
            CollectionError: If the cluster cannot be queried
        """
        references = set(self.list_pod_images())
        references.update(self.list_replica_set_images())
        return sorted(references)
