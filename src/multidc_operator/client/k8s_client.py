"""KubernetesClient: multi-context object access via the kubernetes Python client.

Keeps one ``ApiClient`` per kubeconfig context so that objects living on
different clusters are addressed side by side without touching the global
default configuration.  The control-plane context can optionally use the
in-cluster service account.

Requires: ``pip install multidc-operator[k8s]``
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from multidc_operator.client.base import (
    NotFoundError,
    RemoteApiError,
    TransientError,
)
from multidc_operator.constants import API_GROUP, API_VERSION, CLUSTER_PLURAL
from multidc_operator.models import ObjectKey, ResourceKind

TRANSIENT_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubernetesClient. "
            "Install it with: pip install multidc-operator[k8s]"
        ) from None


@dataclass
class KindMapping:
    """Maps a resource kind to kubernetes client API calls.

    Typed kinds name the ``<verb>_namespaced_<suffix>`` methods of
    *api_class*; custom kinds go through ``CustomObjectsApi`` with
    *group*/*version*/*plural*.
    """

    api_class: str
    suffix: str = ""
    group: str = ""
    version: str = ""
    plural: str = ""

    @property
    def custom(self) -> bool:
        return bool(self.plural)


KIND_MAP: dict[ResourceKind, KindMapping] = {
    ResourceKind.CLUSTER: KindMapping(
        api_class="CustomObjectsApi",
        group=API_GROUP,
        version=API_VERSION,
        plural=CLUSTER_PLURAL,
    ),
    ResourceKind.DATACENTER: KindMapping(
        api_class="CustomObjectsApi",
        group="cassandra.datastax.com",
        version="v1beta1",
        plural="cassandradatacenters",
    ),
    ResourceKind.REBUILD_TASK: KindMapping(
        api_class="CustomObjectsApi",
        group="control.k8ssandra.io",
        version="v1alpha1",
        plural="cassandratasks",
    ),
    ResourceKind.DEPLOYMENT: KindMapping(api_class="AppsV1Api", suffix="deployment"),
    ResourceKind.SERVICE: KindMapping(api_class="CoreV1Api", suffix="service"),
    ResourceKind.SECRET: KindMapping(api_class="CoreV1Api", suffix="secret"),
    ResourceKind.CONFIG_MAP: KindMapping(api_class="CoreV1Api", suffix="config_map"),
}


class KubernetesClient:
    """RemoteClient backed by the kubernetes Python client.

    Requires: ``pip install multidc-operator[k8s]``

    Context handling:
    - Each context name is resolved from *kubeconfig* (or the default
      kubeconfig) and gets its own ``ApiClient``
    - If *in_cluster* is set, *control_plane_context* uses the in-cluster
      service account instead of the kubeconfig
    """

    def __init__(
        self,
        kubeconfig: str | None = None,
        control_plane_context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        _check_kubernetes_available()
        self._kubeconfig = kubeconfig
        self._control_plane_context = control_plane_context
        self._in_cluster = in_cluster
        self._lock = threading.Lock()
        self._api_clients: dict[str, Any] = {}

    def get(self, key: ObjectKey, kind: ResourceKind) -> dict[str, Any]:
        mapping = KIND_MAP[kind]
        return self._call(key, kind, "read", mapping)

    def create(self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        mapping = KIND_MAP[kind]
        return self._call(key, kind, "create", mapping, body=body)

    def patch(self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        mapping = KIND_MAP[kind]
        return self._call(key, kind, "patch", mapping, body=body)

    def patch_status(
        self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any],
    ) -> dict[str, Any]:
        mapping = KIND_MAP[kind]
        return self._call(key, kind, "patch_status", mapping, body=body)

    def delete(self, key: ObjectKey, kind: ResourceKind) -> None:
        mapping = KIND_MAP[kind]
        self._call(key, kind, "delete", mapping)

    # --- Private: client setup ---

    def _get_api_client(self, context: str) -> Any:
        """Return the cached ApiClient for *context*, building it on first use."""
        from kubernetes import client, config

        with self._lock:
            api_client = self._api_clients.get(context)
            if api_client is not None:
                return api_client

            if self._in_cluster and context == self._control_plane_context:
                configuration = client.Configuration()
                config.load_incluster_config(client_configuration=configuration)
                api_client = client.ApiClient(configuration)
            else:
                kwargs: dict[str, Any] = {"context": context}
                if self._kubeconfig:
                    kwargs["config_file"] = self._kubeconfig
                api_client = config.new_client_from_config(**kwargs)

            self._api_clients[context] = api_client
            return api_client

    def _get_api_instance(self, api_class_name: str, api_client: Any) -> Any:
        """Instantiate the appropriate API class."""
        from kubernetes import client

        api_cls = getattr(client, api_class_name)
        return api_cls(api_client)

    # --- Private: dispatch ---

    def _call(
        self,
        key: ObjectKey,
        kind: ResourceKind,
        verb: str,
        mapping: KindMapping,
        body: dict[str, Any] | None = None,
    ) -> Any:
        try:
            api_client = self._get_api_client(key.context)
            api = self._get_api_instance(mapping.api_class, api_client)
            method, kwargs = self._build_call(api, verb, mapping, key, body)
            result = method(**kwargs)
        except Exception as exc:
            raise self._translate(exc, key, kind) from exc

        if verb == "delete":
            return None
        return self._to_dict(result, api_client)

    def _build_call(
        self,
        api: Any,
        verb: str,
        mapping: KindMapping,
        key: ObjectKey,
        body: dict[str, Any] | None,
    ) -> tuple[Any, dict[str, Any]]:
        """Resolve the bound API method and its keyword arguments."""
        kwargs: dict[str, Any] = {"namespace": key.namespace}
        if verb != "create":
            kwargs["name"] = key.name
        if body is not None:
            kwargs["body"] = body

        if mapping.custom:
            kwargs.update(group=mapping.group, version=mapping.version, plural=mapping.plural)
            method_name = {
                "read": "get_namespaced_custom_object",
                "create": "create_namespaced_custom_object",
                "patch": "patch_namespaced_custom_object",
                "patch_status": "patch_namespaced_custom_object_status",
                "delete": "delete_namespaced_custom_object",
            }[verb]
        elif verb == "patch_status":
            method_name = f"patch_namespaced_{mapping.suffix}_status"
        else:
            method_name = f"{verb}_namespaced_{mapping.suffix}"

        return getattr(api, method_name), kwargs

    # --- Private: helpers ---

    def _translate(self, exc: Exception, key: ObjectKey, kind: ResourceKind) -> Exception:
        """Map client exceptions onto the RemoteError taxonomy."""
        # Detect kubernetes ApiException by class name to avoid import
        if type(exc).__name__ == "ApiException":
            status = getattr(exc, "status", None)
            reason = getattr(exc, "reason", "")
            message = f"K8s API error ({status}): {reason}"
            if status == 404:
                return NotFoundError(key, kind, message)
            if status in TRANSIENT_STATUSES:
                return TransientError(key, kind, message)
            return RemoteApiError(key, kind, message, status=status)
        # Config errors, connection refused, timeouts: the endpoint is not usable right now
        return TransientError(key, kind, f"K8s client error: {exc}")

    def _to_dict(self, k8s_object: Any, api_client: Any) -> dict[str, Any]:
        """Convert a kubernetes client object to a plain wire-format dict."""
        if isinstance(k8s_object, dict):
            return k8s_object
        if k8s_object is None:
            return {}
        return api_client.sanitize_for_serialization(k8s_object)
