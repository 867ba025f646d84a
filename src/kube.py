# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Functions to interact with the Kubernetes cluster."""

import contextlib
import logging
import typing
from pathlib import Path

import kubernetes
import urllib3
from kubernetes.client.exceptions import ApiException

import state

SERVICE_ACCOUNT_NAMESPACE_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")
DEFAULT_NAMESPACE = "default"

logger = logging.getLogger(__name__)


class ClusterBaseError(Exception):
    """Represents errors with interacting with the Kubernetes cluster."""


class ClusterConnectionError(ClusterBaseError):
    """Represents an unreachable cluster: timeout, refused connection or unknown host."""


class ClusterApiError(ClusterBaseError):
    """Represents an error returned by the cluster API."""

    def __init__(self, msg: str, status: typing.Optional[int] = None):
        """Initialize a new instance of the ClusterApiError exception.

        Args:
            msg: Explanation of the error.
            status: The HTTP status returned by the API server.
        """
        super().__init__(msg)
        self.status = status


@contextlib.contextmanager
def _translate_errors(action: str) -> typing.Iterator[None]:
    """Re-raise Kubernetes client errors as cluster errors.

    Args:
        action: Description of the call, for error messages.

    Raises:
        ClusterApiError: if the API server returned an error.
        ClusterConnectionError: if the API server could not be reached.

    Yields:
        Nothing.
    """
    try:
        yield
    except ApiException as exc:
        raise ClusterApiError(f"Failed to {action}: {exc.reason}", status=exc.status) from exc
    except (urllib3.exceptions.HTTPError, OSError) as exc:
        raise ClusterConnectionError(f"Failed to {action}: {exc}") from exc


def _get_cluster_default_namespace() -> str:
    """Get the namespace of the running service account.

    Returns:
        The service account namespace if running inside the cluster, "default" otherwise.
    """
    try:
        namespace = SERVICE_ACCOUNT_NAMESPACE_PATH.read_text(encoding="utf-8").strip()
    except OSError:
        return DEFAULT_NAMESPACE
    return namespace or DEFAULT_NAMESPACE


class ClusterClient:
    """Pod operations on a Kubernetes cluster.

    The client is shared by all provisioning workers of a cloud; the underlying connection pool
    is thread safe.
    """

    def __init__(
        self,
        core_api: kubernetes.client.CoreV1Api,
        namespace: typing.Optional[str] = None,
        request_timeout: typing.Optional[typing.Tuple[int, int]] = None,
    ):
        """Initialize the client.

        Args:
            core_api: The Kubernetes core API.
            namespace: The default namespace, the cluster default when unset.
            request_timeout: The (connect, read) timeouts applied to every call.
        """
        self.core_api = core_api
        self.namespace = namespace or _get_cluster_default_namespace()
        self.request_timeout = request_timeout

    @classmethod
    def from_cloud(
        cls, cloud: state.CloudConfig, token: typing.Optional[str] = None
    ) -> "ClusterClient":
        """Build a client from the cloud configuration.

        Args:
            cloud: The cloud configuration.
            token: Bearer token resolved from the cloud credentials, if any.

        Returns:
            The cluster client.
        """
        logger.debug("Building connection to Kubernetes %s URL %s", cloud.name, cloud.server_url)
        configuration = kubernetes.client.Configuration()
        if cloud.server_url:
            configuration.host = cloud.server_url
        else:
            try:
                kubernetes.config.load_incluster_config(client_configuration=configuration)
            except kubernetes.config.ConfigException:
                kubernetes.config.load_kube_config(client_configuration=configuration)
        if cloud.skip_tls_verify:
            configuration.verify_ssl = False
        if token:
            configuration.api_key = {"authorization": token}
            configuration.api_key_prefix = {"authorization": "Bearer"}
        configuration.connection_pool_maxsize = cloud.max_requests_per_host
        request_timeout = None
        if cloud.connect_timeout or cloud.read_timeout:
            request_timeout = (cloud.connect_timeout or None, cloud.read_timeout or None)
        core_api = kubernetes.client.CoreV1Api(kubernetes.client.ApiClient(configuration))
        logger.debug("Connected to Kubernetes %s URL %s", cloud.name, configuration.host)
        return cls(core_api, namespace=cloud.namespace, request_timeout=request_timeout)

    def _call_kwargs(self) -> typing.Dict[str, typing.Any]:
        if self.request_timeout is None:
            return {}
        return {"_request_timeout": self.request_timeout}

    def list_pods(
        self, namespace: str, labels: typing.Mapping[str, str]
    ) -> typing.Optional[typing.List[kubernetes.client.V1Pod]]:
        """List the pods carrying all given labels.

        Args:
            namespace: The namespace to search.
            labels: The labels the pods must carry.

        Returns:
            The matching pods, None if the API returned no listing.
        """
        selector = ",".join(f"{key}={value}" for key, value in labels.items())
        with _translate_errors(f"list pods in namespace {namespace} with labels {selector}"):
            pod_list = self.core_api.list_namespaced_pod(
                namespace=namespace, label_selector=selector, **self._call_kwargs()
            )
        return pod_list.items if pod_list is not None else None

    def get_pod(self, namespace: str, name: str) -> typing.Optional[kubernetes.client.V1Pod]:
        """Get a pod.

        Args:
            namespace: The pod namespace.
            name: The pod name.

        Raises:
            ClusterApiError: if the API server returned an error other than not found.

        Returns:
            The pod, None if it does not exist.
        """
        try:
            with _translate_errors(f"get pod {namespace}/{name}"):
                return self.core_api.read_namespaced_pod(
                    name=name, namespace=namespace, **self._call_kwargs()
                )
        except ClusterApiError as exc:
            if exc.status == 404:
                return None
            raise

    def create_pod(
        self, namespace: str, manifest: typing.Mapping[str, typing.Any]
    ) -> kubernetes.client.V1Pod:
        """Create a pod.

        Args:
            namespace: The pod namespace.
            manifest: The pod manifest.

        Returns:
            The created pod.
        """
        with _translate_errors(f"create pod in namespace {namespace}"):
            return self.core_api.create_namespaced_pod(
                namespace=namespace, body=manifest, **self._call_kwargs()
            )

    def delete_pod(self, namespace: str, name: str) -> bool:
        """Delete a pod.

        Args:
            namespace: The pod namespace.
            name: The pod name.

        Raises:
            ClusterApiError: if the API server returned an error other than not found.

        Returns:
            True if the pod was deleted, False if it did not exist.
        """
        try:
            with _translate_errors(f"delete pod {namespace}/{name}"):
                self.core_api.delete_namespaced_pod(
                    name=name, namespace=namespace, **self._call_kwargs()
                )
        except ClusterApiError as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def tail_log(self, namespace: str, name: str, container: str, lines: int) -> str:
        """Get the last lines of a container log.

        Args:
            namespace: The pod namespace.
            name: The pod name.
            container: The container name.
            lines: Number of lines to return.

        Returns:
            The log lines.
        """
        with _translate_errors(f"get logs of {namespace}/{name} container {container}"):
            return self.core_api.read_namespaced_pod_log(
                name=name,
                namespace=namespace,
                container=container,
                tail_lines=lines,
                **self._call_kwargs(),
            )
