# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The agent provisioning module: pod creation and the two phase readiness wait."""

import enum
import logging
import threading
import typing

import kubernetes

import agent
import kube
import metadata
import podspec
import server
import state

SCHEDULE_POLL_INTERVAL = 6
SCHEDULE_MAX_ATTEMPTS = 100
CONNECT_POLL_INTERVAL = 1
LOG_TAIL_LINES = 30
POD_RUNNING_PHASE = "Running"

logger = logging.getLogger(__name__)


class ProvisionError(Exception):
    """Represents a failed agent provisioning attempt."""

    def __init__(self, msg: str = ""):
        """Initialize a new instance of the ProvisionError exception.

        Args:
            msg: Explanation of the error.
        """
        super().__init__(msg)
        self.msg = msg


class PodVanishedError(ProvisionError):
    """Represents a pod deleted while waiting for it to run."""


class ContainersTerminatedError(ProvisionError):
    """Represents pod containers that terminated before the agent connected."""

    def __init__(self, msg: str, exit_codes: typing.Mapping[str, int]):
        """Initialize a new instance of the ContainersTerminatedError exception.

        Args:
            msg: Explanation of the error.
            exit_codes: Exit code of every terminated container by container name.
        """
        super().__init__(msg)
        self.exit_codes = dict(exit_codes)


class SchedulingTimeoutError(ProvisionError):
    """Represents a pod that did not run within the scheduling attempt budget."""


class ConnectTimeoutError(ProvisionError):
    """Represents an agent that did not connect within the connect timeout."""


class ComputerMissingError(ProvisionError):
    """Represents an agent node removed from the inventory while provisioning."""


class ProvisionCancelledError(ProvisionError):
    """Represents a provisioning attempt cancelled by the caller."""


class ReadinessState(str, enum.Enum):
    """Readiness state of a provisioning attempt."""

    CREATED = "created"
    SUBMITTED = "submitted"
    WAITING_SCHEDULED = "waiting-scheduled"
    WAITING_CONNECTED = "waiting-connected"
    READY = "ready"
    FAILED = "failed"


def get_terminated_exit_codes(pod: kubernetes.client.V1Pod) -> typing.Dict[str, int]:
    """Collect the exit codes of the terminated containers of a pod.

    Args:
        pod: The pod.

    Returns:
        The exit codes by container name, empty when no container terminated.
    """
    statuses = (pod.status.container_statuses if pod.status else None) or []
    return {
        status.name: status.state.terminated.exit_code
        for status in statuses
        if status.state is not None and status.state.terminated is not None
    }


def is_pod_running(pod: kubernetes.client.V1Pod) -> bool:
    """Check whether all containers of a pod are ready and the pod runs.

    Args:
        pod: The pod.

    Returns:
        True if the pod phase is Running and no container is unready.
    """
    if pod.status is None:
        return False
    statuses = pod.status.container_statuses or []
    if not all(status.ready for status in statuses):
        return False
    return pod.status.phase == POD_RUNNING_PHASE


class ProvisioningCallback:
    """Provisions one agent: registration, pod creation and the readiness wait.

    Instances are submitted to the cloud worker pool. Calling the instance blocks until the
    agent is connected or the attempt failed; failures are rolled back by removing the agent
    node from the inventory before the error is raised.

    Attrs:
        state: The readiness state of the attempt.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        new_agent: metadata.Agent,
        template: state.AgentTemplate,
        client: kube.ClusterClient,
        lifecycle: agent.LifecycleManager,
        builder: podspec.PodSpecBuilder,
        listener: typing.Optional[logging.Logger] = None,
        cancel: typing.Optional[threading.Event] = None,
        release: typing.Optional[typing.Callable[[], None]] = None,
    ):
        """Initialize the callback.

        Args:
            new_agent: The agent to provision, in the REQUESTED phase.
            template: The template the agent is provisioned from.
            client: The cluster client.
            lifecycle: The lifecycle manager registering the agent.
            builder: The pod specification builder.
            listener: The task log stream progress and failures are reported to.
            cancel: Event that cancels the attempt at the next poll boundary when set.
            release: Called once, when the pod is created or the attempt failed before that.
        """
        self.agent = new_agent
        self.template = template
        self.client = client
        self.lifecycle = lifecycle
        self.builder = builder
        self.listener = listener or logger
        self.cancel = cancel or threading.Event()
        self._release = release
        self.state = ReadinessState.CREATED
        self._manifest: typing.Optional[podspec.Manifest] = None
        self._last_pod: typing.Optional[kubernetes.client.V1Pod] = None

    def _release_once(self) -> None:
        if self._release is not None:
            release, self._release = self._release, None
            release()

    def _sleep(self, interval: float) -> None:
        """Wait for the poll interval.

        Args:
            interval: Seconds to wait.

        Raises:
            ProvisionCancelledError: if the attempt was cancelled.
        """
        if self.cancel.wait(interval):
            raise ProvisionCancelledError(f"Provisioning of agent {self.agent.name} cancelled")

    def _get_computer(self) -> server.Computer:
        """Look up the agent computer.

        Raises:
            ComputerMissingError: if the agent node is gone from the inventory.

        Returns:
            The agent computer.
        """
        computer = self.lifecycle.inventory.get_computer(self.agent.name)
        if computer is None:
            raise ComputerMissingError(f"Node was deleted, computer is null: {self.agent.name}")
        return computer

    def _create_pod(self, namespace: str) -> None:
        """Build the manifest of the agent pod and submit it.

        Args:
            namespace: The pod namespace.
        """
        computer = self._get_computer()
        identity = podspec.AgentIdentity(
            name=self.agent.name,
            secret=computer.secret,
            computer_url=computer.url,
            location_url=self.lifecycle.inventory.root_url,
        )
        self._manifest = self.builder.build(self.template, identity)
        self.client.create_pod(namespace, self._manifest)
        self.state = ReadinessState.SUBMITTED
        self.agent.phase = metadata.AgentPhase.POD_CREATED
        msg = f"Created Pod: {namespace}/{self.agent.name}"
        logger.info(msg)
        self.listener.info(msg)

    def _wait_scheduled(self, namespace: str) -> int:
        """Poll the pod until all containers are ready and it runs.

        Args:
            namespace: The pod namespace.

        Raises:
            PodVanishedError: if the pod no longer exists.
            ContainersTerminatedError: if any container terminated.
            SchedulingTimeoutError: if the pod did not run within the attempt budget.

        Returns:
            The attempt counter when the pod started running.
        """
        self.state = ReadinessState.WAITING_SCHEDULED
        attempt = 0
        pod = None
        while attempt < SCHEDULE_MAX_ATTEMPTS:
            logger.info(
                "Waiting for Pod to be scheduled (%s/%s): %s",
                attempt,
                SCHEDULE_MAX_ATTEMPTS,
                self.agent.name,
            )
            self._sleep(SCHEDULE_POLL_INTERVAL)
            pod = self.client.get_pod(namespace, self.agent.name)
            if pod is None:
                raise PodVanishedError(f"Pod no longer exists: {self.agent.name}")
            self._last_pod = pod
            exit_codes = get_terminated_exit_codes(pod)
            if exit_codes:
                raise ContainersTerminatedError(
                    f"Pod {self.agent.name} has terminated containers: {exit_codes}", exit_codes
                )
            if is_pod_running(pod):
                break
            attempt += 1
        else:
            phase = pod.status.phase if pod is not None and pod.status else None
            raise SchedulingTimeoutError(
                f"Container is not running after {SCHEDULE_MAX_ATTEMPTS} attempts, "
                f"status: {phase}"
            )
        self.agent.phase = metadata.AgentPhase.POD_RUNNING
        logger.info("Pod is running: %s/%s", namespace, self.agent.name)
        return attempt

    def _wait_connected(self, attempt: int) -> None:
        """Poll the agent computer until it reports online.

        Args:
            attempt: The attempt counter reached while waiting for the pod to run.

        Raises:
            ConnectTimeoutError: if the agent did not connect within the connect timeout.
        """
        self.state = ReadinessState.WAITING_CONNECTED
        timeout = self.template.slave_connect_timeout
        while attempt < timeout:
            if self._get_computer().is_online():
                return
            logger.info(
                "Waiting for agent to connect (%s/%s): %s", attempt, timeout, self.agent.name
            )
            self._sleep(CONNECT_POLL_INTERVAL)
            attempt += 1
        if not self._get_computer().is_online():
            raise ConnectTimeoutError(
                f"Agent is not connected after {timeout} attempts: {self.agent.name}"
            )

    def _get_container_names(self) -> typing.List[str]:
        if self._last_pod is not None and self._last_pod.status is not None:
            statuses = self._last_pod.status.container_statuses or []
            if statuses:
                return [status.name for status in statuses]
        if self._manifest is None:
            return []
        return [container["name"] for container in self._manifest["spec"]["containers"]]

    def _log_last_lines(self, namespace: str) -> None:
        """Report the last log lines of every container of the pod.

        Args:
            namespace: The pod namespace.
        """
        for container in self._get_container_names():
            try:
                log = self.client.tail_log(namespace, self.agent.name, container, LOG_TAIL_LINES)
            except kube.ClusterBaseError as exc:
                logger.warning(
                    "Failed to get logs of %s/%s container %s: %s",
                    namespace,
                    self.agent.name,
                    container,
                    exc,
                )
                continue
            msg = (
                f"Error in provisioning; agent={self.agent.name}, template={self.template.name}, "
                f"container={container}, last {LOG_TAIL_LINES} lines:\n{log}"
            )
            logger.error(msg)
            self.listener.error(msg)

    def _rollback(self, namespace: str, exc: Exception) -> None:
        """Capture diagnostics and remove the agent node after a failure.

        Args:
            namespace: The pod namespace.
            exc: The failure.
        """
        submitted = self.state != ReadinessState.CREATED
        self.state = ReadinessState.FAILED
        self.agent.phase = metadata.AgentPhase.PROVISION_FAILED
        msg = (
            f"Error in provisioning; agent={self.agent.name}, "
            f"template={self.template.name}: {exc}"
        )
        logger.error(msg)
        self.listener.error(msg)
        if submitted:
            self._log_last_lines(namespace)
        try:
            self.lifecycle.unregister(self.agent)
        except server.ServerBaseError as unregister_exc:
            logger.error("Failed to remove agent node %s: %s", self.agent.name, unregister_exc)

    def __call__(self) -> metadata.Agent:
        """Provision the agent.

        Raises:
            ProvisionError: if the agent could not be provisioned.

        Returns:
            The connected agent.
        """
        namespace = self.lifecycle.resolve_namespace(self.agent)
        try:
            self.lifecycle.register(self.agent)
        except server.ServerBaseError as exc:
            self.state = ReadinessState.FAILED
            self.agent.phase = metadata.AgentPhase.PROVISION_FAILED
            self._release_once()
            raise ProvisionError(f"Failed to register agent {self.agent.name}") from exc
        try:
            self._create_pod(namespace)
            self._release_once()
            attempt = self._wait_scheduled(namespace)
            self._wait_connected(attempt)
        except ProvisionError as exc:
            self._rollback(namespace, exc)
            raise
        except (kube.ClusterBaseError, server.ServerBaseError, podspec.PodSpecError) as exc:
            self._rollback(namespace, exc)
            raise ProvisionError(f"Failed to provision agent {self.agent.name}: {exc}") from exc
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.exception("Unexpected error provisioning agent %s", self.agent.name)
            self._rollback(namespace, exc)
            raise ProvisionError(f"Failed to provision agent {self.agent.name}: {exc}") from exc
        finally:
            self._release_once()

        self.state = ReadinessState.READY
        self.agent.phase = metadata.AgentPhase.CONNECTED
        msg = f"Agent {self.agent.name} is connected"
        logger.info(msg)
        self.listener.info(msg)
        return self.agent
