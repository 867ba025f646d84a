# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The Kubernetes cloud: admission and dispatch of agent provisioning."""

import collections
import concurrent.futures
import functools
import logging
import threading
import time
import typing
from dataclasses import dataclass

import admission
import agent
import kube
import labels
import metadata
import podspec
import provisioner
import server
import state

logger = logging.getLogger(__name__)

LabelRequest = typing.Optional[typing.Union[str, labels.Label]]


@dataclass(frozen=True)
class PlannedNode:
    """An agent being provisioned.

    Attrs:
        display_name: The name of the agent being provisioned.
        future: Resolves to the connected agent, or raises ProvisionError.
        num_executors: The number of executors the agent brings.
    """

    display_name: str
    future: "concurrent.futures.Future[metadata.Agent]"
    num_executors: int


def _connection_settings(config: state.CloudConfig) -> typing.Tuple[typing.Any, ...]:
    return (
        config.server_url,
        config.namespace,
        config.skip_tls_verify,
        config.connect_timeout,
        config.read_timeout,
        config.max_requests_per_host,
    )


class KubernetesCloud:  # pylint: disable=too-many-instance-attributes
    """Provisions agents of the configured templates on a Kubernetes cluster.

    One admission and dispatch pass runs at a time; the slow pod creation and readiness wait
    run on a bounded worker pool.

    Attrs:
        agents: The connected agents by name.
    """

    def __init__(
        self,
        config: state.CloudConfig,
        inventory: server.Inventory,
        client: typing.Optional[kube.ClusterClient] = None,
        token: typing.Optional[str] = None,
        environ: typing.Optional[typing.Mapping[str, str]] = None,
    ):
        """Initialize the cloud.

        Args:
            config: The cloud configuration.
            inventory: The scheduler node inventory.
            client: The cluster client, built from the configuration when not given.
            token: Bearer token of the cluster credentials, if any.
            environ: The values ${NAME} placeholders in templates resolve to.
        """
        self.inventory = inventory
        self.agents: typing.Dict[str, metadata.Agent] = {}
        self._token = token
        self._environ = environ
        self._lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: typing.Counter[str] = collections.Counter()
        self._cancel = threading.Event()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.provisioning_threads, thread_name_prefix=f"{config.name}-provision"
        )
        self.config = config
        self.client = client or kube.ClusterClient.from_cloud(config, token=token)
        self.builder = podspec.PodSpecBuilder(config, environ)
        self.lifecycle = agent.LifecycleManager(config, self.client, inventory)

    def get_matching_templates(self, label: LabelRequest) -> typing.List[state.AgentTemplate]:
        """Get the templates able to serve a label.

        Args:
            label: The requested label, None for unlabeled work.

        Returns:
            The matching templates in declaration order.
        """
        if isinstance(label, str):
            label = labels.parse(label)
        return labels.get_matching_templates(label, self.config.templates)

    def can_provision(self, label: LabelRequest) -> bool:
        """Check whether any template can serve a label.

        Args:
            label: The requested label, None for unlabeled work.

        Returns:
            True if a template matches, False for a malformed label expression.
        """
        try:
            return bool(self.get_matching_templates(label))
        except labels.LabelExpressionError as exc:
            logger.warning("Ignoring malformed label expression %r: %s", label, exc)
            return False

    def _acquire(self, template_name: str) -> None:
        with self._pending_lock:
            self._pending[template_name] += 1

    def _release(self, template_name: str) -> None:
        with self._pending_lock:
            self._pending[template_name] -= 1
            if self._pending[template_name] <= 0:
                del self._pending[template_name]

    def _admit(self, template: state.AgentTemplate) -> bool:
        with self._pending_lock:
            pending_global = sum(self._pending.values())
            pending_template = self._pending[template.name]
        return admission.admit(
            self.client,
            self.config,
            template,
            pending_global=pending_global,
            pending_template=pending_template,
        )

    def _on_done(self, future: "concurrent.futures.Future[metadata.Agent]") -> None:
        if future.cancelled() or future.exception() is not None:
            return
        connected = future.result()
        self.agents[connected.name] = connected

    def _submit(
        self,
        template: state.AgentTemplate,
        listener: typing.Optional[logging.Logger],
        extra_label: typing.Optional[str] = None,
    ) -> PlannedNode:
        """Dispatch the provisioning of one agent to the worker pool.

        Args:
            template: The template to provision.
            listener: The task log stream.
            extra_label: A label added to the agent on top of the template labels.

        Returns:
            The planned agent.
        """
        new_agent = metadata.Agent.from_template(template, self.config.retention_timeout)
        if extra_label:
            new_agent.labels = f"{new_agent.labels} {extra_label}".strip()
        self._acquire(template.name)
        callback = provisioner.ProvisioningCallback(
            new_agent,
            template,
            self.client,
            self.lifecycle,
            self.builder,
            listener=listener,
            cancel=self._cancel,
            release=functools.partial(self._release, template.name),
        )
        try:
            future = self._executor.submit(callback)
        except RuntimeError:
            self._release(template.name)
            raise
        future.add_done_callback(self._on_done)
        logger.info("Planned agent %s of %s", new_agent.name, template.display_name)
        return PlannedNode(
            display_name=new_agent.name, future=future, num_executors=new_agent.num_executors
        )

    def _provision_template(  # pylint: disable=too-many-arguments
        self,
        planned: typing.List[PlannedNode],
        template: state.AgentTemplate,
        excess_workload: int,
        listener: typing.Optional[logging.Logger],
        extra_label: typing.Optional[str] = None,
    ) -> None:
        for _ in range(excess_workload):
            if not self._admit(template):
                break
            planned.append(self._submit(template, listener, extra_label))

    def provision(
        self,
        label: LabelRequest,
        excess_workload: int,
        listener: typing.Optional[logging.Logger] = None,
    ) -> typing.List[PlannedNode]:
        """Plan agents for pending work.

        Templates are tried in declaration order and the pass stops at the first template
        that yielded agents. Every agent is admitted against the caps before it is dispatched.

        Args:
            label: The requested label, None for unlabeled work.
            excess_workload: The number of agents the scheduler needs.
            listener: The task log stream.

        Returns:
            The planned agents, empty when no capacity is available or the label is malformed.
        """
        try:
            templates = self.get_matching_templates(label)
        except labels.LabelExpressionError as exc:
            logger.warning("Ignoring malformed label expression %r: %s", label, exc)
            return []
        logger.info(
            "Excess workload after pending Kubernetes agents: %s, label %s",
            excess_workload,
            label,
        )
        planned: typing.List[PlannedNode] = []
        with self._lock:
            try:
                for template in templates:
                    self._provision_template(planned, template, excess_workload, listener)
                    if planned:
                        break
            except kube.ClusterConnectionError as exc:
                logger.warning(
                    "Failed to connect to Kubernetes at %s: %s", self.config.server_url, exc
                )
            except kube.ClusterApiError as exc:
                logger.warning("Failed to count the pods to provision: %s", exc)
        return planned

    def assign_label(
        self, template_name: str, listener: typing.Optional[logging.Logger] = None
    ) -> typing.Optional[str]:
        """Provision an agent dedicated to one job.

        Args:
            template_name: The template the job asks for.
            listener: The task log stream.

        Returns:
            The unique label the job must be pinned to, None when no agent was planned.
        """
        template = self.config.get_template(template_name)
        if template is None:
            logger.warning("No template named %s in cloud %s", template_name, self.config.name)
            return None
        unique_label = metadata.generate_agent_name(template.name)
        planned: typing.List[PlannedNode] = []
        with self._lock:
            try:
                self._provision_template(planned, template, 1, listener, unique_label)
            except kube.ClusterBaseError as exc:
                logger.warning("Failed to provision agent of template %s: %s", template.name, exc)
                return None
        if not planned:
            return None
        logger.info("Assigned label %s to agent %s", unique_label, planned[0].display_name)
        return unique_label

    def terminate(
        self, target: metadata.Agent, listener: typing.Optional[logging.Logger] = None
    ) -> agent.TerminationOutcome:
        """Terminate an agent.

        Args:
            target: The agent to terminate.
            listener: The task log stream.

        Returns:
            The termination outcome.
        """
        self.agents.pop(target.name, None)
        return self.lifecycle.terminate(target, listener)

    def check_retention(
        self, now: typing.Optional[float] = None, listener: typing.Optional[logging.Logger] = None
    ) -> typing.Dict[str, agent.TerminationOutcome]:
        """Terminate the connected agents whose retention expired.

        Args:
            now: The current monotonic time.
            listener: The task log stream.

        Returns:
            The termination outcome of every terminated agent by name.
        """
        now = time.monotonic() if now is None else now
        outcomes = {}
        for connected in list(self.agents.values()):
            try:
                outcome = self.lifecycle.check_retention(connected, now, listener)
            except server.ServerBaseError as exc:
                logger.warning("Failed to check retention of agent %s: %s", connected.name, exc)
                continue
            if outcome is not None:
                self.agents.pop(connected.name, None)
                outcomes[connected.name] = outcome
        return outcomes

    def update_config(
        self, config: state.CloudConfig, client: typing.Optional[kube.ClusterClient] = None
    ) -> None:
        """Replace the cloud configuration.

        Provisioning attempts in flight keep the configuration they started with.

        Args:
            config: The new configuration.
            client: The cluster client, rebuilt when the connection settings changed if not given.
        """
        with self._lock:
            if client is None and _connection_settings(config) != _connection_settings(
                self.config
            ):
                client = kube.ClusterClient.from_cloud(config, token=self._token)
            self.config = config
            self.client = client or self.client
            self.builder = podspec.PodSpecBuilder(config, self._environ)
            self.lifecycle = agent.LifecycleManager(config, self.client, self.inventory)
            logger.info("Updated configuration of cloud %s", config.name)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel the provisioning attempts and stop the worker pool.

        Args:
            wait: Whether to wait for the running attempts to roll back.
        """
        self._cancel.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
