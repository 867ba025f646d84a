# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The agent lifecycle module."""

import enum
import logging
import time
import typing

import kube
import metadata
import server
import state

logger = logging.getLogger(__name__)


class TerminationOutcome(str, enum.Enum):
    """Result of an agent termination.

    Attrs:
        DELETED: The pod was deleted.
        NOT_FOUND: The pod was already gone.
        ERROR: The pod could not be deleted.
    """

    DELETED = "deleted"
    NOT_FOUND = "not-found"
    ERROR = "error"


class LifecycleManager:
    """Registers agents in the scheduler and deletes their pods on termination."""

    def __init__(
        self, cloud: state.CloudConfig, client: kube.ClusterClient, inventory: server.Inventory
    ):
        """Initialize the lifecycle manager.

        Args:
            cloud: The cloud configuration.
            client: The cluster client.
            inventory: The scheduler node inventory.
        """
        self.cloud = cloud
        self.client = client
        self.inventory = inventory

    def resolve_namespace(self, agent: metadata.Agent) -> str:
        """Resolve the namespace of an agent pod.

        Args:
            agent: The agent.

        Returns:
            The template namespace, else the cloud namespace, else the cluster default.
        """
        return agent.namespace or self.cloud.namespace or self.client.namespace

    def register(self, agent: metadata.Agent) -> None:
        """Add the agent to the scheduler inventory before its pod exists.

        Args:
            agent: The agent to register.
        """
        logger.info("Adding Jenkins node: %s", agent.name)
        self.inventory.add_node(agent)

    def unregister(self, agent: metadata.Agent) -> None:
        """Remove the agent from the scheduler inventory.

        Args:
            agent: The agent to remove.
        """
        logger.info("Removing Jenkins node: %s", agent.name)
        self.inventory.remove_node(agent.name)

    def terminate(
        self, agent: metadata.Agent, listener: typing.Optional[logging.Logger] = None
    ) -> TerminationOutcome:
        """Delete the agent pod, take the agent offline and remove its Jenkins node.

        Deletion problems are reported to the listener and never raised. Whatever the deletion
        outcome, the computer is disconnected when it still exists and the node is removed.

        Args:
            agent: The agent to terminate.
            listener: The task log stream failures are reported to.

        Returns:
            The termination outcome.
        """
        listener = listener or logger
        logger.info("Terminating Kubernetes instance for agent %s", agent.name)
        agent.phase = metadata.AgentPhase.TERMINATING

        namespace = self.resolve_namespace(agent)
        try:
            deleted = self.client.delete_pod(namespace, agent.name)
        except kube.ClusterBaseError as exc:
            msg = f"Failed to delete pod for agent {namespace}/{agent.name}: {exc}"
            logger.warning(msg, exc_info=True)
            listener.error(msg)
            outcome = TerminationOutcome.ERROR
        else:
            if deleted:
                msg = f"Terminated Kubernetes instance for agent {namespace}/{agent.name}"
                logger.info(msg)
                listener.info(msg)
                agent.phase = metadata.AgentPhase.DELETED
                outcome = TerminationOutcome.DELETED
            else:
                msg = f"Failed to delete pod for agent {namespace}/{agent.name}: not found"
                logger.warning(msg)
                listener.error(msg)
                agent.phase = metadata.AgentPhase.DELETED
                outcome = TerminationOutcome.NOT_FOUND

        self._disconnect(agent, listener)
        try:
            self.unregister(agent)
        except server.ServerBaseError as exc:
            msg = f"Failed to remove Jenkins node {agent.name}: {exc}"
            logger.error(msg)
            listener.error(msg)
        return outcome

    def _disconnect(self, agent: metadata.Agent, listener: logging.Logger) -> None:
        """Take the agent computer offline when it still exists.

        Args:
            agent: The agent to disconnect.
            listener: The task log stream failures are reported to.
        """
        try:
            computer = self.inventory.get_computer(agent.name)
            if computer is None:
                msg = f"Computer for agent is null: {agent.name}"
                logger.error(msg)
                listener.error(msg)
                return
            computer.disconnect(server.OFFLINE_CAUSE)
        except server.ServerBaseError as exc:
            msg = f"Failed to disconnect computer {agent.name}: {exc}"
            logger.error(msg)
            listener.error(msg)
            return
        logger.info("Disconnected computer %s", agent.name)

    def check_retention(
        self,
        agent: metadata.Agent,
        now: typing.Optional[float] = None,
        listener: typing.Optional[logging.Logger] = None,
    ) -> typing.Optional[TerminationOutcome]:
        """Terminate the agent if its retention policy says so.

        Args:
            agent: The agent to check.
            now: The current monotonic time.
            listener: The task log stream failures are reported to.

        Returns:
            The termination outcome if the agent was terminated, None otherwise.
        """
        now = time.monotonic() if now is None else now
        computer = self.inventory.get_computer(agent.name)
        if computer is None or not computer.is_online():
            return None
        if not computer.is_idle():
            agent.used = True
            agent.idle_since = None
            agent.phase = metadata.AgentPhase.IN_USE
            return None
        if agent.idle_since is None:
            agent.idle_since = now
        if not agent.retention.is_expired(now - agent.idle_since, agent.used):
            return None
        logger.info(
            "Agent %s expired by %s retention after %.0fs idle",
            agent.name,
            agent.retention.kind.value,
            now - agent.idle_since,
        )
        return self.terminate(agent, listener)
