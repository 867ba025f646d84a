# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The module for handling provisioned agent metadata."""

import enum
import random
import typing

from pydantic import BaseModel, Field

import state

NAME_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz0123456789"
NAME_SUFFIX_LENGTH = 5
DEFAULT_AGENT_PREFIX = "jenkins-agent"


def generate_agent_name(template_name: str) -> str:
    """Generate a unique agent name for a template.

    Args:
        template_name: The name of the template the agent is provisioned from.

    Returns:
        The sanitized template name followed by a random suffix, at most 63 characters long.
    """
    # It's okay to use random since it's not used for sensitive data.
    suffix = "".join(random.choices(NAME_SUFFIX_ALPHABET, k=NAME_SUFFIX_LENGTH))  # nosec
    prefix = state.sanitize_name(template_name)
    if not prefix:
        return f"{DEFAULT_AGENT_PREFIX}-{suffix}"
    prefix = prefix[: state.DNS_LABEL_MAX_LENGTH - NAME_SUFFIX_LENGTH - 1]
    return f"{prefix}-{suffix}"


class AgentPhase(str, enum.Enum):
    """Lifecycle phase of a provisioned agent."""

    REQUESTED = "requested"
    POD_CREATED = "pod-created"
    POD_RUNNING = "pod-running"
    CONNECTED = "connected"
    IN_USE = "in-use"
    TERMINATING = "terminating"
    DELETED = "deleted"
    PROVISION_FAILED = "provision-failed"


class RetentionKind(str, enum.Enum):
    """How long an agent is kept.

    Attrs:
        ONCE: The agent runs a single task.
        IDLE: The agent is kept until it has been idle for a while.
    """

    ONCE = "once"
    IDLE = "idle"


class RetentionPolicy(BaseModel):
    """The agent retention policy.

    Attrs:
        kind: The retention kind.
        timeout_minutes: For ONCE, minutes an unused agent is kept; for IDLE, minutes an idle
            agent is kept.
    """

    kind: RetentionKind
    timeout_minutes: int = Field(..., ge=0)

    @classmethod
    def for_template(
        cls, template: state.AgentTemplate, retention_timeout: int
    ) -> "RetentionPolicy":
        """Select the retention policy of a template.

        Args:
            template: The agent template.
            retention_timeout: The cloud retention timeout for single use agents.

        Returns:
            Single use retention when the template idle minutes are 0, idle retention otherwise.
        """
        if template.idle_minutes == 0:
            return cls(kind=RetentionKind.ONCE, timeout_minutes=retention_timeout)
        return cls(kind=RetentionKind.IDLE, timeout_minutes=template.idle_minutes)

    def is_expired(self, idle_seconds: float, used: bool) -> bool:
        """Check whether an idle agent should be terminated.

        Args:
            idle_seconds: For how long the agent has been idle.
            used: Whether the agent has run a task.

        Returns:
            True if the agent should be terminated.
        """
        if self.kind == RetentionKind.ONCE and used:
            return True
        return idle_seconds >= self.timeout_minutes * 60


class Agent(BaseModel):
    """The provisioned agent metadata.

    Attrs:
        name: The agent name, also the pod name.
        template_name: The template the agent was provisioned from.
        namespace: The template namespace override, None to use the cloud namespace.
        labels: The space separated labels of the agent.
        node_usage_mode: How the scheduler may use the agent.
        remote_fs: The agent root directory.
        num_executors: The number of executors of the agent.
        retention: The retention policy.
        phase: The lifecycle phase.
        used: Whether the agent has been seen running a task.
        idle_since: Monotonic time the agent was first seen idle, None when busy or unknown.
    """

    name: str = Field(..., min_length=1, max_length=state.DNS_LABEL_MAX_LENGTH)
    template_name: str
    namespace: typing.Optional[str] = None
    labels: str = ""
    node_usage_mode: state.NodeUsageMode = state.NodeUsageMode.NORMAL
    remote_fs: str = state.DEFAULT_WORKING_DIR
    num_executors: int = Field(1, ge=1)
    retention: RetentionPolicy
    phase: AgentPhase = AgentPhase.REQUESTED
    used: bool = False
    idle_since: typing.Optional[float] = None

    @classmethod
    def from_template(
        cls,
        template: state.AgentTemplate,
        retention_timeout: int,
        name: typing.Optional[str] = None,
    ) -> "Agent":
        """Create the metadata of a new agent of a template.

        Args:
            template: The agent template.
            retention_timeout: The cloud retention timeout for single use agents.
            name: The agent name, generated from the template name when not given.

        Returns:
            The agent in the REQUESTED phase.
        """
        return cls(
            name=name or generate_agent_name(template.name),
            template_name=template.name,
            namespace=template.namespace or None,
            labels=template.label,
            node_usage_mode=template.node_usage_mode,
            remote_fs=template.remote_fs,
            retention=RetentionPolicy.for_template(template, retention_timeout),
        )

    def get_jenkins_node_dict(self) -> typing.Dict[str, typing.Any]:
        """Generate the Jenkins node description of the agent.

        Returns:
            A dictionary accepted by the Jenkins node creation endpoint.
        """
        return {
            "name": self.name,
            "nodeDescription": f"Kubernetes agent from template {self.template_name}",
            "numExecutors": str(self.num_executors),
            "remoteFS": self.remote_fs,
            "labelString": self.labels,
            "mode": self.node_usage_mode.value,
            "type": "hudson.slaves.DumbSlave",
            "retentionStrategy": {"stapler-class": "hudson.slaves.RetentionStrategy$Always"},
            "nodeProperties": {"stapler-class-bag": "true"},
            "launcher": {"stapler-class": "hudson.slaves.JNLPLauncher"},
        }
