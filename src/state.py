# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The module for managing the cloud configuration state."""

import enum
import logging
import re
import typing

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, ValidationError, field_validator

# Total cap sentinel used by raw configuration: an empty string means unlimited.
UNLIMITED_CAP_STR = ""
DEFAULT_MAX_REQUESTS_PER_HOST = 32
DEFAULT_RETENTION_TIMEOUT_MINUTES = 5
DEFAULT_SLAVE_CONNECT_TIMEOUT = 100
DEFAULT_WORKING_DIR = "/home/jenkins"
DEFAULT_AGENT_IMAGE = "jenkins/inbound-agent"

# Kubernetes resource names must be valid DNS-1123 labels.
DNS_LABEL_MAX_LENGTH = 63
_ILLEGAL_NAME_CHARS = re.compile(r"[^a-z0-9-]")
_LEGAL_NAME_PREFIX = re.compile(r"^[a-z0-9][a-z0-9-]*$")

logger = logging.getLogger(__name__)


class ConfigBaseError(Exception):
    """Represents error with the cloud configuration."""


class InvalidStateError(ConfigBaseError):
    """Exception raised when the configuration is invalid."""

    def __init__(self, msg: str = ""):
        """Initialize a new instance of the InvalidStateError exception.

        Args:
            msg: Explanation of the error.
        """
        super().__init__(msg)
        self.msg = msg


def sanitize_name(name: str) -> str:
    """Turn a free-form template name into a cluster resource name prefix.

    Args:
        name: The template name.

    Returns:
        The lowercased name with spaces, underscores and other illegal characters replaced by
        dashes and leading dashes removed.
    """
    name = re.sub(r"[ _]", "-", name).lower()
    return _ILLEGAL_NAME_CHARS.sub("-", name).lstrip("-")


class NodeUsageMode(str, enum.Enum):
    """How the scheduler may use agents of a template.

    Attrs:
        NORMAL: The agent takes any work, including work without a label.
        EXCLUSIVE: The agent only takes work whose label matches it.
    """

    NORMAL = "NORMAL"
    EXCLUSIVE = "EXCLUSIVE"


class _FrozenModel(BaseModel):
    """Immutable configuration model."""

    model_config = ConfigDict(frozen=True)


class KeyValueEnvVar(_FrozenModel):
    """A plain environment variable.

    Attrs:
        type: The variant discriminator.
        key: The variable name.
        value: The variable value.
    """

    type: typing.Literal["key-value"] = "key-value"
    key: str = Field(..., min_length=1)
    value: str = ""

    def build_env_var(self) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes container env entry.

        Returns:
            The env entry.
        """
        return {"name": self.key, "value": self.value}


class SecretEnvVar(_FrozenModel):
    """An environment variable read from a Kubernetes secret.

    Attrs:
        type: The variant discriminator.
        key: The variable name.
        secret_name: The secret to read from.
        secret_key: The key within the secret.
    """

    type: typing.Literal["secret"] = "secret"
    key: str = Field(..., min_length=1)
    secret_name: str = Field(..., min_length=1)
    secret_key: str = Field(..., min_length=1)

    def build_env_var(self) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes container env entry.

        Returns:
            The env entry.
        """
        return {
            "name": self.key,
            "valueFrom": {"secretKeyRef": {"name": self.secret_name, "key": self.secret_key}},
        }


TemplateEnvVar = typing.Annotated[
    typing.Union[KeyValueEnvVar, SecretEnvVar], Field(discriminator="type")
]


class HostPathVolume(_FrozenModel):
    """A host path mounted into the pod.

    Attrs:
        type: The variant discriminator.
        mount_path: Where the volume is mounted in every container.
        host_path: The path on the node.
    """

    type: typing.Literal["host-path"] = "host-path"
    mount_path: str = Field(..., min_length=1)
    host_path: str = Field(..., min_length=1)

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {"name": name, "hostPath": {"path": self.host_path}}


class EmptyDirVolume(_FrozenModel):
    """A scratch directory living as long as the pod.

    Attrs:
        type: The variant discriminator.
        mount_path: Where the volume is mounted in every container.
        memory: Whether the directory is backed by memory.
    """

    type: typing.Literal["empty-dir"] = "empty-dir"
    mount_path: str = Field(..., min_length=1)
    memory: bool = False

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {"name": name, "emptyDir": {"medium": "Memory"} if self.memory else {}}


class SecretVolume(_FrozenModel):
    """A Kubernetes secret mounted as files.

    Attrs:
        type: The variant discriminator.
        mount_path: Where the volume is mounted in every container.
        secret_name: The secret to mount.
    """

    type: typing.Literal["secret"] = "secret"
    mount_path: str = Field(..., min_length=1)
    secret_name: str = Field(..., min_length=1)

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {"name": name, "secret": {"secretName": self.secret_name}}


class ConfigMapVolume(_FrozenModel):
    """A Kubernetes config map mounted as files.

    Attrs:
        type: The variant discriminator.
        mount_path: Where the volume is mounted in every container.
        config_map_name: The config map to mount.
    """

    type: typing.Literal["config-map"] = "config-map"
    mount_path: str = Field(..., min_length=1)
    config_map_name: str = Field(..., min_length=1)

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {"name": name, "configMap": {"name": self.config_map_name}}


class NfsVolume(_FrozenModel):
    """An NFS export.

    Attrs:
        type: The variant discriminator.
        mount_path: Where the volume is mounted in every container.
        server_address: The NFS server.
        server_path: The exported path.
        read_only: Whether the export is mounted read-only.
    """

    type: typing.Literal["nfs"] = "nfs"
    mount_path: str = Field(..., min_length=1)
    server_address: str = Field(..., min_length=1)
    server_path: str = Field(..., min_length=1)
    read_only: bool = False

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {
            "name": name,
            "nfs": {
                "server": self.server_address,
                "path": self.server_path,
                "readOnly": self.read_only,
            },
        }


class PersistentVolumeClaimVolume(_FrozenModel):
    """An existing persistent volume claim.

    Attrs:
        type: The variant discriminator.
        mount_path: Where the volume is mounted in every container.
        claim_name: The claim to mount.
        read_only: Whether the claim is mounted read-only.
    """

    type: typing.Literal["persistent-volume-claim"] = "persistent-volume-claim"
    mount_path: str = Field(..., min_length=1)
    claim_name: str = Field(..., min_length=1)
    read_only: bool = False

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {
            "name": name,
            "persistentVolumeClaim": {"claimName": self.claim_name, "readOnly": self.read_only},
        }


PodVolume = typing.Annotated[
    typing.Union[
        HostPathVolume,
        EmptyDirVolume,
        SecretVolume,
        ConfigMapVolume,
        NfsVolume,
        PersistentVolumeClaimVolume,
    ],
    Field(discriminator="type"),
]


class EmptyDirWorkspaceVolume(_FrozenModel):
    """Workspace kept in a scratch directory."""

    type: typing.Literal["empty-dir"] = "empty-dir"
    memory: bool = False

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {"name": name, "emptyDir": {"medium": "Memory"} if self.memory else {}}


class HostPathWorkspaceVolume(_FrozenModel):
    """Workspace kept on the node."""

    type: typing.Literal["host-path"] = "host-path"
    host_path: str = Field(..., min_length=1)

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {"name": name, "hostPath": {"path": self.host_path}}


class NfsWorkspaceVolume(_FrozenModel):
    """Workspace kept on an NFS export."""

    type: typing.Literal["nfs"] = "nfs"
    server_address: str = Field(..., min_length=1)
    server_path: str = Field(..., min_length=1)
    read_only: bool = False

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {
            "name": name,
            "nfs": {
                "server": self.server_address,
                "path": self.server_path,
                "readOnly": self.read_only,
            },
        }


class PersistentVolumeClaimWorkspaceVolume(_FrozenModel):
    """Workspace kept on an existing persistent volume claim."""

    type: typing.Literal["persistent-volume-claim"] = "persistent-volume-claim"
    claim_name: str = Field(..., min_length=1)
    read_only: bool = False

    def build_volume(self, name: str) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes volume.

        Args:
            name: The volume name.

        Returns:
            The volume entry.
        """
        return {
            "name": name,
            "persistentVolumeClaim": {"claimName": self.claim_name, "readOnly": self.read_only},
        }


WorkspaceVolume = typing.Annotated[
    typing.Union[
        EmptyDirWorkspaceVolume,
        HostPathWorkspaceVolume,
        NfsWorkspaceVolume,
        PersistentVolumeClaimWorkspaceVolume,
    ],
    Field(discriminator="type"),
]


class PortMapping(_FrozenModel):
    """A container port.

    Attrs:
        name: The port name.
        container_port: The port the container listens on.
        host_port: The node port to bind, if any.
    """

    name: typing.Optional[str] = None
    container_port: int = Field(..., ge=1, le=65535)
    host_port: typing.Optional[int] = Field(None, ge=1, le=65535)

    def to_port(self) -> typing.Dict[str, typing.Any]:
        """Render the Kubernetes container port.

        Returns:
            The port entry.
        """
        port: typing.Dict[str, typing.Any] = {"containerPort": self.container_port}
        if self.name:
            port["name"] = self.name
        if self.host_port:
            port["hostPort"] = self.host_port
        return port


class ContainerLivenessProbe(_FrozenModel):
    """An exec liveness probe.

    Attrs:
        exec_args: The command to execute, tokenized like container commands.
        initial_delay_seconds: Delay before the first probe.
        timeout_seconds: Probe timeout.
        failure_threshold: Consecutive failures before the container is restarted.
        period_seconds: Interval between probes.
        success_threshold: Consecutive successes before the probe passes again.
    """

    exec_args: str = ""
    initial_delay_seconds: int = Field(0, ge=0)
    timeout_seconds: int = Field(0, ge=0)
    failure_threshold: int = Field(0, ge=0)
    period_seconds: int = Field(0, ge=0)
    success_threshold: int = Field(0, ge=0)


class ContainerTemplate(_FrozenModel):
    """A container of an agent pod.

    Attrs:
        name: The container name, unique within the pod.
        image: The container image.
        command: Entrypoint override, whitespace separated with double-quoted tokens.
        args: Arguments override, whitespace separated with double-quoted tokens.
        working_dir: The container working directory, also used as HOME.
        privileged: Whether the container runs privileged.
        always_pull_image: Whether the image is pulled on every start.
        tty_enabled: Whether a TTY is allocated.
        env_vars: Container specific environment variables.
        resource_request_memory: Memory request quantity.
        resource_request_cpu: CPU request quantity.
        resource_limit_memory: Memory limit quantity.
        resource_limit_cpu: CPU limit quantity.
        ports: Exposed container ports.
        liveness_probe: The liveness probe, if any.
    """

    name: str = Field(..., min_length=1)
    image: str = ""
    command: str = ""
    args: str = ""
    working_dir: str = DEFAULT_WORKING_DIR
    privileged: bool = False
    always_pull_image: bool = False
    tty_enabled: bool = False
    env_vars: typing.Tuple[TemplateEnvVar, ...] = ()
    resource_request_memory: str = ""
    resource_request_cpu: str = ""
    resource_limit_memory: str = ""
    resource_limit_cpu: str = ""
    ports: typing.Tuple[PortMapping, ...] = ()
    liveness_probe: typing.Optional[ContainerLivenessProbe] = None


class AgentTemplate(_FrozenModel):
    """A reusable description of an agent pod.

    Attrs:
        name: The template name, used as the agent name prefix.
        label: Space separated labels the agents of this template carry.
        namespace: Namespace override for the agent pods.
        node_usage_mode: How the scheduler may use the agents.
        containers: The pod containers in declaration order.
        volumes: Volumes mounted into every container.
        workspace_volume: The volume backing the working directories.
        node_selector: Node selector in the form "key1=value1,key2=value2".
        env_vars: Environment variables set in every container.
        image_pull_secrets: Names of the secrets used to pull images.
        annotations: Pod annotations.
        instance_cap: Maximum number of live agents of this template, None when unlimited.
        idle_minutes: Minutes an agent may stay idle, 0 for single use agents.
        slave_connect_timeout: Seconds to wait for the agent to connect.
        service_account: The pod service account.
        remote_fs: The agent root directory.
    """

    name: str = ""
    label: str = ""
    namespace: typing.Optional[str] = None
    node_usage_mode: NodeUsageMode = NodeUsageMode.NORMAL
    containers: typing.Tuple[ContainerTemplate, ...] = ()
    volumes: typing.Tuple[PodVolume, ...] = ()
    workspace_volume: typing.Optional[WorkspaceVolume] = None
    node_selector: str = ""
    env_vars: typing.Tuple[TemplateEnvVar, ...] = ()
    image_pull_secrets: typing.Tuple[str, ...] = ()
    annotations: typing.Dict[str, str] = Field(default_factory=dict)
    instance_cap: typing.Optional[int] = Field(None, ge=0)
    idle_minutes: int = Field(0, ge=0)
    slave_connect_timeout: int = Field(DEFAULT_SLAVE_CONNECT_TIMEOUT, ge=0)
    service_account: typing.Optional[str] = None
    remote_fs: str = DEFAULT_WORKING_DIR

    @field_validator("name")
    @classmethod
    def _name_yields_resource_prefix(cls, value: str) -> str:
        """Validate that the sanitized name is a legal resource name prefix.

        Args:
            value: The template name.

        Raises:
            ValueError: if the name cannot be turned into a resource name.

        Returns:
            The unchanged name.
        """
        if value and not _LEGAL_NAME_PREFIX.match(sanitize_name(value)):
            raise ValueError(f"Template name {value!r} does not yield a valid resource name.")
        return value

    @property
    def label_set(self) -> typing.Tuple[str, ...]:
        """The distinct label atoms of the template, sorted."""
        return tuple(sorted(set(self.label.split())))

    @property
    def display_name(self) -> str:
        """Human readable template description used in logs."""
        return f"Kubernetes Pod Template {self.name}".rstrip()


class CloudConfig(_FrozenModel):
    """The Kubernetes cloud configuration.

    Attrs:
        name: The cloud name.
        server_url_not_validated: The cluster API URL, None to use the in-cluster service
            account or the local kubeconfig.
        namespace: The default namespace for agent pods.
        credentials_id: Reference to the credentials used to reach the cluster.
        skip_tls_verify: Whether the cluster certificate is verified.
        connect_timeout: Cluster connection timeout in seconds, 0 for the library default.
        read_timeout: Cluster read timeout in seconds, 0 for the library default.
        max_requests_per_host: Concurrent cluster requests allowed.
        container_cap: Maximum number of live agents, None when unlimited.
        retention_timeout: Minutes a single use agent may stay unused.
        jenkins_url: The URL agents use to reach Jenkins, the Jenkins root URL when unset.
        jenkins_tunnel: The host:port agents tunnel their connection through.
        default_agent_image: The image of the synthesized runtime agent container.
        provisioning_threads: Number of agents provisioned concurrently.
        templates: The agent templates in declaration order.
    """

    name: str = Field(..., min_length=1)
    server_url_not_validated: typing.Optional[AnyHttpUrl] = None
    namespace: typing.Optional[str] = None
    credentials_id: typing.Optional[str] = None
    skip_tls_verify: bool = False
    connect_timeout: int = Field(0, ge=0)
    read_timeout: int = Field(0, ge=0)
    max_requests_per_host: int = Field(DEFAULT_MAX_REQUESTS_PER_HOST, ge=1)
    container_cap: typing.Optional[int] = Field(None, ge=0)
    retention_timeout: int = Field(DEFAULT_RETENTION_TIMEOUT_MINUTES, ge=0)
    jenkins_url: typing.Optional[str] = None
    jenkins_tunnel: typing.Optional[str] = None
    default_agent_image: str = DEFAULT_AGENT_IMAGE
    provisioning_threads: int = Field(8, ge=1)
    templates: typing.Tuple[AgentTemplate, ...] = ()

    @property
    def server_url(self) -> typing.Optional[str]:
        """Convert validated server_url to string."""
        if self.server_url_not_validated is None:
            return None
        return str(self.server_url_not_validated).rstrip("/")

    def get_template(self, name: str) -> typing.Optional[AgentTemplate]:
        """Look up a template by name.

        Args:
            name: The template name.

        Returns:
            The first template with the given name, None if not found.
        """
        return next((template for template in self.templates if template.name == name), None)

    def with_template(self, template: AgentTemplate) -> "CloudConfig":
        """Return a configuration with a template appended.

        Args:
            template: The template to add.

        Returns:
            The new configuration.
        """
        return self.model_copy(update={"templates": (*self.templates, template)})

    def without_template(self, name: str) -> "CloudConfig":
        """Return a configuration without the templates of the given name.

        Args:
            name: The name of the template to remove.

        Returns:
            The new configuration.
        """
        return self.model_copy(
            update={"templates": tuple(t for t in self.templates if t.name != name)}
        )

    @classmethod
    def from_config(cls, config: typing.Mapping[str, typing.Any]) -> "CloudConfig":
        """Instantiate CloudConfig from raw configuration values.

        Args:
            config: Raw configuration mapping, e.g. loaded from a file.

        Raises:
            InvalidStateError: if the configuration values are invalid.

        Returns:
            The validated cloud configuration.
        """
        values = dict(config)
        if "server_url" in values:
            values["server_url_not_validated"] = values.pop("server_url") or None
        values["container_cap"] = _parse_cap(values.get("container_cap"))
        values["max_requests_per_host"] = _parse_max_requests_per_host(
            values.get("max_requests_per_host")
        )
        for optional_key in ("namespace", "credentials_id", "jenkins_url", "jenkins_tunnel"):
            # Blank strings mean unset.
            if not values.get(optional_key):
                values[optional_key] = None
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            logger.error("Invalid cloud config values, %s", exc)
            raise InvalidStateError("Invalid cloud config values.") from exc


def _parse_cap(value: typing.Any) -> typing.Any:
    """Parse a container cap where the blank string stands for unlimited.

    Args:
        value: The raw cap value.

    Returns:
        None for unlimited, the value untouched otherwise so that validation can reject it.
    """
    if value is None or (isinstance(value, str) and value.strip() == UNLIMITED_CAP_STR):
        return None
    return value


def _parse_max_requests_per_host(value: typing.Any) -> int:
    """Parse the concurrent request cap, falling back to the default.

    Args:
        value: The raw value.

    Returns:
        The parsed positive integer or the default.
    """
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_REQUESTS_PER_HOST
    return parsed if parsed > 0 else DEFAULT_MAX_REQUESTS_PER_HOST
