# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The agent pod specification module."""

import logging
import os
import posixpath
import re
import typing
from dataclasses import dataclass

import labels
import state

JNLP_NAME = "jnlp"
WORKSPACE_VOLUME_NAME = "workspace-volume"
DEFAULT_JNLP_ARGUMENTS = "${computer.jnlpmac} ${computer.name}"

_SPLIT_IN_SPACES = re.compile(r'([^"\s]\S*|".+?")\s*')
_JNLPMAC_REF = "${computer.jnlpmac}"
_NAME_REF = "${computer.name}"
_ENV_REF = re.compile(r"\$\{([^}]+)\}")

logger = logging.getLogger(__name__)

Manifest = typing.Dict[str, typing.Any]
Entries = typing.List[typing.Dict[str, typing.Any]]


class PodSpecError(Exception):
    """Represents a pod specification that cannot be built."""


@dataclass(frozen=True)
class AgentIdentity:
    """Runtime identity of the agent a pod is built for.

    Attrs:
        name: The agent name, also the pod name.
        secret: The secret the agent connects with.
        computer_url: The agent computer URL relative to the scheduler root URL.
        location_url: The scheduler root URL.
    """

    name: str
    secret: str
    computer_url: str
    location_url: typing.Optional[str]


def substitute_env(
    value: typing.Optional[str],
    environ: typing.Mapping[str, str],
    default: typing.Optional[str] = None,
) -> typing.Optional[str]:
    """Replace ${NAME} placeholders with environment values.

    Args:
        value: The string to substitute, may be None.
        environ: The environment values.
        default: Replacement for unknown placeholders, unknown placeholders are kept when None.

    Returns:
        The substituted string, None if value is None.
    """
    if value is None:
        return None

    def _replace(match: typing.Match[str]) -> str:
        if match.group(1) in environ:
            return environ[match.group(1)]
        return match.group(0) if default is None else default

    return _ENV_REF.sub(_replace, value)


def parse_command(
    command: typing.Optional[str], environ: typing.Mapping[str, str]
) -> typing.Optional[typing.List[str]]:
    """Split a command line into tokens.

    Tokens are separated by whitespace, double-quoted spans are kept as one token without the
    quotes.

    Args:
        command: The command line.
        environ: The environment values substituted in every token.

    Returns:
        The tokens, None when the command is blank so that the field is omitted.
    """
    if not command or not command.strip():
        return None
    return [
        typing.cast(str, substitute_env(token.replace('"', ""), environ))
        for token in _SPLIT_IN_SPACES.findall(command)
    ]


def normalize_mount_path(path: str, environ: typing.Mapping[str, str]) -> str:
    """Normalize a mount path so that equivalent paths compare equal.

    Args:
        path: The declared mount path.
        environ: The environment values.

    Returns:
        The substituted path with ".", ".." and trailing slashes resolved.
    """
    return posixpath.normpath(typing.cast(str, substitute_env(path, environ)))


def parse_node_selector(
    selectors: typing.Optional[str], environ: typing.Mapping[str, str]
) -> typing.Dict[str, str]:
    """Parse a "key1=value1,key2=value2" node selector.

    Malformed pairs are dropped with a warning.

    Args:
        selectors: The node selector string.
        environ: The environment values substituted in the values.

    Returns:
        The node selector map.
    """
    if not selectors:
        return {}
    node_selector = {}
    for selector in selectors.split(","):
        parts = selector.split("=")
        if len(parts) == 2 and parts[0] and parts[1]:
            node_selector[parts[0]] = typing.cast(str, substitute_env(parts[1], environ))
        else:
            logger.warning(
                "Ignoring selector '%s'. Selectors must be in the format "
                "'label1=value1,label2=value2'.",
                selector,
            )
    return node_selector


def _get_resources_map(
    memory: str, cpu: str, environ: typing.Mapping[str, str]
) -> typing.Dict[str, str]:
    """Build a resource request or limit map.

    Args:
        memory: The memory quantity.
        cpu: The cpu quantity.
        environ: The environment values.

    Returns:
        The quantities that are not blank after substitution.
    """
    resources = {}
    actual_memory = substitute_env(memory, environ, default="")
    actual_cpu = substitute_env(cpu, environ, default="")
    if actual_memory and actual_memory.strip():
        resources["memory"] = actual_memory.strip()
    if actual_cpu and actual_cpu.strip():
        resources["cpu"] = actual_cpu.strip()
    return resources


class PodSpecBuilder:
    """Builds agent pod manifests for a cloud."""

    def __init__(
        self, cloud: state.CloudConfig, environ: typing.Optional[typing.Mapping[str, str]] = None
    ):
        """Initialize the builder.

        Args:
            cloud: The cloud configuration.
            environ: The values ${NAME} placeholders resolve to, the process environment
                by default.
        """
        self.cloud = cloud
        self.environ = os.environ if environ is None else environ

    def _sub(self, value: typing.Optional[str]) -> typing.Optional[str]:
        return substitute_env(value, self.environ)

    def _get_default_env(
        self, identity: AgentIdentity, container_template: state.ContainerTemplate
    ) -> typing.Dict[str, str]:
        """Build the environment every agent container gets.

        Args:
            identity: The agent identity.
            container_template: The container the variables are for.

        Raises:
            PodSpecError: if no Jenkins URL is known.

        Returns:
            The default variables.
        """
        url = self.cloud.jenkins_url or identity.location_url
        if not url:
            raise PodSpecError("Jenkins URL is not set while computing JNLP url")
        env = {
            "JENKINS_SECRET": identity.secret,
            "JENKINS_NAME": identity.name,
            "JENKINS_LOCATION_URL": identity.location_url or "",
            "JENKINS_URL": url,
        }
        if self.cloud.jenkins_tunnel:
            env["JENKINS_TUNNEL"] = self.cloud.jenkins_tunnel
        url = url if url.endswith("/") else f"{url}/"
        env["JENKINS_JNLP_URL"] = f"{url}{identity.computer_url}slave-agent.jnlp"
        # Containers may run as an arbitrary user without a home directory.
        env["HOME"] = typing.cast(str, self._sub(container_template.working_dir))
        return env

    def _get_env(
        self,
        identity: AgentIdentity,
        container_template: state.ContainerTemplate,
        global_env_vars: typing.Sequence[state.TemplateEnvVar],
    ) -> typing.List[typing.Dict[str, typing.Any]]:
        """Build the container environment.

        Template, container and default variables are applied in that order; when a name is
        repeated the last value wins and keeps the position of the first occurrence.

        Args:
            identity: The agent identity.
            container_template: The container template.
            global_env_vars: The template level variables.

        Returns:
            The container env entries.
        """
        env: typing.Dict[str, typing.Dict[str, typing.Any]] = {}
        for env_var in (*global_env_vars, *container_template.env_vars):
            env[env_var.key] = env_var.build_env_var()
        for key, value in self._get_default_env(identity, container_template).items():
            env[key] = {"name": key, "value": value}
        return list(env.values())

    def _get_liveness_probe(
        self, container_template: state.ContainerTemplate
    ) -> typing.Optional[typing.Dict[str, typing.Any]]:
        probe = container_template.liveness_probe
        if probe is None:
            return None
        command = parse_command(probe.exec_args, self.environ)
        if command is None:
            return None
        return {
            "exec": {"command": command},
            "initialDelaySeconds": probe.initial_delay_seconds,
            "timeoutSeconds": probe.timeout_seconds,
            "failureThreshold": probe.failure_threshold,
            "periodSeconds": probe.period_seconds,
            "successThreshold": probe.success_threshold,
        }

    def _create_container(
        self,
        identity: AgentIdentity,
        container_template: state.ContainerTemplate,
        global_env_vars: typing.Sequence[state.TemplateEnvVar],
        volume_mounts: typing.Sequence[typing.Dict[str, typing.Any]],
    ) -> typing.Dict[str, typing.Any]:
        """Build one container of the pod.

        Args:
            identity: The agent identity.
            container_template: The container template.
            global_env_vars: The template level variables.
            volume_mounts: The mounts of the declared volumes.

        Returns:
            The container entry.
        """
        args = None
        if container_template.args:
            args = parse_command(
                container_template.args.replace(_JNLPMAC_REF, identity.secret).replace(
                    _NAME_REF, identity.name
                ),
                self.environ,
            )

        working_dir = self._sub(container_template.working_dir)
        mounts = list(volume_mounts)
        if working_dir and not any(mount["mountPath"] == working_dir for mount in mounts):
            mounts.append(
                {"name": WORKSPACE_VOLUME_NAME, "mountPath": working_dir, "readOnly": False}
            )

        container: typing.Dict[str, typing.Any] = {
            "name": self._sub(container_template.name),
            "image": self._sub(container_template.image),
            "imagePullPolicy": (
                "Always" if container_template.always_pull_image else "IfNotPresent"
            ),
            "securityContext": {"privileged": container_template.privileged},
            "workingDir": working_dir,
            "volumeMounts": mounts,
            "env": self._get_env(identity, container_template, global_env_vars),
            "ports": [port.to_port() for port in container_template.ports],
            "tty": container_template.tty_enabled,
            "resources": {
                "requests": _get_resources_map(
                    container_template.resource_request_memory,
                    container_template.resource_request_cpu,
                    self.environ,
                ),
                "limits": _get_resources_map(
                    container_template.resource_limit_memory,
                    container_template.resource_limit_cpu,
                    self.environ,
                ),
            },
        }
        if (command := parse_command(container_template.command, self.environ)) is not None:
            container["command"] = command
        if args is not None:
            container["args"] = args
        if (liveness_probe := self._get_liveness_probe(container_template)) is not None:
            container["livenessProbe"] = liveness_probe
        return container

    def _get_volumes(
        self, template: state.AgentTemplate
    ) -> typing.Tuple[Entries, Entries]:
        """Build the pod volumes and the mounts shared by every container.

        Args:
            template: The agent template.

        Returns:
            The volumes, including the workspace volume, and the volume mounts.
        """
        volumes = []
        volume_mounts: typing.Dict[str, typing.Dict[str, typing.Any]] = {}
        for volume in template.volumes:
            mount_path = normalize_mount_path(volume.mount_path, self.environ)
            if mount_path in volume_mounts:
                logger.debug("Skipping volume %s, %s is already mounted", volume, mount_path)
                continue
            volume_name = f"volume-{len(volume_mounts)}"
            volume_mounts[mount_path] = {
                "name": volume_name,
                "mountPath": mount_path,
                "readOnly": False,
            }
            volumes.append(volume.build_volume(volume_name))

        if template.workspace_volume is not None:
            volumes.append(template.workspace_volume.build_volume(WORKSPACE_VOLUME_NAME))
        else:
            # An empty volume shares the workspace across the pod.
            volumes.append({"name": WORKSPACE_VOLUME_NAME, "emptyDir": {}})
        return volumes, list(volume_mounts.values())

    def build(self, template: state.AgentTemplate, identity: AgentIdentity) -> Manifest:
        """Build the pod manifest of an agent.

        Args:
            template: The agent template.
            identity: The agent identity.

        Raises:
            PodSpecError: if no Jenkins URL is known.

        Returns:
            The pod manifest.
        """
        volumes, volume_mounts = self._get_volumes(template)

        containers: typing.Dict[str, typing.Dict[str, typing.Any]] = {}
        for container_template in template.containers:
            if container_template.name in containers:
                logger.warning(
                    "Container %s declared twice in template %s, keeping the last one",
                    container_template.name,
                    template.name,
                )
            containers[container_template.name] = self._create_container(
                identity, container_template, template.env_vars, volume_mounts
            )
        if JNLP_NAME not in containers:
            jnlp_template = state.ContainerTemplate(
                name=JNLP_NAME, image=self.cloud.default_agent_image, args=DEFAULT_JNLP_ARGUMENTS
            )
            containers[JNLP_NAME] = self._create_container(
                identity, jnlp_template, template.env_vars, volume_mounts
            )

        spec: typing.Dict[str, typing.Any] = {
            "volumes": volumes,
            "imagePullSecrets": [{"name": secret} for secret in template.image_pull_secrets],
            "containers": list(containers.values()),
            "nodeSelector": parse_node_selector(template.node_selector, self.environ),
            "restartPolicy": "Never",
        }
        if service_account := self._sub(template.service_account):
            spec["serviceAccountName"] = service_account

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": self._sub(identity.name),
                "labels": labels.get_labels_map(template.label_set),
                "annotations": {
                    key: self._sub(value) for key, value in template.annotations.items()
                },
            },
            "spec": spec,
        }
