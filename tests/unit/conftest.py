# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Fixtures for Kubernetes agent provisioner unit tests."""

import secrets
import typing
import unittest.mock

import kubernetes
import pytest

import agent
import kube
import metadata
import podspec
import provisioner
import server
import state


@pytest.fixture(scope="function", name="no_poll_delay")
def no_poll_delay_fixture(monkeypatch: pytest.MonkeyPatch):
    """Remove the wait between readiness polls."""
    monkeypatch.setattr(provisioner, "SCHEDULE_POLL_INTERVAL", 0)
    monkeypatch.setattr(provisioner, "CONNECT_POLL_INTERVAL", 0)


@pytest.fixture(scope="function", name="container_template")
def container_template_fixture():
    """A build container template."""
    return state.ContainerTemplate(
        name="maven",
        image="maven:3-jdk-11",
        command="/bin/sh -c",
        args="cat",
        tty_enabled=True,
        resource_request_memory="512Mi",
        resource_limit_cpu="1",
    )


@pytest.fixture(scope="function", name="template")
def template_fixture(container_template: state.ContainerTemplate):
    """An agent template labeled java."""
    return state.AgentTemplate(
        name="java", label="java", containers=(container_template,), instance_cap=2
    )


@pytest.fixture(scope="function", name="cloud_config")
def cloud_config_fixture(template: state.AgentTemplate):
    """A cloud configuration with a single template."""
    return state.CloudConfig(
        name="kubernetes",
        server_url_not_validated="https://kubernetes.test:6443",
        namespace="jenkins",
        jenkins_url="http://jenkins.test:8080",
        container_cap=10,
        templates=(template,),
    )


@pytest.fixture(scope="function", name="identity")
def identity_fixture():
    """The runtime identity of an agent."""
    return podspec.AgentIdentity(
        name="java-b2c4d",
        secret=secrets.token_hex(16),
        computer_url="computer/java-b2c4d/",
        location_url="http://jenkins.test:8080/",
    )


@pytest.fixture(scope="function", name="builder")
def builder_fixture(cloud_config: state.CloudConfig):
    """A pod specification builder with an empty environment."""
    return podspec.PodSpecBuilder(cloud_config, environ={})


@pytest.fixture(scope="function", name="mock_client")
def mock_client_fixture():
    """A mock cluster client with an empty cluster."""
    mock_client = unittest.mock.MagicMock(spec=kube.ClusterClient)
    mock_client.namespace = "default"
    mock_client.list_pods.return_value = []
    mock_client.delete_pod.return_value = True
    mock_client.tail_log.return_value = "agent log line"
    return mock_client


@pytest.fixture(scope="function", name="mock_computer")
def mock_computer_fixture():
    """A mock computer of a connected idle agent."""
    mock_computer = unittest.mock.MagicMock(spec=server.JenkinsComputer)
    mock_computer.secret = secrets.token_hex(16)
    mock_computer.url = "computer/java-b2c4d/"
    mock_computer.is_online.return_value = True
    mock_computer.is_idle.return_value = True
    return mock_computer


@pytest.fixture(scope="function", name="mock_inventory")
def mock_inventory_fixture(mock_computer: unittest.mock.MagicMock):
    """A mock Jenkins inventory holding the mock computer."""
    mock_inventory = unittest.mock.MagicMock(spec=server.JenkinsInventory)
    mock_inventory.root_url = "http://jenkins.test:8080/"
    mock_inventory.get_computer.return_value = mock_computer
    return mock_inventory


@pytest.fixture(scope="function", name="lifecycle")
def lifecycle_fixture(
    cloud_config: state.CloudConfig,
    mock_client: unittest.mock.MagicMock,
    mock_inventory: unittest.mock.MagicMock,
):
    """A lifecycle manager over the mock cluster and inventory."""
    return agent.LifecycleManager(cloud_config, mock_client, mock_inventory)


@pytest.fixture(scope="function", name="new_agent")
def new_agent_fixture(template: state.AgentTemplate, cloud_config: state.CloudConfig):
    """A requested agent of the template."""
    return metadata.Agent.from_template(
        template, cloud_config.retention_timeout, name="java-b2c4d"
    )


@pytest.fixture(scope="function", name="get_pod")
def get_pod_fixture():
    """Factory of pods with a given phase and container states."""

    def get_pod(
        phase: str,
        ready: bool = True,
        exit_codes: typing.Optional[typing.Dict[str, int]] = None,
        containers: typing.Sequence[str] = ("maven", "jnlp"),
    ) -> kubernetes.client.V1Pod:
        """Create a pod.

        Args:
            phase: The pod phase.
            ready: Whether the containers are ready.
            exit_codes: Exit codes of the terminated containers by name.
            containers: The container names.

        Returns:
            The pod.
        """
        exit_codes = exit_codes or {}
        statuses = []
        for name in containers:
            container_state = kubernetes.client.V1ContainerState()
            if name in exit_codes:
                container_state = kubernetes.client.V1ContainerState(
                    terminated=kubernetes.client.V1ContainerStateTerminated(
                        exit_code=exit_codes[name]
                    )
                )
            statuses.append(
                kubernetes.client.V1ContainerStatus(
                    image="image",
                    image_id="image-id",
                    name=name,
                    ready=ready and name not in exit_codes,
                    restart_count=0,
                    state=container_state,
                )
            )
        return kubernetes.client.V1Pod(
            metadata=kubernetes.client.V1ObjectMeta(name="java-b2c4d"),
            status=kubernetes.client.V1PodStatus(phase=phase, container_statuses=statuses),
        )

    return get_pod


@pytest.fixture(scope="function", name="raise_exception")
def raise_exception_fixture():
    """The mock function for patching."""

    def raise_exception(exception: Exception):
        """Raise exception function for monkeypatching.

        Args:
            exception: The exception to raise.

        Raises:
            exception: .
        """
        raise exception

    return raise_exception
