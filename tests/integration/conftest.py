# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Fixtures for Kubernetes agent provisioner integration tests."""

import logging
import secrets
import typing
from pathlib import Path

import kubernetes
import pytest

import kube
import state

from .helpers import InMemoryInventory

logger = logging.getLogger(__name__)


@pytest.fixture(scope="module", name="kube_config")
def kube_config_fixture(request: pytest.FixtureRequest) -> Path:
    """The kubernetes config file path, the tests are skipped when it does not exist."""
    kube_config = Path(request.config.getoption("--kube-config")).expanduser()
    if not kube_config.exists():
        pytest.skip(f"No kubernetes config at {kube_config}")
    return kube_config


@pytest.fixture(scope="module", name="kube_core_client")
def kube_core_client_fixture(kube_config: Path) -> kubernetes.client.CoreV1Api:
    """The Kubernetes core API of the test cluster."""
    configuration = kubernetes.client.Configuration()
    kubernetes.config.load_kube_config(
        config_file=str(kube_config), client_configuration=configuration
    )
    return kubernetes.client.CoreV1Api(kubernetes.client.ApiClient(configuration))


@pytest.fixture(scope="module", name="namespace")
def namespace_fixture(
    kube_core_client: kubernetes.client.CoreV1Api,
) -> typing.Generator[str, None, None]:
    """A namespace removed at the end of the tests."""
    name = f"agent-provisioner-{secrets.token_hex(4)}"
    kube_core_client.create_namespace(
        kubernetes.client.V1Namespace(metadata=kubernetes.client.V1ObjectMeta(name=name))
    )
    logger.info("Created namespace %s", name)

    yield name

    kube_core_client.delete_namespace(name=name)


@pytest.fixture(scope="module", name="cloud_config")
def cloud_config_fixture(request: pytest.FixtureRequest, namespace: str) -> state.CloudConfig:
    """A cloud whose runtime container only sleeps."""
    agent_image = request.config.getoption("--agent-image")
    sleeper = state.ContainerTemplate(
        name="jnlp", image=agent_image, command="sleep", args="3600", working_dir="/tmp"
    )
    template = state.AgentTemplate(
        name="Integration Agent",
        label="integration",
        containers=(sleeper,),
        instance_cap=1,
        slave_connect_timeout=120,
    )
    return state.CloudConfig(
        name="integration",
        namespace=namespace,
        jenkins_url="http://jenkins.invalid:8080",
        container_cap=2,
        templates=(template,),
    )


@pytest.fixture(scope="module", name="cluster_client")
def cluster_client_fixture(
    kube_core_client: kubernetes.client.CoreV1Api, cloud_config: state.CloudConfig
) -> kube.ClusterClient:
    """The cluster client used by the provisioner."""
    return kube.ClusterClient(kube_core_client, namespace=cloud_config.namespace)


@pytest.fixture(scope="function", name="inventory")
def inventory_fixture() -> InMemoryInventory:
    """An inventory whose agents are online once registered."""
    return InMemoryInventory(root_url="http://jenkins.invalid:8080/")
