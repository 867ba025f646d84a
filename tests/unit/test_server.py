# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Kubernetes agent provisioner server module tests."""

import json
import secrets
import typing
import unittest.mock

import pytest
import requests

import metadata
import server


@pytest.fixture(scope="function", name="mock_session")
def mock_session_fixture():
    """A mock HTTP session answering successfully."""
    mock_session = unittest.mock.MagicMock(spec=requests.Session)
    mock_response = unittest.mock.MagicMock(spec=requests.Response)
    mock_response.status_code = 200
    mock_session.request.return_value = mock_response
    mock_session.get.return_value = mock_response
    return mock_session


@pytest.fixture(scope="function", name="inventory")
def inventory_fixture(mock_session: unittest.mock.MagicMock):
    """A Jenkins inventory over the mock session."""
    credentials = server.Credentials(
        address="http://jenkins.test:8080", username="admin", token=secrets.token_hex(16)
    )
    return server.JenkinsInventory(credentials, session=mock_session)


def test_root_url(inventory: server.JenkinsInventory):
    """
    arrange: given credentials with an address without a trailing slash.
    act: when root_url is accessed.
    assert: the address is returned with a trailing slash.
    """
    assert inventory.root_url == "http://jenkins.test:8080/"


def test_add_node(
    inventory: server.JenkinsInventory,
    mock_session: unittest.mock.MagicMock,
    new_agent: metadata.Agent,
):
    """
    arrange: given an agent.
    act: when add_node is called.
    assert: the node is created through the Jenkins API.
    """
    inventory.add_node(new_agent)

    mock_session.request.assert_called_once_with(
        "POST",
        "http://jenkins.test:8080/computer/doCreateItem",
        timeout=server.REQUEST_TIMEOUT,
        params={"name": "java-b2c4d", "type": "hudson.slaves.DumbSlave"},
        data={"json": json.dumps(new_agent.get_jenkins_node_dict())},
    )


def test_remove_node(inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock):
    """
    arrange: given a registered node.
    act: when remove_node is called.
    assert: the node is deleted through the Jenkins API.
    """
    inventory.remove_node("java-b2c4d")

    mock_session.request.assert_called_once_with(
        "POST",
        "http://jenkins.test:8080/computer/java-b2c4d/doDelete",
        timeout=server.REQUEST_TIMEOUT,
    )


@pytest.mark.parametrize(
    "exception",
    [
        pytest.param(requests.HTTPError, id="HTTPError"),
        pytest.param(requests.Timeout, id="TimeoutError"),
        pytest.param(requests.ConnectionError, id="ConnectionError"),
    ],
)
def test_request_error(
    inventory: server.JenkinsInventory,
    mock_session: unittest.mock.MagicMock,
    raise_exception: typing.Callable,
    exception: Exception,
):
    """
    arrange: given a session that raises an exception.
    act: when a node is removed.
    assert: InventoryError is raised.
    """
    mock_session.request.side_effect = lambda *_args, **_kwargs: raise_exception(exception)

    with pytest.raises(server.InventoryError):
        inventory.remove_node("java-b2c4d")


def test_get_computer_not_found(
    inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock
):
    """
    arrange: given a Jenkins server without the node.
    act: when get_computer is called.
    assert: None is returned.
    """
    mock_session.get.return_value.status_code = 404

    assert inventory.get_computer("java-b2c4d") is None


def test_get_computer_error(
    inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock
):
    """
    arrange: given a Jenkins server answering with a server error.
    act: when get_computer is called.
    assert: InventoryError is raised.
    """
    mock_session.get.return_value.status_code = 500
    mock_session.get.return_value.raise_for_status.side_effect = requests.HTTPError

    with pytest.raises(server.InventoryError):
        inventory.get_computer("java-b2c4d")


@pytest.mark.parametrize(
    "status, expected_online, expected_idle",
    [
        pytest.param({"offline": False, "idle": True}, True, True, id="online idle"),
        pytest.param({"offline": False, "idle": False}, True, False, id="online busy"),
        pytest.param({"offline": True, "idle": True}, False, True, id="offline"),
    ],
)
def test_computer_status(
    inventory: server.JenkinsInventory,
    mock_session: unittest.mock.MagicMock,
    status: typing.Dict[str, bool],
    expected_online: bool,
    expected_idle: bool,
):
    """
    arrange: given a Jenkins computer status.
    act: when the computer status is queried.
    assert: the online and idle flags are reported.
    """
    mock_session.request.return_value.json.return_value = status

    computer = inventory.get_computer("java-b2c4d")

    assert computer.is_online() == expected_online
    assert computer.is_idle() == expected_idle


def test_computer_secret(
    inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock
):
    """
    arrange: given the JNLP file of an agent.
    act: when the computer secret is accessed.
    assert: the first application argument is returned.
    """
    secret = secrets.token_hex(16)
    mock_session.request.return_value.content = (
        "<jnlp><application-desc>"
        f"<argument>{secret}</argument><argument>java-b2c4d</argument>"
        "</application-desc></jnlp>"
    ).encode("utf-8")

    computer = inventory.get_computer("java-b2c4d")

    assert computer.secret == secret
    assert computer.url == "computer/java-b2c4d/"
    mock_session.request.assert_called_once_with(
        "GET",
        "http://jenkins.test:8080/computer/java-b2c4d/slave-agent.jnlp",
        timeout=server.REQUEST_TIMEOUT,
    )


@pytest.mark.parametrize(
    "content",
    [
        pytest.param(b"not xml", id="invalid"),
        pytest.param(b"<jnlp><application-desc/></jnlp>", id="no argument"),
    ],
)
def test_computer_secret_missing(
    inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock, content: bytes
):
    """
    arrange: given an invalid JNLP file.
    act: when the computer secret is accessed.
    assert: InventoryError is raised.
    """
    mock_session.request.return_value.content = content

    computer = inventory.get_computer("java-b2c4d")

    with pytest.raises(server.InventoryError):
        _ = computer.secret


def test_computer_disconnect(
    inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock
):
    """
    arrange: given a connected computer.
    act: when the computer is disconnected.
    assert: the disconnection is requested with the offline cause.
    """
    computer = inventory.get_computer("java-b2c4d")

    computer.disconnect(server.OFFLINE_CAUSE)

    mock_session.request.assert_called_once_with(
        "POST",
        "http://jenkins.test:8080/computer/java-b2c4d/doDisconnect",
        timeout=server.REQUEST_TIMEOUT,
        params={"offlineMessage": server.OFFLINE_CAUSE},
    )


def test_computer_status_invalid(
    inventory: server.JenkinsInventory, mock_session: unittest.mock.MagicMock
):
    """
    arrange: given a Jenkins server answering the computer status with an HTML page.
    act: when the computer status is queried.
    assert: InventoryError is raised.
    """
    mock_session.request.return_value.json.side_effect = requests.exceptions.JSONDecodeError(
        "Expecting value", "<html></html>", 0
    )

    computer = inventory.get_computer("java-b2c4d")

    with pytest.raises(server.InventoryError):
        computer.is_online()
