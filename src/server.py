# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Functions to interact with jenkins server."""

import json
import logging
import typing
from xml.etree import ElementTree  # nosec

import requests
from pydantic import BaseModel

import metadata

REQUEST_TIMEOUT = 30
OFFLINE_CAUSE = "offline"

logger = logging.getLogger(__name__)


class Credentials(BaseModel):
    """The credentials used to manage nodes on the Jenkins server.

    Attrs:
        address: The Jenkins server address.
        username: The Jenkins user.
        token: The Jenkins API token of the user.
    """

    address: str
    username: str
    token: str


class ServerBaseError(Exception):
    """Represents errors with interacting with Jenkins server."""


class InventoryError(ServerBaseError):
    """Represents an error reading or changing the Jenkins node inventory."""


class Computer(typing.Protocol):
    """The live side of an agent node in the scheduler."""

    @property
    def name(self) -> str:
        """The node name."""

    @property
    def secret(self) -> str:
        """The secret the agent uses to connect."""

    @property
    def url(self) -> str:
        """The computer URL relative to the scheduler root, ending with a slash."""

    def is_online(self) -> bool:
        """Whether the agent is connected."""

    def is_idle(self) -> bool:
        """Whether no task runs on the agent."""

    def disconnect(self, cause: str) -> None:
        """Disconnect the agent and mark it offline."""


class Inventory(typing.Protocol):
    """The scheduler node inventory."""

    @property
    def root_url(self) -> str:
        """The scheduler root URL."""

    def add_node(self, agent: metadata.Agent) -> None:
        """Add an agent node."""

    def remove_node(self, name: str) -> None:
        """Remove an agent node."""

    def get_computer(self, name: str) -> typing.Optional[Computer]:
        """Look up the computer of a node, None if the node does not exist."""


class JenkinsComputer:
    """A Jenkins computer reached through the Jenkins HTTP API."""

    def __init__(self, inventory: "JenkinsInventory", name: str):
        """Initialize the computer.

        Args:
            inventory: The inventory the computer belongs to.
            name: The node name.
        """
        self._inventory = inventory
        self._name = name

    @property
    def name(self) -> str:
        """The node name."""
        return self._name

    @property
    def url(self) -> str:
        """The computer URL relative to the Jenkins root URL."""
        return f"computer/{self._name}/"

    @property
    def secret(self) -> str:
        """The JNLP secret of the agent.

        Raises:
            InventoryError: if the secret is missing from the JNLP file.
        """
        response = self._inventory.request("GET", f"{self.url}slave-agent.jnlp")
        try:
            root = ElementTree.fromstring(response.content)  # nosec
        except ElementTree.ParseError as exc:
            raise InventoryError(f"Invalid JNLP file for agent {self._name}") from exc
        argument = root.find("./application-desc/argument")
        if argument is None or not argument.text:
            raise InventoryError(f"No secret in JNLP file for agent {self._name}")
        return argument.text

    def _get_status(self) -> typing.Dict[str, typing.Any]:
        """Get the computer status.

        Raises:
            InventoryError: if the status is not valid JSON.

        Returns:
            The decoded computer status.
        """
        response = self._inventory.request("GET", f"{self.url}api/json")
        try:
            return response.json()
        except ValueError as exc:
            logger.error("Invalid status of Jenkins computer %s, %s", self._name, exc)
            raise InventoryError(f"Invalid status of Jenkins computer {self._name}.") from exc

    def is_online(self) -> bool:
        """Whether the agent is connected.

        Returns:
            True if the computer reports online.
        """
        return not self._get_status().get("offline", True)

    def is_idle(self) -> bool:
        """Whether no task runs on the agent.

        Returns:
            True if the computer reports idle.
        """
        return bool(self._get_status().get("idle", True))

    def disconnect(self, cause: str) -> None:
        """Disconnect the agent.

        Args:
            cause: The offline cause shown in Jenkins.
        """
        self._inventory.request(
            "POST", f"{self.url}doDisconnect", params={"offlineMessage": cause}
        )


class JenkinsInventory:
    """The Jenkins node inventory."""

    def __init__(
        self, credentials: Credentials, session: typing.Optional[requests.Session] = None
    ):
        """Initialize the inventory.

        Args:
            credentials: Credentials of a Jenkins user allowed to manage nodes.
            session: The HTTP session to use.
        """
        self.credentials = credentials
        self.session = session or requests.Session()
        self.session.auth = (credentials.username, credentials.token)

    @property
    def root_url(self) -> str:
        """The Jenkins root URL, ending with a slash."""
        address = self.credentials.address
        return address if address.endswith("/") else f"{address}/"

    def request(self, method: str, path: str, **kwargs: typing.Any) -> requests.Response:
        """Send a request to Jenkins.

        Args:
            method: The HTTP method.
            path: The path relative to the Jenkins root URL.
            kwargs: Extra arguments passed to requests.

        Raises:
            InventoryError: If the request failed.

        Returns:
            The successful response.
        """
        try:
            res = self.session.request(
                method, f"{self.root_url}{path}", timeout=REQUEST_TIMEOUT, **kwargs
            )
            res.raise_for_status()
        except (requests.HTTPError, requests.Timeout, requests.ConnectionError) as exc:
            logger.error("Failed to %s %s on Jenkins, %s", method, path, exc)
            raise InventoryError(f"Failed to {method} {path} on Jenkins.") from exc
        return res

    def add_node(self, agent: metadata.Agent) -> None:
        """Register an agent node.

        Args:
            agent: The agent to register.
        """
        node = agent.get_jenkins_node_dict()
        logger.debug("Adding Jenkins node: %s", node)
        self.request(
            "POST",
            "computer/doCreateItem",
            params={"name": agent.name, "type": node["type"]},
            data={"json": json.dumps(node)},
        )

    def remove_node(self, name: str) -> None:
        """Remove an agent node.

        Args:
            name: The node name.
        """
        logger.debug("Removing Jenkins node: %s", name)
        self.request("POST", f"computer/{name}/doDelete")

    def get_computer(self, name: str) -> typing.Optional[JenkinsComputer]:
        """Look up the computer of a node.

        Args:
            name: The node name.

        Raises:
            InventoryError: If the lookup failed for another reason than a missing node.

        Returns:
            The computer, None if the node does not exist.
        """
        try:
            res = self.session.get(
                f"{self.root_url}computer/{name}/api/json", timeout=REQUEST_TIMEOUT
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.error("Failed to look up Jenkins node %s, %s", name, exc)
            raise InventoryError(f"Failed to look up Jenkins node {name}.") from exc
        if res.status_code == 404:
            return None
        try:
            res.raise_for_status()
        except requests.HTTPError as exc:
            logger.error("Failed to look up Jenkins node %s, %s", name, exc)
            raise InventoryError(f"Failed to look up Jenkins node {name}.") from exc
        return JenkinsComputer(self, name)
