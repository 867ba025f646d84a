# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Helpers for Kubernetes agent provisioner integration tests."""

import secrets
import time
import typing

import metadata


def wait_for(
    func: typing.Callable[[], typing.Any],
    timeout: int = 300,
    check_interval: int = 5,
) -> typing.Any:
    """Wait for function execution to become truthy.

    Args:
        func: A callback function to wait to return a truthy value.
        timeout: Time in seconds to wait for function result to become truthy.
        check_interval: Time in seconds to wait between ready checks.

    Raises:
        TimeoutError: if the callback function did not return a truthy value within timeout.

    Returns:
        The result of the function if any.
    """
    deadline = time.time() + timeout
    while time.time() < deadline:
        if result := func():
            return result
        time.sleep(check_interval)

    # final check before raising TimeoutError.
    if result := func():
        return result
    raise TimeoutError()


class InMemoryComputer:
    """A computer that is online as soon as it exists."""

    def __init__(self, name: str):
        """Initialize the computer.

        Args:
            name: The node name.
        """
        self.name = name
        self.secret = secrets.token_hex(32)
        self.url = f"computer/{name}/"
        self.online = True
        self.idle = True

    def is_online(self) -> bool:
        """Whether the agent is connected."""
        return self.online

    def is_idle(self) -> bool:
        """Whether no task runs on the agent."""
        return self.idle

    def disconnect(self, cause: str) -> None:
        """Disconnect the agent.

        Args:
            cause: The offline cause.
        """
        del cause
        self.online = False


class InMemoryInventory:
    """A node inventory kept in memory."""

    def __init__(self, root_url: str):
        """Initialize the inventory.

        Args:
            root_url: The scheduler root URL.
        """
        self.root_url = root_url
        self.computers: typing.Dict[str, InMemoryComputer] = {}

    def add_node(self, agent: metadata.Agent) -> None:
        """Add an agent node.

        Args:
            agent: The agent.
        """
        self.computers[agent.name] = InMemoryComputer(agent.name)

    def remove_node(self, name: str) -> None:
        """Remove an agent node.

        Args:
            name: The node name.
        """
        self.computers.pop(name, None)

    def get_computer(self, name: str) -> typing.Optional[InMemoryComputer]:
        """Look up the computer of a node.

        Args:
            name: The node name.

        Returns:
            The computer, None if the node does not exist.
        """
        return self.computers.get(name)
