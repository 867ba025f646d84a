# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Fixtures for Kubernetes agent provisioner tests."""

import pytest


def pytest_addoption(parser: pytest.Parser):
    """Parse additional pytest options.

    Args:
        parser: pytest command line parser.
    """
    # The path to kubernetes config.
    parser.addoption("--kube-config", action="store", default="~/.kube/config")
    # The image of the containers started by the integration tests.
    parser.addoption("--agent-image", action="store", default="busybox:1.36")
