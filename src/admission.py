# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""The capacity admission module."""

import logging
import typing

import kube
import labels
import state

logger = logging.getLogger(__name__)


def check_capacity(
    cloud: state.CloudConfig,
    template: state.AgentTemplate,
    global_count: typing.Optional[int],
    template_count: typing.Optional[int],
) -> bool:
    """Decide whether one more agent of a template may be created.

    Args:
        cloud: The cloud configuration holding the global container cap.
        template: The template holding the instance cap.
        global_count: Agents managed in the namespace, None if unknown.
        template_count: Agents of the template in the namespace, None if unknown.

    Returns:
        True if the agent may be created.
    """
    if cloud.container_cap == 0 or template.instance_cap == 0:
        return False
    if cloud.container_cap is not None:
        if global_count is None:
            logger.warning("Unknown number of agents, not provisioning %s", template.display_name)
            return False
        if global_count >= cloud.container_cap:
            logger.warning(
                "Total container cap of %s reached, not provisioning: %s running or errored",
                cloud.container_cap,
                global_count,
            )
            return False
    if template.instance_cap is not None and template_count is not None:
        if template_count >= template.instance_cap:
            logger.warning(
                "Template instance cap of %s reached for template %s, not provisioning: "
                "%s running or errored",
                template.instance_cap,
                template.name,
                template_count,
            )
            return False
    return True


def _count_pods(
    client: kube.ClusterClient, namespace: str, pod_labels: typing.Mapping[str, str]
) -> typing.Optional[int]:
    pods = client.list_pods(namespace, pod_labels)
    return None if pods is None else len(pods)


def admit(
    client: kube.ClusterClient,
    cloud: state.CloudConfig,
    template: state.AgentTemplate,
    pending_global: int = 0,
    pending_template: int = 0,
) -> bool:
    """Count the agents in the cluster and decide whether one more may be created.

    A zero cap denies without contacting the cluster; unlimited caps skip their query.

    Args:
        client: The cluster client.
        cloud: The cloud configuration.
        template: The template to provision.
        pending_global: Accepted agents whose pod is not created yet.
        pending_template: Accepted agents of the template whose pod is not created yet.

    Returns:
        True if the agent may be created.
    """
    if cloud.container_cap == 0 or template.instance_cap == 0:
        logger.info("Provisioning disabled by a zero cap for %s", template.display_name)
        return False
    namespace = template.namespace or cloud.namespace or client.namespace

    global_count = None
    if cloud.container_cap is not None:
        global_count = _count_pods(client, namespace, labels.DEFAULT_POD_LABELS)
        if global_count is not None:
            global_count += pending_global
    template_count = None
    if template.instance_cap is not None:
        template_count = _count_pods(client, namespace, labels.get_labels_map(template.label_set))
        if template_count is not None:
            template_count += pending_template
    logger.debug(
        "Agents in namespace %s: %s managed, %s of template %s",
        namespace,
        global_count,
        template_count,
        template.name,
    )
    return check_capacity(cloud, template, global_count, template_count)
