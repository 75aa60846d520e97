"""Fixtures for integration tests using testcontainers."""

import time

import docker
import pytest
import requests
from docker.errors import DockerException
from testcontainers.core.container import DockerContainer
from testcontainers.core.waiting_utils import wait_for_logs

SOLACE_IMAGE = "solace/solace-pubsub-standard:latest"
SMF_PORT = 55555
SEMP_PORT = 8080
ADMIN_AUTH = ("admin", "admin")
MSG_VPN = "default"
QUEUE_NAME = "pqdemo-it-queue"


def docker_available() -> bool:
    try:
        docker.from_env().ping()
    except DockerException:
        return False
    return True


@pytest.fixture(scope="module")
def solace_container():
    """Start a PubSub+ standard broker."""
    if not docker_available():
        pytest.skip("Docker is not reachable")
    with (
        DockerContainer(SOLACE_IMAGE)
        .with_env("username_admin_globalaccesslevel", "admin")
        .with_env("username_admin_password", "admin")
        .with_env("system_scaling_maxconnectioncount", "100")
        .with_kwargs(shm_size="1g")
        .with_exposed_ports(SMF_PORT, SEMP_PORT)
    ) as broker:
        wait_for_logs(broker, "Primary Virtual Router is now active", timeout=180)
        time.sleep(5)  # SEMP and guaranteed messaging come up after the router
        yield broker


@pytest.fixture(scope="module")
def broker_host(solace_container):
    host = solace_container.get_container_host_ip()
    port = solace_container.get_exposed_port(SMF_PORT)
    return f"tcp://{host}:{port}"


@pytest.fixture(scope="module")
def semp_url(solace_container):
    host = solace_container.get_container_host_ip()
    port = solace_container.get_exposed_port(SEMP_PORT)
    return f"http://{host}:{port}/SEMP/v2/config/msgVpns/{MSG_VPN}"


@pytest.fixture(scope="module")
def partitioned_queue(semp_url):
    """Provision a non-exclusive partitioned queue subscribed to ``pqdemo/>``."""
    response = requests.post(
        f"{semp_url}/queues",
        json={
            "queueName": QUEUE_NAME,
            "accessType": "non-exclusive",
            "partitionCount": 4,
            "permission": "delete",
            "ingressEnabled": True,
            "egressEnabled": True,
        },
        auth=ADMIN_AUTH,
        timeout=10,
    )
    response.raise_for_status()
    response = requests.post(
        f"{semp_url}/queues/{QUEUE_NAME}/subscriptions",
        json={"subscriptionTopic": "pqdemo/>"},
        auth=ADMIN_AUTH,
        timeout=10,
    )
    response.raise_for_status()
    return QUEUE_NAME


@pytest.fixture
def connection_properties(broker_host):
    return {
        "solace.messaging.transport.host": broker_host,
        "solace.messaging.service.vpn-name": MSG_VPN,
        "solace.messaging.authentication.scheme": "AUTHENTICATION_SCHEME_BASIC",
        "solace.messaging.authentication.basic.username": "client1",
        "solace.messaging.authentication.basic.password": "client1pass",
        "solace.messaging.transport.reconnection-attempts": "0",
        "solace.messaging.transport.connection.retries-per-host": "0",
    }
