from vpnpool.common.providers.compute import (
    ComputeProvisioner,
    DockerProvisioner,
    EndpointRef,
    Health,
    ProvisionParams,
    classify_docker_error,
)
from vpnpool.common.providers.keys import KeyIssuer
from vpnpool.common.providers.publisher import ConfigPublisher, PublishedConfig

__all__ = [
    "ComputeProvisioner",
    "DockerProvisioner",
    "EndpointRef",
    "Health",
    "ProvisionParams",
    "classify_docker_error",
    "KeyIssuer",
    "ConfigPublisher",
    "PublishedConfig",
]
