"""Kubernetes client module for gpumon."""

from .client import (
    K8sClient,
    K8sConnectionError,
    K8sError,
    K8sResourceError,
    NodeAddress,
    NodeInfo,
    PodInfo,
    get_k8s_client,
)
from .wait import (
    WaitError,
    WaitResult,
    WaitStatus,
    WaitTimeout,
    next_interval,
    wait_for_condition,
)

__all__ = [
    # Client
    "K8sClient",
    "NodeAddress",
    "NodeInfo",
    "PodInfo",
    "get_k8s_client",
    # Errors
    "K8sError",
    "K8sConnectionError",
    "K8sResourceError",
    "WaitError",
    "WaitTimeout",
    # Wait
    "WaitResult",
    "WaitStatus",
    "next_interval",
    "wait_for_condition",
]
