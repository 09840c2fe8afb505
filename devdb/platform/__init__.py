"""Orchestration platform adapters."""

from .base import OrchestrationPlatform, PodInfo, ServiceInfo

__all__ = ["OrchestrationPlatform", "PodInfo", "ServiceInfo"]
