"""Provisioning journal persistence."""

from .base import Base, create_journal_engine, create_session_factory, init_database
from .journal import ProvisioningJournal
from .models import FlowStatus, FlowStep, ProvisioningRecordModel

__all__ = [
    "Base",
    "FlowStatus",
    "FlowStep",
    "ProvisioningJournal",
    "ProvisioningRecordModel",
    "create_journal_engine",
    "create_session_factory",
    "init_database",
]
