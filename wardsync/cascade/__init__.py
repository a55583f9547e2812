"""Cascade executors: apply a fact to this service's denormalized copies."""

from wardsync.cascade.audit import AuditLogWriter, DataAccessLogWriter
from wardsync.cascade.base import CascadeExecutor, CascadeFailure
from wardsync.cascade.bed import BedStatusChangedCascade
from wardsync.cascade.directory import UserActivationSync, UserCreatedSync
from wardsync.cascade.patient import PatientDeactivatedCascade, PatientUpdatedCascade
from wardsync.cascade.user import UserDeactivatedCascade, UserUpdatedCascade

__all__ = [
    "AuditLogWriter",
    "BedStatusChangedCascade",
    "CascadeExecutor",
    "CascadeFailure",
    "DataAccessLogWriter",
    "PatientDeactivatedCascade",
    "PatientUpdatedCascade",
    "UserActivationSync",
    "UserCreatedSync",
    "UserDeactivatedCascade",
    "UserUpdatedCascade",
]
