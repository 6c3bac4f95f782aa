"""
Recovery services, leaf-first.

    FailureClassifier             - outcome -> disposition
    ChargeAttemptExecutor         - one off-session charge, one ChargeAttempt
    RecoverySessionIssuer         - on-session payment links
    RetryAccountant               - failure counts, backoff, escalation decision
    EscalationManager             - tickets and admin notification
    ObligationLifecycleController - the orchestrator
    ReconciliationService         - status re-derived from the records
"""

from recovery.services.charge_executor import ChargeAttemptExecutor, ExecutedCharge
from recovery.services.escalation_manager import EscalationManager
from recovery.services.failure_classifier import FailureClassifier
from recovery.services.lifecycle_controller import ObligationLifecycleController
from recovery.services.reconciliation_service import (
    ReconciliationReport,
    ReconciliationService,
)
from recovery.services.retry_accountant import RetryAccountant
from recovery.services.session_issuer import IssuedLink, RecoverySessionIssuer

__all__ = [
    "ChargeAttemptExecutor",
    "EscalationManager",
    "ExecutedCharge",
    "FailureClassifier",
    "IssuedLink",
    "ObligationLifecycleController",
    "ReconciliationReport",
    "ReconciliationService",
    "RecoverySessionIssuer",
    "RetryAccountant",
]
