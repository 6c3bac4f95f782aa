"""
Tests for the recovery app.

This package contains test modules for:
- test_models.py: Obligation, ChargeAttempt, session and ticket models
- test_state_transitions.py: Obligation FSM transitions
- test_locks.py: DistributedLock, obligation lease, check_version
- test_notifications.py: template registry and dispatch
- test_tasks.py: Celery entry points and periodic scans
- test_integration.py: full recovery journeys
"""
