"""
Off-session charge recovery for chef obligations.

Collects money a chef owes after the fact (overstay penalties, damage
claims) by charging a stored payment method without the chef present, then
degrades through on-session payment links and finally admin escalation.

Entry points (import from recovery.services):
    - ObligationLifecycleController.trigger_recovery(obligation_id)
    - ObligationLifecycleController.on_recovery_session_consumed(session_id, outcome)
    - ObligationLifecycleController.has_unresolved_obligations(chef)

Scheduled work lives in recovery.tasks.
"""
