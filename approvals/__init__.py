"""
Institutional Expenditure Approvals.

Core of the multi-stage expenditure-approval workflow: the approval state
machine, the append-only request history, and the per-user visibility
projector that the dashboard and approval queues are built on.
"""

__version__ = "1.0.0"
