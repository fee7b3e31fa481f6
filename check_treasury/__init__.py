"""
Check Treasury Engine

Check lifecycle and treasury consistency: checkbook range allocation, a
check state machine, an append-only movement log, a derived cash-flow
projection and a bank ledger mirror, all kept consistent under concurrent
access by per-entity leases and one unit of work per operation.
"""

__version__ = "1.0.0"
