"""
Review — human review queue with SLA tracking.

  ReviewEscalator   intake, assignment, completion, escalation, queue queries
  SLAMonitor        breach and reminder sweep
"""
from review.escalator import ReviewEscalator, derive_priority
from review.sla import SLACheckReport, SLAMonitor

__all__ = ["ReviewEscalator", "derive_priority", "SLACheckReport", "SLAMonitor"]
