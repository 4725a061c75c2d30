"""
Campaign Workflow Service

Campaign workflow execution engine providing:
- Event, scheduled and recurring triggers with idempotent enrollment
- Per-recipient step execution (SEND / WAIT / CONDITION / BRANCH)
- Anchored waits that follow rescheduled appointments
- Consent, frequency cap and send window enforcement
- Leased, crash-safe scheduling across worker instances

Port: 8251
"""

__version__ = "1.0.0"
__service__ = "campaign_workflow_service"
