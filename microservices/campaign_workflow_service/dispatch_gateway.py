"""
Dispatch Gateway

Hands rendered SEND steps to the messaging hub and records asynchronous
delivery callbacks. Transient hub failures are raised so the step
executor can schedule a retry; everything else becomes a DispatchResult.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .models import (
    ChannelType,
    DeliveryStatus,
    DeliveryStatusRecord,
    DispatchOutcome,
    DispatchResult,
    Recipient,
    utcnow,
)
from .protocols import ChannelDeliveryError, MessagingHubProtocol, WorkflowRepositoryProtocol

logger = logging.getLogger(__name__)


def missing_address(recipient: Recipient, channel: ChannelType) -> Optional[str]:
    """Reason the recipient cannot be reached on channel, or None"""
    if channel == ChannelType.SMS and not recipient.phone:
        return "no phone number on file"
    if channel == ChannelType.EMAIL and not recipient.email:
        return "no email address on file"
    if channel == ChannelType.PUSH and not recipient.push_token:
        return "no push token on file"
    return None


def template_variables(recipient: Recipient, context: Dict[str, Any]) -> Dict[str, Any]:
    """Variables handed to the hub: enrollment context plus live recipient fields"""
    variables = dict(context)
    snapshot = dict(context.get("recipient") or {})
    snapshot.update(recipient.to_context())
    snapshot["email"] = recipient.email
    snapshot["phone"] = recipient.phone
    variables["recipient"] = snapshot
    return variables


class DispatchGateway:
    """Messaging hub dispatch and delivery status bookkeeping"""

    def __init__(self, hub: MessagingHubProtocol, repository: WorkflowRepositoryProtocol):
        self.hub = hub
        self.repository = repository

    async def send(
        self,
        recipient: Optional[Recipient],
        channel: ChannelType,
        template_ref: str,
        context: Dict[str, Any],
        idempotency_key: str,
    ) -> DispatchResult:
        """
        Submit one message.

        Returns:
            Accepted(dispatch_id), Rejected(reason) or Skipped(reason)

        Raises:
            ChannelDeliveryError: only for transient failures
        """
        if recipient is None:
            return DispatchResult(outcome=DispatchOutcome.SKIPPED, reason="recipient not found")

        reason = missing_address(recipient, channel)
        if reason:
            logger.info(f"Skipping {channel.value} to {recipient.recipient_id}: {reason}")
            return DispatchResult(outcome=DispatchOutcome.SKIPPED, reason=reason)

        try:
            response = await self.hub.send_message(
                recipient=recipient,
                channel=channel.value,
                template_ref=template_ref,
                variables=template_variables(recipient, context),
                idempotency_key=idempotency_key,
            )
        except ChannelDeliveryError as e:
            if e.transient:
                raise
            logger.warning(f"Messaging hub rejected {idempotency_key}: {e}")
            return DispatchResult(outcome=DispatchOutcome.REJECTED, reason=str(e))

        if response.get("status") == "rejected":
            return DispatchResult(
                outcome=DispatchOutcome.REJECTED,
                dispatch_id=response.get("message_id"),
                reason=response.get("reason") or "rejected by messaging hub",
            )

        return DispatchResult(
            outcome=DispatchOutcome.ACCEPTED,
            dispatch_id=response.get("message_id") or idempotency_key,
        )

    async def record_delivery_status(
        self,
        dispatch_id: str,
        status: DeliveryStatus,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> DeliveryStatusRecord:
        """Append a delivery callback, linked to its step record when known"""
        record = await self.repository.find_record_by_dispatch(dispatch_id)
        if record is None:
            logger.warning(f"Delivery status {status.value} for unknown dispatch {dispatch_id}")

        entry = DeliveryStatusRecord(
            dispatch_id=dispatch_id,
            status=status,
            detail=detail,
            occurred_at=occurred_at or utcnow(),
            enrollment_id=record.enrollment_id if record else None,
            step_id=record.step_id if record else None,
        )
        return await self.repository.append_delivery_status(entry)
