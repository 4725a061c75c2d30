"""
Campaign Workflow Service Business Logic

Campaign definition lifecycle (create, update, activate, pause, resume,
archive, revise), manual enrollment and enrollment inspection.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .events.models import WorkflowEventType
from .models import (
    CampaignCreateRequest,
    CampaignDefinition,
    CampaignStatus,
    CampaignUpdateRequest,
    Enrollment,
    EnrollmentResponse,
    EnrollmentStatus,
    utcnow,
)
from .protocols import (
    CampaignNotFoundError,
    EnrollmentNotFoundError,
    InvalidCampaignStateError,
    WorkflowRepositoryProtocol,
)
from .step_graph import validate_definition
from .trigger_listener import TriggerListener

logger = logging.getLogger(__name__)


class CampaignAdmin:
    """Campaign definition management"""

    # Valid state transitions
    VALID_TRANSITIONS = {
        CampaignStatus.DRAFT: [CampaignStatus.ACTIVE, CampaignStatus.ARCHIVED],
        CampaignStatus.ACTIVE: [CampaignStatus.PAUSED, CampaignStatus.COMPLETED, CampaignStatus.ARCHIVED],
        CampaignStatus.PAUSED: [CampaignStatus.ACTIVE, CampaignStatus.ARCHIVED],
        CampaignStatus.COMPLETED: [CampaignStatus.ARCHIVED],
        CampaignStatus.ARCHIVED: [],  # Terminal state
    }

    def __init__(
        self,
        repository: WorkflowRepositoryProtocol,
        trigger_listener: TriggerListener,
        event_publisher=None,
    ):
        self.repository = repository
        self.trigger_listener = trigger_listener
        self.event_publisher = event_publisher

    # ====================
    # Campaign CRUD
    # ====================

    async def create_campaign(self, request: CampaignCreateRequest) -> CampaignDefinition:
        """Create a draft campaign; the definition is validated on activation"""
        now = utcnow()
        campaign = CampaignDefinition(
            **request.model_dump(),
            status=CampaignStatus.DRAFT,
            version=1,
            created_at=now,
            updated_at=now,
        )
        campaign = await self.repository.save_campaign(campaign)
        logger.info(f"Campaign created: {campaign.campaign_id}")
        return campaign

    async def get_campaign(self, campaign_id: str) -> CampaignDefinition:
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        clinic_id: Optional[str] = None,
    ) -> List[CampaignDefinition]:
        return await self.repository.list_campaigns(status=status, clinic_id=clinic_id)

    def _apply(self, campaign: CampaignDefinition, request: CampaignUpdateRequest) -> CampaignDefinition:
        changes = request.model_dump(exclude_unset=True)
        data = campaign.model_dump()
        data.update(changes)
        return CampaignDefinition.model_validate(data)

    async def update_campaign(
        self, campaign_id: str, request: CampaignUpdateRequest
    ) -> CampaignDefinition:
        """Edit a draft in place"""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidCampaignStateError(
                "Only draft campaigns can be edited; revise active campaigns instead",
                campaign.status.value,
            )

        updated = self._apply(campaign, request)
        updated.updated_at = utcnow()
        return await self.repository.save_campaign(updated)

    async def delete_campaign(self, campaign_id: str) -> bool:
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidCampaignStateError(
                "Only draft campaigns can be deleted", campaign.status.value
            )
        return await self.repository.delete_campaign(campaign_id)

    # ====================
    # Lifecycle
    # ====================

    async def _transition(
        self,
        campaign: CampaignDefinition,
        target: CampaignStatus,
        now: datetime,
    ) -> CampaignDefinition:
        if target not in self.VALID_TRANSITIONS.get(campaign.status, []):
            raise InvalidCampaignStateError(
                f"Cannot move campaign from {campaign.status.value} to {target.value}",
                campaign.status.value,
            )
        campaign.status = target
        campaign.updated_at = now
        return await self.repository.save_campaign(campaign)

    async def activate_campaign(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> CampaignDefinition:
        """
        Activate a draft campaign.

        The step graph, anchors and trigger configuration are validated
        here; an invalid definition stays in draft.
        """
        now = now or utcnow()
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidCampaignStateError(
                "Only draft campaigns can be activated", campaign.status.value
            )

        validate_definition(campaign)
        campaign.activated_at = now
        campaign = await self._transition(campaign, CampaignStatus.ACTIVE, now)

        await self._publish_status(campaign, WorkflowEventType.CAMPAIGN_ACTIVATED)
        logger.info(f"Campaign activated: {campaign_id}")
        return campaign

    async def pause_campaign(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> CampaignDefinition:
        """Stop new enrollments and step execution; state is kept"""
        now = now or utcnow()
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise InvalidCampaignStateError(
                "Only active campaigns can be paused", campaign.status.value
            )

        campaign = await self._transition(campaign, CampaignStatus.PAUSED, now)
        await self._publish_status(campaign, WorkflowEventType.CAMPAIGN_PAUSED)
        logger.info(f"Campaign paused: {campaign_id}")
        return campaign

    async def resume_campaign(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> CampaignDefinition:
        """Resume a paused campaign; due enrollments run on the next pass"""
        now = now or utcnow()
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.PAUSED:
            raise InvalidCampaignStateError(
                "Only paused campaigns can be resumed", campaign.status.value
            )

        campaign = await self._transition(campaign, CampaignStatus.ACTIVE, now)
        await self._publish_status(campaign, WorkflowEventType.CAMPAIGN_RESUMED)
        logger.info(f"Campaign resumed: {campaign_id}")
        return campaign

    async def archive_campaign(
        self, campaign_id: str, now: Optional[datetime] = None
    ) -> CampaignDefinition:
        """Archive a campaign and cancel all of its open enrollments"""
        now = now or utcnow()
        campaign = await self.get_campaign(campaign_id)

        campaign.archived_at = now
        campaign = await self._transition(campaign, CampaignStatus.ARCHIVED, now)
        cancelled = await self.repository.cancel_open_enrollments(campaign_id, now)

        await self._publish_status(campaign, WorkflowEventType.CAMPAIGN_ARCHIVED)
        logger.info(f"Campaign archived: {campaign_id} ({cancelled} enrollments cancelled)")
        return campaign

    async def revise_campaign(
        self, campaign_id: str, request: CampaignUpdateRequest, now: Optional[datetime] = None
    ) -> CampaignDefinition:
        """
        Publish a new version of a live campaign.

        In-flight enrollments keep running on the version they started
        with; new enrollments use the new version.
        """
        now = now or utcnow()
        campaign = await self.get_campaign(campaign_id)
        if campaign.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
            raise InvalidCampaignStateError(
                "Only active or paused campaigns can be revised", campaign.status.value
            )

        revised = self._apply(campaign, request)
        revised.version = campaign.version + 1
        revised.updated_at = now
        validate_definition(revised)

        revised = await self.repository.save_campaign(revised)
        await self._publish_status(revised, WorkflowEventType.CAMPAIGN_REVISED)
        logger.info(f"Campaign revised: {campaign_id} v{revised.version}")
        return revised

    # ====================
    # Enrollments
    # ====================

    async def trigger_manual(
        self,
        campaign_id: str,
        recipient_id: str,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        campaign = await self.get_campaign(campaign_id)
        return await self.trigger_listener.trigger_manual(campaign, recipient_id, context, now)

    async def get_enrollment(self, enrollment_id: str) -> EnrollmentResponse:
        enrollment = await self.repository.get_enrollment(enrollment_id)
        if not enrollment:
            raise EnrollmentNotFoundError(enrollment_id)
        records = await self.repository.list_records(enrollment_id)
        return EnrollmentResponse(enrollment=enrollment, records=records)

    async def list_enrollments(
        self,
        campaign_id: str,
        status: Optional[List[EnrollmentStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Enrollment]:
        await self.get_campaign(campaign_id)
        return await self.repository.list_enrollments(campaign_id, status=status, limit=limit, offset=offset)

    # ====================
    # Event Publishing
    # ====================

    async def _publish_status(
        self, campaign: CampaignDefinition, event_type: WorkflowEventType
    ) -> None:
        if not self.event_publisher:
            logger.debug(f"Event publisher not configured, skipping status event for {campaign.campaign_id}")
            return
        await self.event_publisher.publish_campaign_status(campaign, event_type)


__all__ = ["CampaignAdmin"]
