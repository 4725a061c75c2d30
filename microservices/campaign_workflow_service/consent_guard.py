"""
Consent & Rate Guard

Read-only decision on whether a SEND may go out now:

1. Suppression -> Deny (marketing scope blocks marketing, "all" blocks everything)
2. Marketing frequency cap -> Defer until the window frees a slot
3. Send window -> Defer until the window next opens (recipient-local)

The guard never writes. The cap is enforced atomically by the store's
claim_send_slot; the guard only predicts the defer instant.
"""

import logging
from datetime import datetime, time, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from core.config import ConsentConfig
from .models import (
    CampaignDefinition,
    CampaignType,
    ChannelType,
    FrequencyCap,
    GuardDecision,
    SendLogEntry,
    SendWindow,
    SuppressionScope,
)
from .protocols import WorkflowRepositoryProtocol
from .wait_schedule import at_local_time, parse_hhmm

logger = logging.getLogger(__name__)

UNSUBSCRIBED = "UNSUBSCRIBED"
FREQUENCY_CAP = "FREQUENCY_CAP"
SEND_WINDOW = "SEND_WINDOW"


def in_window(local_time: time, start: time, end: time) -> bool:
    """Whether a wall-clock time falls in [start, end); start > end wraps midnight"""
    if start == end:
        return True
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


def next_window_open(now: datetime, start: time, tz: ZoneInfo) -> datetime:
    """Next instant (UTC) at which the local clock reads start"""
    candidate = at_local_time(now, start, tz)
    if candidate <= now:
        candidate = at_local_time(now + timedelta(days=1), start, tz)
    return candidate


class ConsentGuard:
    """Suppression, frequency cap and send window checks"""

    def __init__(
        self,
        repository: WorkflowRepositoryProtocol,
        config: Optional[ConsentConfig] = None,
    ):
        self.repository = repository
        self.config = config or ConsentConfig()

    # ====================
    # Rule resolution
    # ====================

    def cap_for(
        self, campaign_type: CampaignType, override: Optional[FrequencyCap] = None
    ) -> Optional[FrequencyCap]:
        """Frequency cap for a campaign type; only marketing is capped"""
        if campaign_type != CampaignType.MARKETING:
            return None
        return override or FrequencyCap(
            count=self.config.marketing_cap_count,
            window_days=self.config.marketing_cap_window_days,
        )

    def window_for(
        self, campaign_type: CampaignType, override: Optional[SendWindow] = None
    ) -> Optional[Tuple[time, time]]:
        """Allowed send hours for a campaign type, or None when unrestricted"""
        if override is not None:
            return parse_hhmm(override.start), parse_hhmm(override.end)
        if campaign_type == CampaignType.MARKETING:
            return (
                parse_hhmm(self.config.marketing_window_start),
                parse_hhmm(self.config.marketing_window_end),
            )
        if campaign_type == CampaignType.WAITLIST:
            return (
                parse_hhmm(self.config.waitlist_window_start),
                parse_hhmm(self.config.waitlist_window_end),
            )
        return None

    def cap_window_start(self, cap: FrequencyCap, now: datetime) -> datetime:
        return now - timedelta(days=cap.window_days)

    # ====================
    # Checks
    # ====================

    async def frequency_defer_until(
        self,
        recipient_id: str,
        cap: FrequencyCap,
        now: datetime,
        enrollment_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> Optional[datetime]:
        """When the cap is reached, the instant the oldest counted send ages out"""
        window = timedelta(days=cap.window_days)
        sends: List[SendLogEntry] = await self.repository.list_sends(
            recipient_id, CampaignType.MARKETING, now - window
        )
        sends = [
            s for s in sends
            if not (s.enrollment_id == enrollment_id and s.step_id == step_id)
        ]
        if len(sends) < cap.count:
            return None
        sends.sort(key=lambda s: s.sent_at)
        return sends[len(sends) - cap.count].sent_at + window

    async def check_send(
        self,
        recipient_id: str,
        campaign_type: CampaignType,
        channel: ChannelType,
        now: datetime,
        tz: Optional[ZoneInfo] = None,
        frequency_cap: Optional[FrequencyCap] = None,
        send_window: Optional[SendWindow] = None,
        enrollment_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> GuardDecision:
        """
        Decide whether a message may be sent now.

        Args:
            recipient_id: Recipient of the message
            campaign_type: Type of the sending campaign
            channel: Delivery channel
            now: Evaluation instant
            tz: Recipient-local timezone for the send window
            frequency_cap: Campaign-level cap override
            send_window: Campaign-level window override
            enrollment_id, step_id: The send being checked; its own send log
                entry is not counted against the cap

        Returns:
            Allow, Deny(reason) or Defer(until)
        """
        suppressions = await self.repository.get_suppressions(recipient_id)
        for entry in suppressions:
            if entry.scope == SuppressionScope.ALL or campaign_type == CampaignType.MARKETING:
                logger.info(
                    f"Recipient {recipient_id} suppressed ({entry.scope.value}) for {campaign_type.value} {channel.value}"
                )
                return GuardDecision.deny(UNSUBSCRIBED)

        cap = self.cap_for(campaign_type, frequency_cap)
        if cap is not None:
            until = await self.frequency_defer_until(recipient_id, cap, now, enrollment_id, step_id)
            if until is not None:
                logger.info(f"Recipient {recipient_id} at marketing cap, deferring until {until.isoformat()}")
                return GuardDecision.defer(until, FREQUENCY_CAP)

        window = self.window_for(campaign_type, send_window)
        if window is not None:
            zone = tz or ZoneInfo(self.config.default_timezone)
            start, end = window
            local_time = now.astimezone(zone).time()
            if not in_window(local_time, start, end):
                until = next_window_open(now, start, zone)
                logger.debug(f"Outside send window for {recipient_id}, deferring until {until.isoformat()}")
                return GuardDecision.defer(until, SEND_WINDOW)

        return GuardDecision.allow()

    async def check_campaign_send(
        self,
        campaign: CampaignDefinition,
        recipient_id: str,
        channel: ChannelType,
        now: datetime,
        tz: Optional[ZoneInfo] = None,
        enrollment_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> GuardDecision:
        """check_send with the campaign's own overrides applied"""
        return await self.check_send(
            recipient_id,
            campaign.campaign_type,
            channel,
            now,
            tz=tz,
            frequency_cap=campaign.frequency_cap,
            send_window=campaign.send_window,
            enrollment_id=enrollment_id,
            step_id=step_id,
        )
