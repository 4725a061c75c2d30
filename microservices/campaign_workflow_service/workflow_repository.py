"""
Campaign Workflow Data Repository

Data access layer - PostgreSQL (Async)

Leasing uses FOR UPDATE SKIP LOCKED so concurrent schedulers never lease the
same enrollment; enrollment writes are version-checked; the open-enrollment
uniqueness rule is a partial unique index.
"""

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from core.config import InfraConfig
from core.postgres_client import PostgresClientWrapper
from .models import (
    CampaignDefinition,
    CampaignStatus,
    CampaignType,
    DeliveryStatus,
    DeliveryStatusRecord,
    DomainEvent,
    Enrollment,
    EnrollmentSource,
    EnrollmentStatus,
    PendingEventTrigger,
    SendLogEntry,
    StepExecutionRecord,
    StepResult,
    SuppressionEntry,
    SuppressionScope,
    TriggerRun,
    TriggerRunStatus,
    TriggerType,
    WaitStep,
)
from .predicates import deep_merge
from .protocols import EnrollmentConflict, SchedulerLeaseConflict


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


def _json_field(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


SCHEMA_FILE = Path(__file__).parent / "migrations" / "001_campaign_workflow_schema.sql"

TERMINAL_SQL = "('completed', 'failed', 'skipped', 'unsubscribed', 'cancelled')"

logger = logging.getLogger(__name__)


class WorkflowRepository:
    """Campaign workflow data repository - PostgreSQL (Async)"""

    def __init__(
        self,
        db: Optional[PostgresClientWrapper] = None,
        config: Optional[InfraConfig] = None,
        apply_schema: bool = False,
    ):
        self.db = db or PostgresClientWrapper("campaign_workflow_service", config=config)
        self.apply_schema = apply_schema
        self.schema = "campaign_workflow"

        # Table names
        self.campaigns_table = "campaigns"
        self.versions_table = "campaign_versions"
        self.enrollments_table = "enrollments"
        self.records_table = "step_execution_records"
        self.delivery_table = "delivery_status_records"
        self.send_log_table = "send_log"
        self.suppressions_table = "suppressions"
        self.trigger_runs_table = "trigger_runs"
        self.pending_table = "pending_event_triggers"

    def _t(self, table: str) -> str:
        return f"{self.schema}.{table}"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        if self.apply_schema:
            await self.db.execute(SCHEMA_FILE.read_text())
            logger.info("Campaign workflow schema applied")
        logger.info("Campaign workflow repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Campaign workflow repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        return await self.db.health_check()

    # ====================
    # Campaign Definitions
    # ====================

    async def save_campaign(self, campaign: CampaignDefinition) -> CampaignDefinition:
        """Upsert the current definition and its version snapshot"""
        try:
            definition = campaign.model_dump_json()
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(
                    f'''
                    INSERT INTO {self._t(self.campaigns_table)} (
                        campaign_id, clinic_id, name, campaign_type, trigger_type,
                        status, version, definition, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (campaign_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        trigger_type = EXCLUDED.trigger_type,
                        status = EXCLUDED.status,
                        version = EXCLUDED.version,
                        definition = EXCLUDED.definition,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    ''',
                    campaign.campaign_id,
                    campaign.clinic_id,
                    campaign.name,
                    campaign.campaign_type.value,
                    campaign.trigger_type.value,
                    campaign.status.value,
                    campaign.version,
                    definition,
                    campaign.created_at,
                    campaign.updated_at,
                )
                await conn.execute(
                    f'''
                    INSERT INTO {self._t(self.versions_table)} (campaign_id, version, definition)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (campaign_id, version) DO UPDATE SET definition = EXCLUDED.definition
                    ''',
                    campaign.campaign_id,
                    campaign.version,
                    definition,
                )
            return self._row_to_campaign(dict(row))

        except Exception as e:
            logger.error(f"Error saving campaign {campaign.campaign_id}: {e}", exc_info=True)
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignDefinition]:
        """Get campaign by ID"""
        row = await self.db.query_row(
            f"SELECT * FROM {self._t(self.campaigns_table)} WHERE campaign_id = $1",
            [campaign_id],
        )
        return self._row_to_campaign(row) if row else None

    async def get_campaign_version(
        self, campaign_id: str, version: int
    ) -> Optional[CampaignDefinition]:
        """Get a campaign version snapshot"""
        row = await self.db.query_row(
            f'''
            SELECT definition FROM {self._t(self.versions_table)}
            WHERE campaign_id = $1 AND version = $2
            ''',
            [campaign_id, version],
        )
        return self._row_to_campaign(row) if row else None

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        clinic_id: Optional[str] = None,
    ) -> List[CampaignDefinition]:
        """List campaigns with filters"""
        conditions = []
        params: List[Any] = []

        if status:
            params.append([s.value for s in status])
            conditions.append(f"status = ANY(${len(params)})")
        if trigger_type:
            params.append(trigger_type.value)
            conditions.append(f"trigger_type = ${len(params)}")
        if clinic_id:
            params.append(clinic_id)
            conditions.append(f"clinic_id = ${len(params)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.db.query(
            f"SELECT * FROM {self._t(self.campaigns_table)} {where} ORDER BY created_at",
            params,
        )
        return [self._row_to_campaign(row) for row in rows]

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete a campaign and its version snapshots"""
        async with self.db.transaction() as conn:
            await conn.execute(
                f"DELETE FROM {self._t(self.versions_table)} WHERE campaign_id = $1", campaign_id
            )
            result = await conn.execute(
                f"DELETE FROM {self._t(self.campaigns_table)} WHERE campaign_id = $1", campaign_id
            )
        return result.endswith(" 1")

    # ====================
    # Enrollments
    # ====================

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        """Insert an enrollment; the partial unique index rejects a second open one"""
        query = f'''
            INSERT INTO {self._t(self.enrollments_table)} (
                enrollment_id, campaign_id, campaign_version, clinic_id, recipient_id,
                current_step_id, status, next_wake_at, step_entered_at, context,
                triggered_by, lease_owner, lease_expires_at, version, last_error,
                enrolled_at, completed_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                $11, $12, $13, $14, $15, $16, $17, $18
            )
            RETURNING *
        '''
        params = [
            enrollment.enrollment_id,
            enrollment.campaign_id,
            enrollment.campaign_version,
            enrollment.clinic_id,
            enrollment.recipient_id,
            enrollment.current_step_id,
            enrollment.status.value,
            enrollment.next_wake_at,
            enrollment.step_entered_at,
            json_dumps(enrollment.context),
            enrollment.triggered_by.value,
            enrollment.lease_owner,
            enrollment.lease_expires_at,
            enrollment.version,
            enrollment.last_error,
            enrollment.enrolled_at,
            enrollment.completed_at,
            enrollment.updated_at,
        ]
        try:
            row = await self.db.query_row(query, params)
        except asyncpg.UniqueViolationError:
            raise EnrollmentConflict(enrollment.campaign_id, enrollment.recipient_id)
        return self._row_to_enrollment(row)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        """Get enrollment by ID"""
        row = await self.db.query_row(
            f"SELECT * FROM {self._t(self.enrollments_table)} WHERE enrollment_id = $1",
            [enrollment_id],
        )
        return self._row_to_enrollment(row) if row else None

    async def find_open_enrollment(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[Enrollment]:
        """Get the open enrollment of a recipient in a campaign"""
        row = await self.db.query_row(
            f'''
            SELECT * FROM {self._t(self.enrollments_table)}
            WHERE campaign_id = $1 AND recipient_id = $2
              AND status NOT IN {TERMINAL_SQL}
            ''',
            [campaign_id, recipient_id],
        )
        return self._row_to_enrollment(row) if row else None

    async def last_enrolled_at(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[datetime]:
        """Most recent enrollment time of a recipient in a campaign"""
        row = await self.db.query_row(
            f'''
            SELECT MAX(enrolled_at) AS last_enrolled_at
            FROM {self._t(self.enrollments_table)}
            WHERE campaign_id = $1 AND recipient_id = $2
            ''',
            [campaign_id, recipient_id],
        )
        return row["last_enrolled_at"] if row else None

    async def list_enrollments(
        self,
        campaign_id: str,
        status: Optional[List[EnrollmentStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Enrollment]:
        """List enrollments of a campaign"""
        params: List[Any] = [campaign_id]
        status_clause = ""
        if status:
            params.append([s.value for s in status])
            status_clause = f"AND status = ANY(${len(params)})"
        params.extend([limit, offset])
        rows = await self.db.query(
            f'''
            SELECT * FROM {self._t(self.enrollments_table)}
            WHERE campaign_id = $1 {status_clause}
            ORDER BY enrolled_at
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            ''',
            params,
        )
        return [self._row_to_enrollment(row) for row in rows]

    async def lease_due(
        self, now: datetime, limit: int, owner: str, lease_seconds: int
    ) -> List[Enrollment]:
        """Lease due enrollments of ACTIVE campaigns in one statement"""
        query = f'''
            UPDATE {self._t(self.enrollments_table)} e
            SET lease_owner = $1,
                lease_expires_at = $2,
                version = e.version + 1
            WHERE e.enrollment_id IN (
                SELECT en.enrollment_id
                FROM {self._t(self.enrollments_table)} en
                JOIN {self._t(self.campaigns_table)} c ON c.campaign_id = en.campaign_id
                WHERE c.status = 'active'
                  AND (
                      en.status = 'active'
                      OR (en.status = 'waiting' AND en.next_wake_at <= $3)
                  )
                  AND (en.lease_expires_at IS NULL OR en.lease_expires_at <= $3)
                ORDER BY COALESCE(en.next_wake_at, en.enrolled_at)
                LIMIT $4
                FOR UPDATE OF en SKIP LOCKED
            )
            RETURNING e.*
        '''
        rows = await self.db.query(
            query, [owner, now + timedelta(seconds=lease_seconds), now, limit]
        )
        return [self._row_to_enrollment(row) for row in rows]

    async def save_enrollment(
        self, enrollment: Enrollment, expected_version: int
    ) -> Enrollment:
        """Version-checked enrollment write"""
        query = f'''
            UPDATE {self._t(self.enrollments_table)} SET
                current_step_id = $3,
                status = $4,
                next_wake_at = $5,
                step_entered_at = $6,
                context = $7,
                lease_owner = $8,
                lease_expires_at = $9,
                last_error = $10,
                completed_at = $11,
                updated_at = $12,
                version = $2 + 1
            WHERE enrollment_id = $1 AND version = $2
            RETURNING *
        '''
        row = await self.db.query_row(
            query,
            [
                enrollment.enrollment_id,
                expected_version,
                enrollment.current_step_id,
                enrollment.status.value,
                enrollment.next_wake_at,
                enrollment.step_entered_at,
                json_dumps(enrollment.context),
                enrollment.lease_owner,
                enrollment.lease_expires_at,
                enrollment.last_error,
                enrollment.completed_at,
                enrollment.updated_at,
            ],
        )
        if row is None:
            raise SchedulerLeaseConflict(enrollment.enrollment_id, expected_version)
        return self._row_to_enrollment(row)

    async def release_lease(self, enrollment_id: str, owner: str) -> None:
        """Drop a lease held by owner"""
        await self.db.execute(
            f'''
            UPDATE {self._t(self.enrollments_table)}
            SET lease_owner = NULL, lease_expires_at = NULL
            WHERE enrollment_id = $1 AND lease_owner = $2
            ''',
            [enrollment_id, owner],
        )

    async def cancel_open_enrollments(self, campaign_id: str, now: datetime) -> int:
        """Cancel every open enrollment of a campaign"""
        result = await self.db.execute(
            f'''
            UPDATE {self._t(self.enrollments_table)}
            SET status = 'cancelled', next_wake_at = NULL, completed_at = $2,
                updated_at = $2, version = version + 1
            WHERE campaign_id = $1 AND status NOT IN {TERMINAL_SQL}
            ''',
            [campaign_id, now],
        )
        return int(result.split()[-1]) if result else 0

    async def refresh_context(
        self, enrollment_id: str, patch: Dict[str, Any], now: datetime
    ) -> Optional[Enrollment]:
        """Merge patch into the context; wake the enrollment if parked on a WAIT"""
        async with self.db.transaction() as conn:
            row = await conn.fetchrow(
                f'''
                SELECT * FROM {self._t(self.enrollments_table)}
                WHERE enrollment_id = $1 AND status NOT IN {TERMINAL_SQL}
                FOR UPDATE
                ''',
                enrollment_id,
            )
            if row is None:
                return None
            enrollment = self._row_to_enrollment(dict(row))
            context = deep_merge(enrollment.context, patch)

            next_wake_at = enrollment.next_wake_at
            if enrollment.status == EnrollmentStatus.WAITING:
                version_row = await conn.fetchrow(
                    f'''
                    SELECT definition FROM {self._t(self.versions_table)}
                    WHERE campaign_id = $1 AND version = $2
                    ''',
                    enrollment.campaign_id,
                    enrollment.campaign_version,
                )
                if version_row:
                    campaign = self._row_to_campaign(dict(version_row))
                    if isinstance(campaign.get_step(enrollment.current_step_id), WaitStep):
                        next_wake_at = now

            updated = await conn.fetchrow(
                f'''
                UPDATE {self._t(self.enrollments_table)}
                SET context = $2, next_wake_at = $3, updated_at = $4, version = version + 1
                WHERE enrollment_id = $1
                RETURNING *
                ''',
                enrollment_id,
                json_dumps(context),
                next_wake_at,
                now,
            )
        return self._row_to_enrollment(dict(updated))

    # ====================
    # Step History
    # ====================

    async def append_record(self, record: StepExecutionRecord) -> StepExecutionRecord:
        """Append a step execution record"""
        await self.db.execute(
            f'''
            INSERT INTO {self._t(self.records_table)} (
                record_id, enrollment_id, step_id, attempt_number, started_at,
                result, error_detail, dispatch_id, next_step_id
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ''',
            [
                record.record_id,
                record.enrollment_id,
                record.step_id,
                record.attempt_number,
                record.started_at,
                record.result.value,
                record.error_detail,
                record.dispatch_id,
                record.next_step_id,
            ],
        )
        return record

    async def list_records(self, enrollment_id: str) -> List[StepExecutionRecord]:
        rows = await self.db.query(
            f'''
            SELECT * FROM {self._t(self.records_table)}
            WHERE enrollment_id = $1 ORDER BY seq
            ''',
            [enrollment_id],
        )
        return [self._row_to_record(row) for row in rows]

    async def find_sent_record(
        self, enrollment_id: str, step_id: str
    ) -> Optional[StepExecutionRecord]:
        row = await self.db.query_row(
            f'''
            SELECT * FROM {self._t(self.records_table)}
            WHERE enrollment_id = $1 AND step_id = $2 AND result = $3
            ORDER BY seq LIMIT 1
            ''',
            [enrollment_id, step_id, StepResult.SENT.value],
        )
        return self._row_to_record(row) if row else None

    async def find_record_by_dispatch(
        self, dispatch_id: str
    ) -> Optional[StepExecutionRecord]:
        row = await self.db.query_row(
            f'''
            SELECT * FROM {self._t(self.records_table)}
            WHERE dispatch_id = $1 ORDER BY seq LIMIT 1
            ''',
            [dispatch_id],
        )
        return self._row_to_record(row) if row else None

    async def append_delivery_status(
        self, status: DeliveryStatusRecord
    ) -> DeliveryStatusRecord:
        await self.db.execute(
            f'''
            INSERT INTO {self._t(self.delivery_table)} (
                dispatch_id, status, detail, occurred_at, enrollment_id, step_id
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ''',
            [
                status.dispatch_id,
                status.status.value,
                status.detail,
                status.occurred_at,
                status.enrollment_id,
                status.step_id,
            ],
        )
        return status

    async def list_delivery_statuses(self, dispatch_id: str) -> List[DeliveryStatusRecord]:
        rows = await self.db.query(
            f'''
            SELECT * FROM {self._t(self.delivery_table)}
            WHERE dispatch_id = $1 ORDER BY seq
            ''',
            [dispatch_id],
        )
        return [
            DeliveryStatusRecord(
                dispatch_id=row["dispatch_id"],
                status=DeliveryStatus(row["status"]),
                detail=row.get("detail"),
                occurred_at=row["occurred_at"],
                enrollment_id=row.get("enrollment_id"),
                step_id=row.get("step_id"),
            )
            for row in rows
        ]

    # ====================
    # Send Log
    # ====================

    async def claim_send_slot(
        self,
        entry: SendLogEntry,
        cap_count: Optional[int] = None,
        window_start: Optional[datetime] = None,
    ) -> bool:
        """Count-and-append under a per-recipient advisory lock"""
        async with self.db.transaction() as conn:
            await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", entry.recipient_id)

            existing = await conn.fetchval(
                f'''
                SELECT 1 FROM {self._t(self.send_log_table)}
                WHERE enrollment_id = $1 AND step_id = $2
                ''',
                entry.enrollment_id,
                entry.step_id,
            )
            if existing:
                return True

            if cap_count is not None and window_start is not None:
                used = await conn.fetchval(
                    f'''
                    SELECT COUNT(*) FROM {self._t(self.send_log_table)}
                    WHERE recipient_id = $1 AND campaign_type = $2 AND sent_at > $3
                    ''',
                    entry.recipient_id,
                    entry.campaign_type.value,
                    window_start,
                )
                if used >= cap_count:
                    return False

            await conn.execute(
                f'''
                INSERT INTO {self._t(self.send_log_table)} (
                    recipient_id, campaign_type, campaign_id, enrollment_id, step_id, sent_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                ''',
                entry.recipient_id,
                entry.campaign_type.value,
                entry.campaign_id,
                entry.enrollment_id,
                entry.step_id,
                entry.sent_at,
            )
        return True

    async def release_send_slot(self, enrollment_id: str, step_id: str) -> None:
        await self.db.execute(
            f'''
            DELETE FROM {self._t(self.send_log_table)}
            WHERE enrollment_id = $1 AND step_id = $2
            ''',
            [enrollment_id, step_id],
        )

    async def list_sends(
        self, recipient_id: str, campaign_type: CampaignType, since: datetime
    ) -> List[SendLogEntry]:
        rows = await self.db.query(
            f'''
            SELECT * FROM {self._t(self.send_log_table)}
            WHERE recipient_id = $1 AND campaign_type = $2 AND sent_at > $3
            ORDER BY sent_at
            ''',
            [recipient_id, campaign_type.value, since],
        )
        return [
            SendLogEntry(
                recipient_id=row["recipient_id"],
                campaign_type=CampaignType(row["campaign_type"]),
                campaign_id=row["campaign_id"],
                enrollment_id=row["enrollment_id"],
                step_id=row["step_id"],
                sent_at=row["sent_at"],
            )
            for row in rows
        ]

    # ====================
    # Suppressions
    # ====================

    async def get_suppressions(self, recipient_id: str) -> List[SuppressionEntry]:
        rows = await self.db.query(
            f"SELECT * FROM {self._t(self.suppressions_table)} WHERE recipient_id = $1",
            [recipient_id],
        )
        return [
            SuppressionEntry(
                recipient_id=row["recipient_id"],
                scope=SuppressionScope(row["scope"]),
                reason=row.get("reason"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def add_suppression(self, entry: SuppressionEntry) -> SuppressionEntry:
        await self.db.execute(
            f'''
            INSERT INTO {self._t(self.suppressions_table)} (recipient_id, scope, reason, created_at)
            VALUES ($1, $2, $3, $4)
            ''',
            [entry.recipient_id, entry.scope.value, entry.reason, entry.created_at],
        )
        return entry

    # ====================
    # Trigger Runs
    # ====================

    async def claim_trigger_run(
        self, campaign_id: str, occurrence_at: datetime, now: datetime, stale_after: timedelta
    ) -> Optional[TriggerRun]:
        """Claim an occurrence unless completed or freshly claimed elsewhere"""
        row = await self.db.query_row(
            f'''
            INSERT INTO {self._t(self.trigger_runs_table)} (
                campaign_id, occurrence_at, status, claimed_at
            ) VALUES ($1, $2, 'running', $3)
            ON CONFLICT (campaign_id, occurrence_at) DO UPDATE SET
                status = 'running',
                claimed_at = EXCLUDED.claimed_at,
                error_detail = NULL
            WHERE {self._t(self.trigger_runs_table)}.status = 'failed_retryable'
               OR ({self._t(self.trigger_runs_table)}.status = 'running'
                   AND {self._t(self.trigger_runs_table)}.claimed_at <= $4)
            RETURNING *
            ''',
            [campaign_id, occurrence_at, now, now - stale_after],
        )
        if row is None:
            return None
        return TriggerRun(
            campaign_id=row["campaign_id"],
            occurrence_at=row["occurrence_at"],
            status=TriggerRunStatus(row["status"]),
            claimed_at=row["claimed_at"],
            enrolled_count=row.get("enrolled_count") or 0,
            error_detail=row.get("error_detail"),
        )

    async def finish_trigger_run(
        self,
        campaign_id: str,
        occurrence_at: datetime,
        status: TriggerRunStatus,
        enrolled_count: int = 0,
        error_detail: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            f'''
            UPDATE {self._t(self.trigger_runs_table)}
            SET status = $3, enrolled_count = $4, error_detail = $5
            WHERE campaign_id = $1 AND occurrence_at = $2
            ''',
            [campaign_id, occurrence_at, status.value, enrolled_count, error_detail],
        )

    # ====================
    # Pending Event Triggers
    # ====================

    async def save_pending_trigger(self, pending: PendingEventTrigger) -> PendingEventTrigger:
        """Insert, or bump attempts on the entry for the same event and campaign"""
        event = pending.event
        row = await self.db.query_row(
            f'''
            INSERT INTO {self._t(self.pending_table)} (
                pending_id, campaign_id, recipient_id, event_type, occurred_at,
                event, status, attempts, last_error, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (campaign_id, recipient_id, event_type, occurred_at) DO UPDATE SET
                attempts = {self._t(self.pending_table)}.attempts + 1,
                last_error = EXCLUDED.last_error,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            ''',
            [
                pending.pending_id,
                pending.campaign_id,
                event.recipient_id,
                event.event_type,
                event.occurred_at,
                event.model_dump_json(),
                pending.status.value,
                pending.attempts,
                pending.last_error,
                pending.created_at,
                pending.updated_at,
            ],
        )
        return self._row_to_pending(row) if row else pending

    async def list_pending_triggers(self, limit: int = 100) -> List[PendingEventTrigger]:
        rows = await self.db.query(
            f'''
            SELECT * FROM {self._t(self.pending_table)}
            ORDER BY created_at
            LIMIT $1
            ''',
            [limit],
        )
        return [self._row_to_pending(row) for row in rows]

    async def delete_pending_trigger(self, pending_id: str) -> bool:
        result = await self.db.execute(
            f"DELETE FROM {self._t(self.pending_table)} WHERE pending_id = $1",
            [pending_id],
        )
        return result.endswith(" 1")

    # ====================
    # Row Mapping
    # ====================

    def _row_to_campaign(self, row: Dict[str, Any]) -> CampaignDefinition:
        """Convert database row to CampaignDefinition"""
        definition = _json_field(row.get("definition"), {})
        return CampaignDefinition.model_validate(definition)

    def _row_to_enrollment(self, row: Dict[str, Any]) -> Enrollment:
        """Convert database row to Enrollment"""
        return Enrollment(
            enrollment_id=row["enrollment_id"],
            campaign_id=row["campaign_id"],
            campaign_version=row["campaign_version"],
            clinic_id=row.get("clinic_id"),
            recipient_id=row["recipient_id"],
            current_step_id=row["current_step_id"],
            status=EnrollmentStatus(row["status"]),
            next_wake_at=row.get("next_wake_at"),
            step_entered_at=row["step_entered_at"],
            context=_json_field(row.get("context"), {}),
            triggered_by=EnrollmentSource(row["triggered_by"]),
            lease_owner=row.get("lease_owner"),
            lease_expires_at=row.get("lease_expires_at"),
            version=row["version"],
            last_error=row.get("last_error"),
            enrolled_at=row["enrolled_at"],
            completed_at=row.get("completed_at"),
            updated_at=row["updated_at"],
        )

    def _row_to_pending(self, row: Dict[str, Any]) -> PendingEventTrigger:
        """Convert database row to PendingEventTrigger"""
        return PendingEventTrigger(
            pending_id=row["pending_id"],
            campaign_id=row["campaign_id"],
            event=DomainEvent.model_validate(_json_field(row.get("event"), {})),
            status=TriggerRunStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row.get("last_error"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_record(self, row: Dict[str, Any]) -> StepExecutionRecord:
        """Convert database row to StepExecutionRecord"""
        return StepExecutionRecord(
            record_id=row["record_id"],
            enrollment_id=row["enrollment_id"],
            step_id=row["step_id"],
            attempt_number=row["attempt_number"],
            started_at=row["started_at"],
            result=StepResult(row["result"]),
            error_detail=row.get("error_detail"),
            dispatch_id=row.get("dispatch_id"),
            next_step_id=row.get("next_step_id"),
        )
