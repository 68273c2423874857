"""Monthly billing preview - what MONTHLY clients owe so far and are projected to owe"""

import calendar
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment, TrainerSettings, User
from .group_sessions import GroupSessionDetector
from .rates import effective_group_rate, resolve_session_rate
from .repository import BillingRepository
from .schemas import (
    BillingPeriod,
    ClientPreview,
    ClientSummary,
    CompletedSessions,
    MonthlyPreviewResponse,
    PreviewSession,
    PreviewTotals,
    ScheduledSessions,
)

logger = logging.getLogger(__name__)


def billing_period_for(now: datetime) -> tuple[datetime, datetime]:
    """
    Calendar month containing `now`: first day 00:00 to last day 23:59:59.999999.

    Boundaries are in server-local time; there is no per-trainer timezone.
    """
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_day = calendar.monthrange(now.year, now.month)[1]
    end = now.replace(day=last_day, hour=23, minute=59, second=59, microsecond=999999)
    return start, end


class BillingPreviewService:
    """Service layer for the monthly billing preview"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BillingRepository()

    def get_monthly_preview(
        self, trainer_id: int, workspace_id: int, now: Optional[datetime] = None
    ) -> MonthlyPreviewResponse:
        """
        Build the current month's preview for every MONTHLY client of a workspace.

        Completed sessions already linked to an invoice line item are excluded,
        so running this again with no new appointments returns the same totals.
        """
        now = now or datetime.now()
        period_start, period_end = billing_period_for(now)

        settings = self.repo.get_trainer_settings(self.db, trainer_id)
        detector = GroupSessionDetector(
            self.db, settings.group_session_matching_logic if settings else None
        )
        pool = detector.load_pool(trainer_id, workspace_id, period_start, period_end)

        clients = self.repo.get_monthly_clients(self.db, workspace_id)
        logger.info(f"📊 Building monthly preview for trainer {trainer_id}: {len(clients)} monthly clients")

        previews: list[ClientPreview] = []
        for client in clients:
            try:
                preview = self.build_client_preview(
                    client, trainer_id, settings, detector, pool, period_start, period_end, now
                )
            except Exception as e:
                # One broken client must not hide everyone else's preview
                logger.error(f"❌ Failed to build billing preview for client {client.id}: {e}")
                continue
            if preview is not None:
                previews.append(preview)

        # list.sort is stable, so ties keep the name order from the query
        previews.sort(key=lambda p: p.projected_total, reverse=True)

        return MonthlyPreviewResponse(
            billing_period=BillingPeriod(
                start=period_start,
                end=period_end,
                month=now.strftime("%B %Y"),
            ),
            monthly_invoice_day=settings.monthly_invoice_day if settings else 1,
            clients=previews,
            totals=PreviewTotals(
                completed_total=round(sum(p.completed.total for p in previews), 2),
                projected_total=round(sum(p.projected_total for p in previews), 2),
                client_count=len(previews),
            ),
        )

    def build_client_preview(
        self,
        client: User,
        trainer_id: int,
        settings: Optional[TrainerSettings],
        detector: GroupSessionDetector,
        pool: list[Appointment],
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> Optional[ClientPreview]:
        """Preview for one client, or None when the client has no billing profile"""
        profile = client.client_profile
        if profile is None:
            logger.warning(f"⚠️ Client {client.id} has no client profile, skipping preview")
            return None

        completed_appointments = self.repo.get_completed_unbilled_appointments(
            self.db, trainer_id, client.id, period_start, period_end
        )
        scheduled_appointments = self.repo.get_scheduled_appointments(
            self.db, trainer_id, client.id, now, period_end
        )

        completed_total = Decimal("0")
        completed_group_count = 0
        sessions = []
        for appointment in completed_appointments:
            info = detector.classify(appointment, pool)
            rate = resolve_session_rate(profile, settings, info.is_group_session)
            completed_total += rate
            if info.is_group_session:
                completed_group_count += 1
            sessions.append(
                PreviewSession(
                    id=appointment.id,
                    date=appointment.start_time,
                    is_group_session=info.is_group_session,
                    rate=float(rate),
                )
            )

        projected_total = completed_total
        scheduled_group_count = 0
        for appointment in scheduled_appointments:
            info = detector.classify(appointment, pool)
            projected_total += resolve_session_rate(profile, settings, info.is_group_session)
            if info.is_group_session:
                scheduled_group_count += 1

        group_rate = effective_group_rate(profile, settings)

        return ClientPreview(
            client=ClientSummary(id=client.id, full_name=client.full_name, email=client.email),
            individual_rate=float(profile.session_rate),
            group_rate=float(group_rate) if group_rate is not None else None,
            auto_invoice_enabled=bool(profile.auto_invoice_enabled),
            completed=CompletedSessions(
                sessions=sessions,
                group_count=completed_group_count,
                individual_count=len(completed_appointments) - completed_group_count,
                total=float(completed_total),
            ),
            scheduled=ScheduledSessions(
                count=len(scheduled_appointments),
                group_count=scheduled_group_count,
                individual_count=len(scheduled_appointments) - scheduled_group_count,
            ),
            projected_total=float(projected_total),
        )
