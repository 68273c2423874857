"""
Google Calendar Service
Pushes appointments to a trainer's Google Calendar, keeps their titles in step with
the appointment status and pulls the trainer's other events in as blocked time
"""
import base64
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from cryptography.fernet import Fernet
from sqlalchemy.orm import Session, joinedload

from ..config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, SECRET_KEY
from ..models import Appointment, AppointmentStatus
from ..models_google_calendar import BlockedTime, GoogleCalendarIntegration
from ..shared.errors import TransientProviderError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Statuses Google answers with that are worth retrying later
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

# Google event colorId per appointment status; anything else is "9" (blue)
EVENT_COLORS = {
    AppointmentStatus.COMPLETED: "10",
    AppointmentStatus.CANCELLED: "11",
    AppointmentStatus.RESCHEDULED: "6",
}
DEFAULT_EVENT_COLOR = "9"

# How far ahead events are pulled into blocked time
PULL_WINDOW_DAYS = 90


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=10.0)


def get_cipher() -> Fernet:
    """Fernet cipher for stored OAuth tokens, keyed from SECRET_KEY"""
    key = base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest())
    return Fernet(key)


def encrypt_token(token: str) -> str:
    return get_cipher().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    return get_cipher().decrypt(encrypted_token.encode()).decode()


def get_integration(db: Session, user_id: int) -> Optional[GoogleCalendarIntegration]:
    return db.query(GoogleCalendarIntegration).filter(GoogleCalendarIntegration.user_id == user_id).first()


async def get_valid_access_token(integration: GoogleCalendarIntegration, db: Session) -> Optional[str]:
    """
    Get a valid access token, refreshing if it expires within 5 minutes

    Returns None when Google refuses the refresh (revoked or invalid grant).

    Raises:
        TransientProviderError: If Google cannot be reached or answers 429/5xx
    """
    if integration.token_expires_at > datetime.utcnow() + timedelta(minutes=5):
        return decrypt_token(integration.access_token)

    logger.info(f"🔄 Google Calendar token expired for user {integration.user_id}, refreshing...")
    try:
        async with _client() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": GOOGLE_CLIENT_ID,
                    "client_secret": GOOGLE_CLIENT_SECRET,
                    "refresh_token": decrypt_token(integration.refresh_token),
                    "grant_type": "refresh_token",
                },
            )
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Google token refresh failed: {e}", provider="google") from e

    if response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientProviderError(
            f"Google token endpoint unavailable (HTTP {response.status_code})", provider="google"
        )
    if response.status_code != 200:
        logger.error(f"❌ Token refresh failed: {response.text}")
        return None

    tokens = response.json()
    new_access_token = tokens.get("access_token")
    if not new_access_token:
        logger.error("❌ No access token in refresh response")
        return None

    integration.access_token = encrypt_token(new_access_token)
    integration.token_expires_at = datetime.utcnow() + timedelta(seconds=tokens.get("expires_in", 3600))
    db.commit()

    logger.info("✅ Google Calendar token refreshed successfully")
    return new_access_token


def format_event_title(client_name: str, status: str) -> str:
    prefixes = {
        AppointmentStatus.COMPLETED: "✓ ",
        AppointmentStatus.CANCELLED: "✗ ",
        AppointmentStatus.RESCHEDULED: "↻ ",
    }
    return f"{prefixes.get(status, '')}{client_name}"


def build_event_data(appointment: Appointment) -> dict[str, Any]:
    client_name = appointment.client.full_name if appointment.client else "Client"
    description = f"Training session with {client_name}\nStatus: {appointment.status}"
    if appointment.notes:
        description += f"\n\nNotes: {appointment.notes}"
    return {
        "summary": format_event_title(client_name, appointment.status),
        "description": description,
        "colorId": EVENT_COLORS.get(appointment.status, DEFAULT_EVENT_COLOR),
        "start": {"dateTime": appointment.start_time.isoformat()},
        "end": {"dateTime": appointment.end_time.isoformat()},
    }


async def create_calendar_event(db: Session, appointment: Appointment) -> Optional[str]:
    """
    Create a Google Calendar event for an appointment and remember its id

    Returns the event id, or None if the trainer has no usable integration.

    Raises:
        TransientProviderError: On transport failures or 429/5xx answers
    """
    integration = get_integration(db, appointment.trainer_id)
    if not integration or not integration.auto_sync_enabled:
        logger.info("ℹ️ Google Calendar not connected or auto-sync disabled")
        return None

    access_token = await get_valid_access_token(integration, db)
    if not access_token:
        logger.error(f"❌ Failed to get valid access token for trainer {appointment.trainer_id}")
        return None

    calendar_id = integration.google_calendar_id or "primary"
    try:
        async with _client() as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events",
                headers={"Authorization": f"Bearer {access_token}"},
                json=build_event_data(appointment),
            )
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Google Calendar request failed: {e}", provider="google") from e

    if response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientProviderError(
            f"Google Calendar unavailable (HTTP {response.status_code})", provider="google"
        )
    if response.status_code not in (200, 201):
        logger.error(f"❌ Failed to create calendar event: {response.text}")
        return None

    event_id = response.json().get("id")
    appointment.google_event_id = event_id
    db.commit()

    logger.info(f"✅ Google Calendar event created: {event_id}")
    return event_id


async def update_calendar_event(db: Session, appointment: Appointment) -> bool:
    """
    Rewrite an appointment's Google event so its title, color and description
    match the current status

    Returns True when Google accepted the update. An event Google no longer
    has is forgotten (google_event_id cleared) and False is returned.

    Raises:
        TransientProviderError: On transport failures or 429/5xx answers
    """
    if not appointment.google_event_id:
        return False
    integration = get_integration(db, appointment.trainer_id)
    if not integration or not integration.auto_sync_enabled:
        logger.info("ℹ️ Google Calendar not connected or auto-sync disabled")
        return False

    access_token = await get_valid_access_token(integration, db)
    if not access_token:
        logger.error(f"❌ Failed to get valid access token for trainer {appointment.trainer_id}")
        return False

    calendar_id = integration.google_calendar_id or "primary"
    event_id = appointment.google_event_id
    try:
        async with _client() as client:
            response = await client.patch(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events/{event_id}",
                headers={"Authorization": f"Bearer {access_token}"},
                json=build_event_data(appointment),
            )
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Google Calendar request failed: {e}", provider="google") from e

    if response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientProviderError(
            f"Google Calendar unavailable (HTTP {response.status_code})", provider="google"
        )
    if response.status_code in (404, 410):
        logger.warning(f"⚠️ Google Calendar event {event_id} no longer exists, unlinking appointment")
        appointment.google_event_id = None
        db.commit()
        return False
    if response.status_code != 200:
        logger.error(f"❌ Failed to update calendar event: {response.text}")
        return False

    logger.info(f"✅ Google Calendar event updated: {event_id} ({appointment.status})")
    return True


async def delete_calendar_event(db: Session, trainer_id: int, google_event_id: str) -> bool:
    """
    Delete a Google Calendar event

    Returns True when the event is gone (including when Google already
    deleted it), False when the trainer has no usable integration or Google
    refuses.

    Raises:
        TransientProviderError: On transport failures or 429/5xx answers
    """
    integration = get_integration(db, trainer_id)
    if not integration:
        logger.info("ℹ️ Google Calendar not connected")
        return False

    access_token = await get_valid_access_token(integration, db)
    if not access_token:
        logger.error(f"❌ Failed to get valid access token for trainer {trainer_id}")
        return False

    calendar_id = integration.google_calendar_id or "primary"
    try:
        async with _client() as client:
            response = await client.delete(
                f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events/{google_event_id}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as e:
        raise TransientProviderError(f"Google Calendar request failed: {e}", provider="google") from e

    if response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientProviderError(
            f"Google Calendar unavailable (HTTP {response.status_code})", provider="google"
        )
    if response.status_code not in (200, 204, 404, 410):
        logger.error(f"❌ Failed to delete calendar event: {response.text}")
        return False

    logger.info(f"✅ Google Calendar event deleted: {google_event_id}")
    return True


def parse_event_time(value: Optional[dict]) -> Optional[datetime]:
    """
    Naive server-local datetime of a Google event start/end

    Returns None for all-day events, which carry a date but no dateTime.
    """
    raw = (value or {}).get("dateTime")
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


async def list_calendar_events(
    access_token: str, calendar_id: str, time_min: datetime, time_max: datetime
) -> list[dict]:
    """
    Single (recurrence-expanded) events between two local datetimes, across all pages

    Raises:
        TransientProviderError: On transport failures or non-200 answers
    """
    params = {
        "timeMin": time_min.astimezone().isoformat(),
        "timeMax": time_max.astimezone().isoformat(),
        "singleEvents": "true",
        "orderBy": "startTime",
        "maxResults": "250",
    }
    events = []
    async with _client() as client:
        while True:
            try:
                response = await client.get(
                    f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events",
                    headers={"Authorization": f"Bearer {access_token}"},
                    params=params,
                )
            except httpx.HTTPError as e:
                raise TransientProviderError(f"Google Calendar request failed: {e}", provider="google") from e
            if response.status_code != 200:
                raise TransientProviderError(
                    f"Google Calendar event listing failed (HTTP {response.status_code})", provider="google"
                )
            data = response.json()
            events.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return events
            params["pageToken"] = page_token


async def pull_calendar_events(db: Session, integration: GoogleCalendarIntegration, now: datetime) -> dict:
    """
    Mirror a trainer's own Google events as BlockedTime rows

    Covers timed events from now to PULL_WINDOW_DAYS ahead. Events this app
    created for appointments and all-day events are ignored. Blocked times
    in the window whose event is gone or cancelled are removed.

    Returns:
        Dict with blocked (rows created or updated) and removed counts
    """
    trainer_id = integration.user_id
    results = {"blocked": 0, "removed": 0}

    access_token = await get_valid_access_token(integration, db)
    if not access_token:
        logger.error(f"❌ Failed to get valid access token for trainer {trainer_id}, pull skipped")
        return results

    time_max = now + timedelta(days=PULL_WINDOW_DAYS)
    events = await list_calendar_events(
        access_token, integration.google_calendar_id or "primary", now, time_max
    )

    own_event_ids = {
        event_id
        for (event_id,) in db.query(Appointment.google_event_id).filter(
            Appointment.trainer_id == trainer_id, Appointment.google_event_id.isnot(None)
        )
    }
    existing = {
        blocked.google_event_id: blocked
        for blocked in db.query(BlockedTime).filter(
            BlockedTime.trainer_id == trainer_id, BlockedTime.end_time >= now
        )
    }
    workspace_id = integration.user.workspace_id

    seen = set()
    for event in events:
        event_id = event.get("id")
        if not event_id or event_id in own_event_ids or event.get("status") == "cancelled":
            continue
        start_time = parse_event_time(event.get("start"))
        end_time = parse_event_time(event.get("end"))
        if start_time is None or end_time is None:
            continue

        seen.add(event_id)
        reason = f"Google Calendar: {event.get('summary') or 'Busy'}"[:500]
        blocked = existing.get(event_id)
        if blocked is None:
            blocked = BlockedTime(workspace_id=workspace_id, trainer_id=trainer_id, google_event_id=event_id)
            db.add(blocked)
        elif (blocked.start_time, blocked.end_time, blocked.reason) == (start_time, end_time, reason):
            continue
        blocked.start_time = start_time
        blocked.end_time = end_time
        blocked.reason = reason
        results["blocked"] += 1

    for event_id, blocked in existing.items():
        if event_id not in seen:
            db.delete(blocked)
            results["removed"] += 1

    db.commit()
    logger.info(
        f"📅 Pulled Google Calendar for trainer {trainer_id}: "
        f"{results['blocked']} blocked, {results['removed']} removed"
    )
    return results


async def sync_calendars(db: Session, now: Optional[datetime] = None) -> dict:
    """
    Batch job: push upcoming SCHEDULED appointments that have no Google event
    yet, then pull each trainer's own events in as blocked time

    Each appointment push and each trainer's pull runs in isolation; a failure
    is logged and the batch continues.
    """
    now = now or datetime.now()
    results = {
        "trainers": 0,
        "created": 0,
        "skipped": 0,
        "failed": 0,
        "blocked": 0,
        "unblocked": 0,
        "pull_failed": 0,
    }

    integrations = (
        db.query(GoogleCalendarIntegration).filter(GoogleCalendarIntegration.auto_sync_enabled.is_(True)).all()
    )
    logger.info(f"🔄 Syncing Google Calendars for {len(integrations)} trainers")

    for integration in integrations:
        results["trainers"] += 1
        trainer_id = integration.user_id
        appointments = (
            db.query(Appointment)
            .options(joinedload(Appointment.client))
            .filter(
                Appointment.trainer_id == trainer_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.start_time >= now,
                Appointment.google_event_id.is_(None),
            )
            .order_by(Appointment.start_time.asc())
            .all()
        )

        for appointment in appointments:
            appointment_id = appointment.id
            try:
                event_id = await create_calendar_event(db, appointment)
            except Exception as e:
                db.rollback()
                logger.error(f"❌ Failed to sync appointment {appointment_id} to Google Calendar: {e}")
                results["failed"] += 1
                continue
            if event_id:
                results["created"] += 1
            else:
                results["skipped"] += 1

        try:
            pulled = await pull_calendar_events(db, integration, now)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Failed to pull Google Calendar for trainer {trainer_id}: {e}")
            results["pull_failed"] += 1
        else:
            results["blocked"] += pulled["blocked"]
            results["unblocked"] += pulled["removed"]

        integration.last_synced_at = now
        db.commit()

    logger.info(
        f"✅ Calendar sync complete: {results['created']} created, "
        f"{results['skipped']} skipped, {results['failed']} failed, "
        f"{results['blocked']} blocked times pulled"
    )
    return results
