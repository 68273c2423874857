"""Session rate resolution"""

from decimal import Decimal
from typing import Optional

from ...models import ClientProfile, TrainerSettings


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def effective_group_rate(
    profile: ClientProfile, settings: Optional[TrainerSettings]
) -> Optional[Decimal]:
    """Rate a group session would bill at, or None when no group rate is configured"""
    # A zero rate counts as "not set", same as a missing one
    if profile.group_session_rate:
        return _to_decimal(profile.group_session_rate)
    if settings is not None and settings.default_group_session_rate:
        return _to_decimal(settings.default_group_session_rate)
    return None


def resolve_session_rate(
    profile: ClientProfile, settings: Optional[TrainerSettings], is_group_session: bool
) -> Decimal:
    """
    Pick the per-session rate for billing.

    Fallback chain for group sessions: client group rate → trainer default
    group rate → client individual rate. Individual sessions always use the
    client's individual rate.
    """
    if is_group_session:
        group_rate = effective_group_rate(profile, settings)
        if group_rate is not None:
            return group_rate
    return _to_decimal(profile.session_rate)


def session_description(is_group_session: bool, start_time) -> str:
    """Line item / ledger description for a session"""
    session_type = "Group training session" if is_group_session else "Training session"
    return f"{session_type} on {start_time.strftime('%b %d, %Y')}"
