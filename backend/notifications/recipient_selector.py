"""
Recipient selection for automation rules.

Each trigger type has one handler that queries current entity state and
returns the customers the rule applies to, with the related lease, vehicle,
payment schedule, insurance or legal case records attached for rendering.
Handlers only read; no entity is modified here.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from models.notification import NotificationRule, Recipient, TimingType, TriggerType
from models.types import FieldMap
from shared.config import PipelineConfig
from shared.utils import parse_timestamp, to_iso

PROFILE_COLUMNS = (
    "id, email, phone_number, full_name, address, role, created_at, welcome_email_sent"
)
LEASE_COLUMNS = "*, vehicle:vehicles(*)"

WELCOME_WINDOW_HOURS = 24
LEGAL_REMINDER_STATUS = "pending_reminder"


class RecipientSelectionError(Exception):
    """Raised when the entity queries for a rule fail."""

    def __init__(self, rule_id: str, trigger_type: str, cause: Exception):
        self.rule_id = rule_id
        self.trigger_type = trigger_type
        self.cause = cause
        super().__init__(
            f"Recipient selection failed for rule {rule_id} ({trigger_type}): {cause}"
        )


Handler = Callable[[Any, NotificationRule, datetime, PipelineConfig], List[Recipient]]


# -- Shared lookups -----------------------------------------------------------

def _fetch_profiles(supabase: Any, profile_ids: Iterable[str]) -> Dict[str, FieldMap]:
    ids = sorted({pid for pid in profile_ids if pid})
    if not ids:
        return {}
    response = supabase.table("profiles").select(PROFILE_COLUMNS).in_("id", ids).execute()
    return {row["id"]: row for row in response.data or []}


def _fetch_leases(supabase: Any, lease_ids: Iterable[str]) -> Dict[str, FieldMap]:
    ids = sorted({lid for lid in lease_ids if lid})
    if not ids:
        return {}
    response = supabase.table("leases").select(LEASE_COLUMNS).in_("id", ids).execute()
    return {row["id"]: row for row in response.data or []}


def _lease_sort_key(lease: FieldMap) -> datetime:
    return (
        parse_timestamp(lease.get("start_date"))
        or parse_timestamp(lease.get("created_at"))
        or datetime.min.replace(tzinfo=timezone.utc)
    )


def _most_recent(leases: List[FieldMap]) -> Optional[FieldMap]:
    if not leases:
        return None
    return max(leases, key=_lease_sort_key)


def _split_lease(lease: Optional[FieldMap]) -> tuple[Optional[FieldMap], Optional[FieldMap]]:
    """Separate the embedded vehicle from a lease row."""
    if not lease:
        return None, None
    lease = dict(lease)
    vehicle = lease.pop("vehicle", None)
    return lease, vehicle


def _build_recipient(profile: FieldMap, **context: Any) -> Recipient:
    return Recipient.model_validate({**profile, **context})


def _recipients_for_leases(
    supabase: Any,
    leases: List[FieldMap],
    extra: Optional[Callable[[List[FieldMap]], Dict[str, Any]]] = None,
) -> List[Recipient]:
    """
    One recipient per customer of the given leases.

    When a customer has several matching leases the most recent one is used
    for rendering; extra() receives all of them to build additional context.
    """
    leases_by_customer: Dict[str, List[FieldMap]] = {}
    for lease in leases:
        customer_id = lease.get("customer_id")
        if customer_id:
            leases_by_customer.setdefault(customer_id, []).append(lease)

    profiles = _fetch_profiles(supabase, leases_by_customer.keys())

    recipients = []
    for customer_id, customer_leases in leases_by_customer.items():
        profile = profiles.get(customer_id)
        if not profile:
            continue
        lease, vehicle = _split_lease(_most_recent(customer_leases))
        context: Dict[str, Any] = {"lease": lease, "vehicle": vehicle}
        if extra:
            context.update(extra(customer_leases))
        recipients.append(_build_recipient(profile, **context))

    return recipients


def _recipients_for_schedules(supabase: Any, schedules: List[FieldMap]) -> List[Recipient]:
    if not schedules:
        return []

    leases = _fetch_leases(supabase, (s.get("lease_id") for s in schedules))

    schedules_by_lease: Dict[str, List[FieldMap]] = {}
    for schedule in schedules:
        schedules_by_lease.setdefault(schedule.get("lease_id"), []).append(schedule)

    def _schedules_for(customer_leases: List[FieldMap]) -> Dict[str, Any]:
        matched = []
        for lease in customer_leases:
            matched.extend(schedules_by_lease.get(lease["id"], []))
        matched.sort(key=lambda s: s.get("due_date") or "")
        return {"payment_schedules": matched}

    return _recipients_for_leases(supabase, list(leases.values()), _schedules_for)


# -- Trigger handlers -----------------------------------------------------------

def _select_welcome(
    supabase: Any, rule: NotificationRule, now: datetime, config: PipelineConfig
) -> List[Recipient]:
    """Customers created in the last 24h that have not been welcomed yet."""
    since = now - timedelta(hours=WELCOME_WINDOW_HOURS)
    response = (
        supabase.table("profiles")
        .select(PROFILE_COLUMNS)
        .eq("role", "customer")
        .gt("created_at", to_iso(since))
        .eq("welcome_email_sent", False)
        .execute()
    )
    return [_build_recipient(row) for row in response.data or []]


def _select_contract_confirmation(
    supabase: Any, rule: NotificationRule, now: datetime, config: PipelineConfig
) -> List[Recipient]:
    """Customers with an active lease whose confirmation has not been sent."""
    response = (
        supabase.table("leases")
        .select(LEASE_COLUMNS)
        .eq("status", "active")
        .eq("confirmation_email_sent", False)
        .execute()
    )
    return _recipients_for_leases(supabase, response.data or [])


def _select_payment_reminder(
    supabase: Any, rule: NotificationRule, now: datetime, config: PipelineConfig
) -> List[Recipient]:
    """Customers with a pending payment coming due."""
    if rule.timing_type == TimingType.BEFORE:
        until = now + timedelta(days=rule.timing_value)
    elif rule.timing_type == TimingType.ON:
        until = now + timedelta(days=1)
    else:
        # Overdue payments are the late_payment trigger's job
        return []

    response = (
        supabase.table("payment_schedules")
        .select("*")
        .eq("status", "pending")
        .gte("due_date", to_iso(now))
        .lte("due_date", to_iso(until))
        .execute()
    )
    return _recipients_for_schedules(supabase, response.data or [])


def _select_late_payment(
    supabase: Any, rule: NotificationRule, now: datetime, config: PipelineConfig
) -> List[Recipient]:
    """Customers with a pending payment whose due date has passed."""
    response = (
        supabase.table("payment_schedules")
        .select("*")
        .eq("status", "pending")
        .lt("due_date", to_iso(now))
        .execute()
    )
    return _recipients_for_schedules(supabase, response.data or [])


def _select_insurance_renewal(
    supabase: Any, rule: NotificationRule, now: datetime, config: PipelineConfig
) -> List[Recipient]:
    """Customers renting a vehicle whose insurance ends soon."""
    until = now + timedelta(days=config.insurance_window_days)
    response = (
        supabase.table("vehicle_insurance")
        .select("*")
        .gte("end_date", to_iso(now))
        .lte("end_date", to_iso(until))
        .execute()
    )
    policies = response.data or []
    if not policies:
        return []

    policy_by_vehicle = {p["vehicle_id"]: p for p in policies if p.get("vehicle_id")}
    if not policy_by_vehicle:
        return []

    leases_response = (
        supabase.table("leases")
        .select(LEASE_COLUMNS)
        .eq("status", "active")
        .in_("vehicle_id", sorted(policy_by_vehicle))
        .execute()
    )

    def _insurance_for(customer_leases: List[FieldMap]) -> Dict[str, Any]:
        lease = _most_recent(customer_leases)
        return {"insurance": policy_by_vehicle.get(lease.get("vehicle_id")) if lease else None}

    return _recipients_for_leases(supabase, leases_response.data or [], _insurance_for)


def _select_legal_notice(
    supabase: Any, rule: NotificationRule, now: datetime, config: PipelineConfig
) -> List[Recipient]:
    """Customers with a legal case waiting for a reminder."""
    response = (
        supabase.table("legal_cases")
        .select("*")
        .eq("status", LEGAL_REMINDER_STATUS)
        .execute()
    )
    cases = response.data or []
    if not cases:
        return []

    case_by_customer: Dict[str, FieldMap] = {}
    for case in cases:
        customer_id = case.get("customer_id")
        if customer_id and customer_id not in case_by_customer:
            case_by_customer[customer_id] = case

    profiles = _fetch_profiles(supabase, case_by_customer.keys())
    return [
        _build_recipient(profiles[customer_id], legal_case=case)
        for customer_id, case in case_by_customer.items()
        if customer_id in profiles
    ]


TRIGGER_HANDLERS: Dict[TriggerType, Handler] = {
    TriggerType.WELCOME: _select_welcome,
    TriggerType.CONTRACT_CONFIRMATION: _select_contract_confirmation,
    TriggerType.PAYMENT_REMINDER: _select_payment_reminder,
    TriggerType.LATE_PAYMENT: _select_late_payment,
    TriggerType.INSURANCE_RENEWAL: _select_insurance_renewal,
    TriggerType.LEGAL_NOTICE: _select_legal_notice,
}


# -- Public entry point -----------------------------------------------------------

def _filter_opted_out(supabase: Any, recipients: List[Recipient]) -> List[Recipient]:
    """Drop recipients without an email or on the opt-out list."""
    with_email = [r for r in recipients if r.email]
    if not with_email:
        return []

    emails = sorted({r.email.strip().lower() for r in with_email})
    response = (
        supabase.table("email_opt_outs").select("email").in_("email", emails).execute()
    )
    opted_out = {row["email"].strip().lower() for row in response.data or []}

    return [r for r in with_email if r.email.strip().lower() not in opted_out]


def select_recipients(
    supabase: Any,
    rule: NotificationRule,
    now: datetime,
    config: PipelineConfig,
) -> List[Recipient]:
    """
    Find the customers a rule currently applies to.

    Args:
        supabase: Supabase client
        rule: Active automation rule
        now: Evaluation time
        config: Pipeline configuration

    Returns:
        Matching recipients (empty list when nobody matches)

    Raises:
        RecipientSelectionError: If any underlying query fails
    """
    handler = TRIGGER_HANDLERS[rule.trigger_type]
    try:
        recipients = handler(supabase, rule, now, config)
        return _filter_opted_out(supabase, recipients)
    except Exception as e:
        raise RecipientSelectionError(rule.id, rule.trigger_type.value, e) from e
