"""
Automation rule processing.

For every active rule: select recipients, drop those notified inside the
dedup window, render the template, send immediately and record the outcome.
Failed immediate sends are not retried here; the recipient still matches on
the next scheduled run once the dedup window has passed.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from models.notification import (
    EmailTemplate,
    LogStatus,
    MetricType,
    NotificationLog,
    NotificationRule,
    Recipient,
    RuleRunStats,
    TriggerType,
)
from models.types import EntityBundle
from notifications.attachments import resolve_attachments
from notifications.dedup import already_notified
from notifications.email_sender import append_opt_out_footer, send_email
from notifications.error_logger import log_notification_error
from notifications.metrics import increment_metric
from notifications.opt_out_tokens import build_opt_out_url, opt_out_enabled
from notifications.recipient_selector import (
    LEASE_COLUMNS,
    RecipientSelectionError,
    select_recipients,
)
from notifications.template_renderer import render
from shared.config import PipelineConfig, load_config
from shared.db import get_supabase_client
from shared.utils import utc_now

RULE_COLUMNS = "*, email_templates(id, name, subject, content, variable_mappings)"

AGREEMENT_FIELDS = (
    "id",
    "agreement_number",
    "start_date",
    "end_date",
    "rent_amount",
    "total_amount",
)
VEHICLE_FIELDS = ("id", "make", "model", "year", "license_plate")


def fetch_active_rules(supabase: Any) -> List[NotificationRule]:
    """Load active rules with their templates; malformed rows are logged and skipped."""
    response = (
        supabase.table("email_automation_rules")
        .select(RULE_COLUMNS)
        .eq("is_active", True)
        .execute()
    )

    rules = []
    for row in response.data or []:
        try:
            rules.append(NotificationRule.model_validate(row))
        except ValidationError as e:
            log_notification_error(
                error_type="selection",
                error_message=f"Invalid automation rule: {e}",
                context={"rule_id": row.get("id"), "trigger_type": row.get("trigger_type")},
            )
            print(f"  ⚠️  Skipping invalid rule {row.get('id')}")
    return rules


def _fetch_template(supabase: Any, template_id: str) -> Optional[EmailTemplate]:
    response = (
        supabase.table("email_templates")
        .select("id, name, subject, content, variable_mappings")
        .eq("id", template_id)
        .limit(1)
        .execute()
    )
    if not response.data:
        return None
    return EmailTemplate.model_validate(response.data[0])


def build_entity_bundle(supabase: Any, recipient: Recipient) -> EntityBundle:
    """
    Assemble the customer / agreement / vehicle field maps for rendering.

    Uses the lease attached during selection, otherwise the customer's most
    recent lease. A failed lookup leaves agreement and vehicle empty.
    """
    lease = recipient.lease
    vehicle = recipient.vehicle

    if lease is None:
        try:
            response = (
                supabase.table("leases")
                .select(LEASE_COLUMNS)
                .eq("customer_id", recipient.id)
                .order("start_date", desc=True)
                .limit(1)
                .execute()
            )
            if response.data:
                lease = dict(response.data[0])
                vehicle = vehicle or lease.pop("vehicle", None)
        except Exception as e:
            log_notification_error(
                error_type="selection",
                error_message=f"Could not load agreement for rendering: {e}",
                context={"recipient_id": recipient.id},
            )

    lease = lease or {}
    vehicle = vehicle or {}
    return {
        "customer": recipient.customer_fields(),
        "agreement": {key: lease.get(key) for key in AGREEMENT_FIELDS},
        "vehicle": {key: vehicle.get(key) for key in VEHICLE_FIELDS},
    }


def _render_or_raw(content: str, bundle: EntityBundle) -> str:
    try:
        return render(content, bundle)
    except Exception as e:
        log_notification_error(
            error_type="sending",
            error_message=f"Render failed, sending raw template content: {e}",
        )
        return content


def _safe_attachments(rule: NotificationRule, recipient: Recipient) -> List[Dict[str, Any]]:
    try:
        return resolve_attachments(rule.trigger_type, recipient)
    except Exception as e:
        log_notification_error(
            error_type="attachments",
            error_message=str(e),
            context={
                "rule_id": rule.id,
                "recipient_id": recipient.id,
                "trigger_type": rule.trigger_type.value,
            },
        )
        print(f"  ⚠️  Attachments unavailable for {recipient.id}, sending without")
        return []


def _set_completion_flag(supabase: Any, rule: NotificationRule, recipient: Recipient) -> None:
    """Mark one-shot notifications as done so the recipient stops matching."""
    try:
        if rule.trigger_type == TriggerType.WELCOME:
            supabase.table("profiles").update({"welcome_email_sent": True}).eq(
                "id", recipient.id
            ).execute()
        elif rule.trigger_type == TriggerType.CONTRACT_CONFIRMATION and recipient.lease:
            supabase.table("leases").update({"confirmation_email_sent": True}).eq(
                "id", recipient.lease["id"]
            ).execute()
    except Exception as e:
        # The send happened; the dedup window covers the next run
        log_notification_error(
            error_type="sending",
            error_message=f"Could not set completion flag: {e}",
            context={"rule_id": rule.id, "recipient_id": recipient.id},
        )


def _record_log(supabase: Any, log: NotificationLog) -> bool:
    """Write the attempt to the notification log; a failed write never undoes a send."""
    try:
        supabase.table("email_notification_logs").insert(log.to_row()).execute()
        return True
    except Exception as e:
        log_notification_error(
            error_type="sending",
            error_message=f"Could not record notification log: {e}",
            context={
                "rule_id": log.rule_id,
                "recipient_id": log.recipient_id,
                "status": log.status.value,
                "message_id": log.message_id,
            },
        )
        print(f"  ⚠️  Could not record notification log for {log.recipient_email}")
        return False


def notify_recipient(
    supabase: Any,
    rule: NotificationRule,
    template: EmailTemplate,
    recipient: Recipient,
    now: datetime,
    config: PipelineConfig,
    stats: RuleRunStats,
    dry_run: bool = False,
) -> None:
    """Send one rule notification to one recipient and record the outcome."""
    if already_notified(supabase, rule.id, recipient.id, config.dedup_window_hours, now):
        print(f"  ⊘ Skipping recent notification for recipient {recipient.id}")
        stats.skipped += 1
        return

    bundle = build_entity_bundle(supabase, recipient)
    subject = _render_or_raw(template.subject or "Notification", bundle)
    html = _render_or_raw(template.content, bundle)
    if opt_out_enabled():
        html = append_opt_out_footer(
            html, build_opt_out_url(recipient.email, config.frontend_base_url)
        )
    attachments = _safe_attachments(rule, recipient)

    if dry_run:
        print(f"  [DRY RUN] Would send '{subject}' to {recipient.email}")
        stats.sent += 1
        return

    result = send_email(
        recipient.email,
        subject,
        html,
        attachments=attachments,
        from_email=config.from_email,
        timeout_seconds=config.send_timeout_seconds,
    )

    log = NotificationLog(
        rule_id=rule.id,
        template_id=rule.template_id,
        recipient_id=recipient.id,
        recipient_email=recipient.email,
        status=LogStatus.SENT if result["success"] else LogStatus.FAILED,
        message_id=result.get("email_id"),
        error_message=result.get("error"),
        metadata={"trigger_type": rule.trigger_type.value},
    )
    _record_log(supabase, log)

    if result["success"]:
        print(f"  ✓ Sent email to {recipient.email} for rule {rule.name}")
        stats.sent += 1
        _set_completion_flag(supabase, rule, recipient)
        increment_metric(supabase, MetricType.SUCCESSFUL_SENT)
    else:
        print(f"  ✗ Failed to send to {recipient.email}: {result.get('error')}")
        stats.failed += 1
        increment_metric(supabase, MetricType.FAILED_SENT)
        log_notification_error(
            error_type="sending",
            error_message=result.get("error", "Unknown error"),
            context={
                "rule_id": rule.id,
                "recipient_id": recipient.id,
                "recipient_email": recipient.email,
            },
        )


def process_rule(
    supabase: Any,
    rule: NotificationRule,
    now: datetime,
    config: PipelineConfig,
    stats: RuleRunStats,
    dry_run: bool = False,
) -> None:
    """Process a single rule; recipient-level errors never escape."""
    template = rule.template or _fetch_template(supabase, rule.template_id)
    if template is None:
        raise ValueError(f"Template {rule.template_id} not found")

    recipients = select_recipients(supabase, rule, now, config)
    print(f"Rule '{rule.name}' ({rule.trigger_type.value}): {len(recipients)} recipient(s)")

    for recipient in recipients:
        try:
            notify_recipient(supabase, rule, template, recipient, now, config, stats, dry_run)
        except Exception as e:
            stats.failed += 1
            error_file = log_notification_error(
                error_type="sending",
                error_message=str(e),
                context={"rule_id": rule.id, "recipient_id": recipient.id},
            )
            print(f"  ✗ Error notifying {recipient.id}. Details logged to: {error_file}")


def process_rules(
    now: datetime | None = None,
    config: PipelineConfig | None = None,
    supabase: Any = None,
    dry_run: bool = False,
) -> RuleRunStats:
    """
    Evaluate every active automation rule once.

    Args:
        now: Evaluation time (defaults to current UTC time)
        config: Pipeline configuration (defaults to environment)
        supabase: Supabase client (defaults to a new service client)
        dry_run: Select and render without sending or writing

    Returns:
        RuleRunStats with rules processed / failed and emails sent / failed / skipped
    """
    now = now or utc_now()
    config = config or load_config()
    stats = RuleRunStats()

    try:
        supabase = supabase or get_supabase_client(config.query_timeout_seconds)
        rules = fetch_active_rules(supabase)
    except Exception as e:
        error_file = log_notification_error(error_type="selection", error_message=str(e))
        print(f"  ⚠️  Error loading automation rules. Details logged to: {error_file}")
        return stats

    for rule in rules:
        try:
            process_rule(supabase, rule, now, config, stats, dry_run)
            stats.processed += 1
        except RecipientSelectionError as e:
            stats.rules_failed += 1
            error_file = log_notification_error(
                error_type="selection",
                error_message=str(e),
                context={"rule_id": e.rule_id, "trigger_type": e.trigger_type},
            )
            print(f"  ⚠️  Error getting recipients for rule {rule.id}. Details logged to: {error_file}")
        except Exception as e:
            stats.rules_failed += 1
            error_file = log_notification_error(
                error_type="selection",
                error_message=str(e),
                context={"rule_id": rule.id},
            )
            print(f"  ⚠️  Error processing rule {rule.id}. Details logged to: {error_file}")

    return stats
