"""
Attachment resolution for rule notifications.

Contract confirmations link the signed contract PDF, payment emails carry the
matched payment schedule as CSV, legal notices carry the case summary.
"""

import csv
import io
from typing import Any, Dict, List

from models.notification import Recipient, TriggerType

SCHEDULE_COLUMNS = ("due_date", "amount", "status")


def _as_content(text: str) -> List[int]:
    # Resend accepts attachment content as a list of byte values
    return list(text.encode("utf-8"))


def _contract_attachment(recipient: Recipient) -> List[Dict[str, Any]]:
    lease = recipient.lease or {}
    url = lease.get("contract_document_url") or lease.get("document_url")
    if not url:
        return []
    number = lease.get("agreement_number") or lease.get("id")
    return [{"filename": f"contract-{number}.pdf", "path": url}]


def _payment_schedule_attachment(recipient: Recipient) -> List[Dict[str, Any]]:
    if not recipient.payment_schedules:
        return []

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(SCHEDULE_COLUMNS)
    for schedule in recipient.payment_schedules:
        writer.writerow([schedule.get(column, "") for column in SCHEDULE_COLUMNS])

    return [{"filename": "payment-schedule.csv", "content": _as_content(buffer.getvalue())}]


def _legal_case_attachment(recipient: Recipient) -> List[Dict[str, Any]]:
    case = recipient.legal_case
    if not case:
        return []

    reference = case.get("case_number") or case["id"]
    lines = [f"Legal case {reference}"]
    for key in ("case_type", "status", "amount_owed", "description", "created_at"):
        if case.get(key) is not None:
            lines.append(f"{key.replace('_', ' ').capitalize()}: {case[key]}")

    return [{"filename": f"legal-case-{reference}.txt", "content": _as_content("\n".join(lines) + "\n")}]


ATTACHMENT_BUILDERS = {
    TriggerType.CONTRACT_CONFIRMATION: _contract_attachment,
    TriggerType.PAYMENT_REMINDER: _payment_schedule_attachment,
    TriggerType.LATE_PAYMENT: _payment_schedule_attachment,
    TriggerType.LEGAL_NOTICE: _legal_case_attachment,
}


def resolve_attachments(trigger_type: TriggerType, recipient: Recipient) -> List[Dict[str, Any]]:
    """
    Build the attachments for a trigger.

    Raises whatever the builder raises; the rule processor decides how to
    degrade.
    """
    builder = ATTACHMENT_BUILDERS.get(trigger_type)
    if builder is None:
        return []
    return builder(recipient)
