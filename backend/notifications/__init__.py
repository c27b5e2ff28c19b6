"""
Automated email notifications for the car rental back office.

This module handles:
- Matching customers against automation rules (welcome, contract confirmation,
  payment reminders, late payments, insurance renewals, legal notices)
- Rendering templates and sending notification emails via Resend
- Delivering queued notifications with bounded retry and backoff
- Monitoring email system health and alerting operators
"""

from .rule_processor import process_rules
from .queue_worker import drain_queue, schedule_notification
from .health_monitor import check_health, run_health_check

__all__ = [
    'process_rules',
    'drain_queue',
    'schedule_notification',
    'check_health',
    'run_health_check',
]
