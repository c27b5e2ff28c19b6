"""
Email sending via Resend API for the notification pipeline.

Handles rule notifications, queued deliveries and operator health alerts.
"""

import os
from typing import Any, Dict, List, Optional

import resend

from models.notification import HealthReport, HealthStatus


# Initialize Resend with API key from environment
resend.api_key = os.getenv('RESEND_API_KEY')

DEFAULT_FROM_EMAIL = 'Rent Car System <notifications@alaraf.online>'
DEFAULT_SEND_TIMEOUT_SECONDS = 30.0

_send_timeout_seconds: Optional[float] = None

RATE_LIMIT_MARKERS = ('rate limit', 'rate_limit', 'too many requests', '429')

STATUS_COLORS = {
    HealthStatus.CRITICAL: '#DC2626',
    HealthStatus.WARNING: '#F59E0B',
    HealthStatus.HEALTHY: '#10B981',
}


def is_rate_limit_error(error_message: Optional[str]) -> bool:
    """True when a transport error message indicates rate limiting."""
    if not error_message:
        return False
    lowered = error_message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def configure_send_timeout(timeout_seconds: float) -> None:
    """Bound every Resend API request to timeout_seconds."""
    global _send_timeout_seconds
    if timeout_seconds == _send_timeout_seconds:
        return
    resend.default_http_client = resend.RequestsClient(timeout=timeout_seconds)
    _send_timeout_seconds = timeout_seconds


def send_email(
    to: str,
    subject: str,
    html: str,
    attachments: Optional[List[Dict[str, Any]]] = None,
    from_email: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Send a single email through Resend.

    Args:
        to: Recipient email address
        subject: Subject line
        html: Rendered HTML body
        attachments: Resend attachment dicts (filename plus content or path)
        from_email: Sender; defaults to FROM_EMAIL from the environment
        timeout_seconds: Request timeout; defaults to EMAIL_SEND_TIMEOUT_SECONDS or 30

    Returns:
        Dictionary with 'success' (bool), 'email_id' (str if success),
        'error' (str if failed) and 'rate_limited' (bool)
    """
    sender = from_email or os.getenv('FROM_EMAIL', DEFAULT_FROM_EMAIL)

    if timeout_seconds is None:
        timeout_seconds = float(
            os.getenv('EMAIL_SEND_TIMEOUT_SECONDS', DEFAULT_SEND_TIMEOUT_SECONDS)
        )
    configure_send_timeout(timeout_seconds)

    params: Dict[str, Any] = {
        "from": sender,
        "to": to,
        "subject": subject,
        "html": html,
    }
    if attachments:
        params["attachments"] = attachments

    try:
        response = resend.Emails.send(params)

        return {
            'success': True,
            'email_id': response.get('id'),
            'rate_limited': False,
        }

    except Exception as e:
        error = str(e) or e.__class__.__name__
        return {
            'success': False,
            'error': error,
            'rate_limited': is_rate_limit_error(error),
        }


def build_alert_subject(report: HealthReport) -> str:
    return f"[{report.status.value.upper()}] Email System Alert"


def build_alert_html(report: HealthReport) -> str:
    """
    Build HTML body for an operator health alert.

    Args:
        report: Health report that triggered the alert

    Returns:
        HTML string
    """
    color = STATUS_COLORS.get(report.status, '#10B981')
    metrics = report.metrics

    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h1 style="color: {color}; text-transform: uppercase;">
        {report.status.value} Alert
    </h1>
    <p style="font-size: 16px; margin-bottom: 20px;">{report.message}</p>

    <div style="background-color: #f8f9fa; padding: 15px; border-radius: 8px; margin-bottom: 20px;">
        <h2 style="font-size: 18px; margin-top: 0;">Current Metrics</h2>
        <ul style="padding-left: 20px;">
            <li><strong>Total Sent:</strong> {metrics.total_sent}</li>
            <li><strong>Successful:</strong> {metrics.successful_sent}</li>
            <li><strong>Failed:</strong> {metrics.failed_sent}</li>
            <li><strong>Rate Limited:</strong> {metrics.rate_limited_count}</li>
            <li><strong>Failure Rate:</strong> {metrics.failure_rate * 100:.1f}%</li>
            <li><strong>Pending Queue:</strong> {metrics.pending_queue}</li>
            <li><strong>Failures (24h):</strong> {metrics.recent_failures}</li>
        </ul>
    </div>

    <p style="font-size: 14px; color: #6c757d;">
        This is an automated alert sent at {report.timestamp.strftime('%B %d, %Y %H:%M UTC')}.
        Please check the email system dashboards for more details.
    </p>
</div>
"""


def append_opt_out_footer(html: str, opt_out_url: str) -> str:
    """Append the opt-out link to a rendered customer email."""
    footer = f"""
<div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 12px; color: #6b7280; text-align: center;">
    <a href="{opt_out_url}" style="color: #2563eb;">Stop receiving these emails</a>
</div>
"""
    return html + footer
