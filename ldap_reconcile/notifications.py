"""
Email notification utilities for LDAP Reconcile.

This module sends email notifications when a reconciliation run fails,
when the directory cannot be reached, and (optionally) a summary after
every run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

from ldap_reconcile.models import ExecutionResult, RunStatus

logger = logging.getLogger(__name__)

MAX_LISTED_MESSAGES = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _listed(title: str, messages: List[str]) -> List[str]:
    lines = [f"{title} ({len(messages)}):"]
    for i, message in enumerate(messages[:MAX_LISTED_MESSAGES], 1):
        lines.append(f"  {i}. {message}")
    if len(messages) > MAX_LISTED_MESSAGES:
        lines.append(f"  ... and {len(messages) - MAX_LISTED_MESSAGES} more")
    lines.append("")
    return lines


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP Reconcile Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from LDAP Reconcile."
    ])

    return send_email(f"LDAP Reconcile Alert: {title}", '\n'.join(body_lines), config)


def send_directory_unavailable(error_message: str, config: Dict[str, Any],
                               health: Optional[Dict[str, Any]] = None) -> bool:
    """
    Send notification that the directory could not be reached.

    Args:
        error_message: Connection error description
        config: Notification configuration
        health: Connection health status, as returned by ``HealthStatus.to_dict``
    """
    additional_info = {
        'Component': 'Directory Connection',
        'Impact': 'Reconciliation aborted - no changes applied',
    }
    if health:
        additional_info['Last Attempt'] = health.get('last_attempt')
        additional_info['Next Retry'] = health.get('next_retry_eligible')

    return send_failure_notification("Directory Unavailable", error_message, config, additional_info)


def send_run_summary(result: ExecutionResult, config: Dict[str, Any],
                     plan_summary: Optional[Dict[str, int]] = None,
                     runtime_seconds: float = 0.0) -> bool:
    """
    Send a summary of a finished run.

    Runs that completed with errors or aborted are always sent when failure
    notifications are on; clean runs only when ``email_on_success`` is set.

    Args:
        result: Result of the run
        config: Notification configuration
        plan_summary: Planned action counts by kind
        runtime_seconds: Duration of the run

    Returns:
        True if notification sent successfully
    """
    failed = result.status in (RunStatus.ABORTED, RunStatus.COMPLETED_WITH_ERRORS)
    if failed and not config.get('email_on_failure', True):
        return False
    if not failed and not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    if runtime_seconds > 60:
        runtime_str = f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    else:
        runtime_str = f"{runtime_seconds:.2f} seconds"

    body_lines = [
        "LDAP Reconcile Summary Report",
        f"Timestamp: {timestamp}",
        f"Status: {result.status.value}",
        "",
        "Overall Statistics:",
        f"  Total runtime: {runtime_str}",
        f"  Actions: {result.total}",
        f"  Succeeded: {result.succeeded}",
        f"  Failed: {result.failed}",
        f"  Skipped: {result.skipped}",
        ""
    ]

    if plan_summary:
        body_lines.append("Planned Actions:")
        for kind, count in sorted(plan_summary.items()):
            body_lines.append(f"  {kind}: {count}")
        body_lines.append("")

    if result.counts:
        body_lines.append("Applied Actions:")
        for kind, count in sorted(result.counts.items()):
            body_lines.append(f"  {kind}: {count}")
        body_lines.append("")

    if result.errors:
        body_lines.extend(_listed("Errors", result.errors))
    if result.warnings:
        body_lines.extend(_listed("Warnings", result.warnings))

    body_lines.append("This is an automated message from LDAP Reconcile.")

    subject = "LDAP Reconcile: " + ("Run Failed" if failed else "Run Completed")
    return send_email(subject, '\n'.join(body_lines), config)
