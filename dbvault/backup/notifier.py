"""
Run notifications.

dispatch_notification picks one of three notification paths from the run
status and applies the per-status switches. EmailNotifier delivers the
notification over SMTP as a plain-text e-mail with an HTML alternative.
"""

import html
import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional

from .retry import NOTIFICATION_PROFILE, RetryConfig, RetryPolicy
from .types import Notifier, NotificationOptions, RunStatus, RunSummary


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""
    pass


SUBJECT_PREFIXES = {
    RunStatus.SUCCESS: 'Database Backup Successful',
    RunStatus.PARTIAL: 'Database Backup Partial Success',
    RunStatus.FAILURE: 'Database Backup Failed',
}


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ('KB', 'MB'):
        if value < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"


def _format_duration(duration_ms: int) -> str:
    seconds = duration_ms // 1000
    minutes, seconds = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _suggested_actions(summary: RunSummary) -> List[str]:
    actions = []
    for classified in summary.classified_errors:
        for action in classified.suggested_actions:
            if action not in actions:
                actions.append(action)
    return actions


def build_subject(summary: RunSummary) -> str:
    return f"{SUBJECT_PREFIXES[summary.status]} - {summary.finished_at.strftime('%Y-%m-%d %H:%M')}"


def build_body(summary: RunSummary, include_details: bool = True) -> str:
    """
    Render the plain-text notification body.

    Args:
        summary: Run summary
        include_details: Whether to list every artifact and suggested actions

    Returns:
        Body text
    """
    lines = [
        f"Backup status: {summary.status.value.upper()}",
        '',
        f"Started:  {summary.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Finished: {summary.finished_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Duration: {_format_duration(summary.duration_ms)}",
        '',
        f"Files: {summary.succeeded} of {summary.total_artifacts} uploaded, {summary.failed} failed",
        f"Total size: {_format_bytes(summary.total_raw_bytes)} raw, "
        f"{_format_bytes(summary.total_packaged_bytes)} stored "
        f"(ratio {summary.compression_ratio:.2f}x)",
    ]

    if include_details and summary.outcomes:
        lines.append('')
        lines.append('File details:')
        for outcome in summary.outcomes:
            artifact = outcome.artifact
            if outcome.success:
                lines.append(
                    f"  [OK]     {artifact.name} ({_format_bytes(artifact.stored_size)}) -> {outcome.remote_location}"
                )
            else:
                lines.append(f"  [FAILED] {artifact.name}: {outcome.error}")

    if summary.errors:
        lines.append('')
        lines.append('Errors:')
        for error in summary.errors:
            lines.append(f"  - {error}")

    if include_details and summary.classified_errors:
        actions = _suggested_actions(summary)
        if actions:
            lines.append('')
            lines.append('Suggested actions:')
            for action in actions:
                lines.append(f"  - {action}")

    return '\n'.join(lines) + '\n'


STATUS_COLORS = {
    RunStatus.SUCCESS: '#2e7d32',
    RunStatus.PARTIAL: '#f9a825',
    RunStatus.FAILURE: '#c62828',
}


def _html_list(title: str, items: List[str]) -> str:
    rows = ''.join(f"<li>{html.escape(item)}</li>" for item in items)
    return f"<h3>{html.escape(title)}</h3><ul>{rows}</ul>"


def build_html_body(summary: RunSummary, include_details: bool = True) -> str:
    """HTML rendering of the same content as build_body."""
    status = summary.status
    parts = [
        f"<h2 style=\"color: {STATUS_COLORS[status]}\">{html.escape(SUBJECT_PREFIXES[status])}</h2>",
        '<table>',
        f"<tr><td>Started</td><td>{summary.started_at.strftime('%Y-%m-%d %H:%M:%S')}</td></tr>",
        f"<tr><td>Finished</td><td>{summary.finished_at.strftime('%Y-%m-%d %H:%M:%S')}</td></tr>",
        f"<tr><td>Duration</td><td>{_format_duration(summary.duration_ms)}</td></tr>",
        f"<tr><td>Files</td><td>{summary.succeeded} of {summary.total_artifacts} uploaded, "
        f"{summary.failed} failed</td></tr>",
        f"<tr><td>Total size</td><td>{_format_bytes(summary.total_raw_bytes)} raw, "
        f"{_format_bytes(summary.total_packaged_bytes)} stored "
        f"(ratio {summary.compression_ratio:.2f}x)</td></tr>",
        '</table>',
    ]

    if include_details and summary.outcomes:
        details = []
        for outcome in summary.outcomes:
            artifact = outcome.artifact
            if outcome.success:
                size = _format_bytes(artifact.stored_size)
                details.append(f"[OK] {artifact.name} ({size}) -> {outcome.remote_location}")
            else:
                details.append(f"[FAILED] {artifact.name}: {outcome.error}")
        parts.append(_html_list('File details', details))

    if summary.errors:
        parts.append(_html_list('Errors', list(summary.errors)))

    if include_details and summary.classified_errors:
        actions = _suggested_actions(summary)
        if actions:
            parts.append(_html_list('Suggested actions', actions))

    return '<html><body>' + ''.join(parts) + '</body></html>'


class EmailNotifier:
    """
    Notifier that sends e-mails with text and HTML bodies over SMTP.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        use_tls: bool = True,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize e-mail notifier.

        Args:
            host: SMTP server host
            port: SMTP server port
            use_tls: Upgrade the connection with STARTTLS
            username: SMTP username (login skipped if empty)
            password: SMTP password
            sender: From address (defaults to username)
            timeout: Socket timeout in seconds
        """
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.sender = sender or username or 'dbvault@localhost'
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if not self.host:
            raise NotificationError('SMTP host is not configured')

        connection = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.use_tls:
                connection.starttls()
            if self.username and self.password:
                connection.login(self.username, self.password)
        except smtplib.SMTPAuthenticationError as e:
            connection.close()
            raise NotificationError(f"SMTP authentication failed: {e}")
        except Exception:
            connection.close()
            raise
        return connection

    def verify_connection(self):
        """
        Open and close an SMTP session.

        Raises:
            NotificationError: If authentication fails or the host is missing
            OSError: If the server cannot be reached
        """
        connection = self._connect()
        try:
            connection.noop()
        finally:
            connection.quit()
        logger.info(f"SMTP connection verified ({self.host}:{self.port})")

    def send(self, recipients: List[str], subject: str, body: str, html_body: Optional[str] = None):
        """
        Send one e-mail, optionally with an HTML alternative to the text body.

        Raises:
            NotificationError: If the server rejects the message
        """
        message = EmailMessage()
        message['Subject'] = subject
        message['From'] = self.sender
        message['To'] = ', '.join(recipients)
        message.set_content(body)
        if html_body:
            message.add_alternative(html_body, subtype='html')

        connection = self._connect()
        try:
            connection.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            raise NotificationError(f"All recipients refused: {e}")
        except smtplib.SMTPResponseException as e:
            raise NotificationError(f"SMTP error {e.smtp_code}: {e.smtp_error!r}")
        finally:
            connection.quit()

        logger.info(f"Notification sent to {len(recipients)} recipient(s): {subject}")

    def _notify(self, summary: RunSummary, options: NotificationOptions):
        self.send(
            list(options.recipients),
            build_subject(summary),
            build_body(summary, options.include_details),
            build_html_body(summary, options.include_details),
        )

    def notify_success(self, summary: RunSummary, options: NotificationOptions):
        self._notify(summary, options)

    def notify_partial(self, summary: RunSummary, options: NotificationOptions):
        self._notify(summary, options)

    def notify_failure(self, summary: RunSummary, options: NotificationOptions):
        self._notify(summary, options)


def dispatch_notification(
    summary: RunSummary,
    notifier: Notifier,
    options: NotificationOptions,
    retry_policy: Optional[RetryPolicy] = None,
    retry_config: RetryConfig = NOTIFICATION_PROFILE,
) -> Optional[RunStatus]:
    """
    Send the notification matching the run status.

    Args:
        summary: Run summary
        notifier: Notifier implementation
        options: Switches and recipients
        retry_policy: Policy used to retry delivery
        retry_config: Retry profile for delivery

    Returns:
        The status whose path was invoked, or None if nothing was sent

    Raises:
        RetryExhaustedError: If delivery failed on every allowed attempt
    """
    if not options.recipients:
        logger.info('No notification recipients configured, skipping notification')
        return None

    if not options.enabled_for(summary.status):
        logger.info(f"Notifications disabled for status {summary.status.value}")
        return None

    paths = {
        RunStatus.SUCCESS: notifier.notify_success,
        RunStatus.PARTIAL: notifier.notify_partial,
        RunStatus.FAILURE: notifier.notify_failure,
    }
    send = paths[summary.status]

    policy = retry_policy or RetryPolicy()
    policy.run(
        lambda: send(summary, options),
        retry_config,
        f"Send {summary.status.value} notification"
    )
    return summary.status
