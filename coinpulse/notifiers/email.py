"""
Email SMTP notifier.
"""

import html
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from coinpulse.database.models import NotificationPriority, User
from .base import Notifier, NotificationPayload, NotificationResult


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    channel = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address

    def send(self, user: User, payload: NotificationPayload) -> NotificationResult:
        """Send notification via email."""
        if not user.email:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error="User has no email address",
            )

        try:
            message = self._create_message(user.email, payload)

            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return NotificationResult(success=True, channel=self.channel)

        except smtplib.SMTPAuthenticationError as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=f"Authentication failed: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=f"SMTP error: {str(e)}",
            )

    def _create_message(self, to_address: str, payload: NotificationPayload) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = self._create_subject(payload)
        message["From"] = self.from_address
        message["To"] = to_address

        # Plain text version
        message.attach(MIMEText(self._create_text_body(payload), "plain"))

        # HTML version
        message.attach(MIMEText(self._create_body(payload), "html"))

        return message

    def _create_subject(self, payload: NotificationPayload) -> str:
        """Create email subject."""
        prefix = f"[{payload.priority.value.title()}]"
        if payload.priority == NotificationPriority.CRITICAL:
            prefix = "[CRITICAL]"
        asset = f": {payload.asset_symbol}" if payload.asset_symbol else ""
        return f"{prefix} CoinPulse Alert{asset}"

    def _create_text_body(self, payload: NotificationPayload) -> str:
        """Create plain text email body."""
        return f"""
CoinPulse Alert

{payload.title}
Asset: {payload.asset_symbol or "-"}
Priority: {payload.priority.value.title()}

{payload.message}

Time: {payload.sent_at.strftime("%Y-%m-%d %H:%M:%S %Z")}
"""

    def _create_body(self, payload: NotificationPayload) -> str:
        """Create HTML email body."""
        priority_color = {
            NotificationPriority.LOW: "#95A5A6",
            NotificationPriority.MEDIUM: "#3498DB",
            NotificationPriority.HIGH: "#FFA500",
            NotificationPriority.CRITICAL: "#FF0000",
        }
        color = priority_color.get(payload.priority, "#3498DB")

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .alert-box {{
            border-left: 4px solid {color};
            padding: 15px;
            background-color: #f9f9f9;
            margin-bottom: 20px;
        }}
        .title {{ font-size: 20px; font-weight: bold; color: {color}; }}
        .asset {{ font-size: 16px; color: #333; }}
        .message {{ margin: 15px 0; color: #555; }}
        .meta {{ color: #888; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="alert-box">
        <div class="title">{html.escape(payload.title)}</div>
        <div class="asset">{html.escape(payload.asset_symbol or "")}</div>
        <div class="message">{html.escape(payload.message)}</div>
        <div class="meta">
            Priority: {payload.priority.value.title()}<br>
            Time: {payload.sent_at.strftime("%Y-%m-%d %H:%M:%S %Z")}
        </div>
    </div>
</body>
</html>
"""
