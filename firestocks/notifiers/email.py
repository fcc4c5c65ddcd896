"""
Email SMTP notifier.
"""

import smtplib
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from firestocks.rules.types import Classification, Outcome
from .base import Notifier, NotificationResult


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

    def send(self, recipient: str, text: str) -> NotificationResult:
        """Send a plain-text email."""
        message = MIMEMultipart("alternative")
        message["Subject"] = "FireStocks notification"
        message.attach(MIMEText(text, "plain"))
        return self._deliver(recipient, message)

    def send_run_summary(
        self, recipient: str, outcomes: list[Outcome], checked_at: datetime
    ) -> NotificationResult:
        """Email the terminal transitions of a price-check run."""
        transitions = [o for o in outcomes if o.classification.is_terminal]
        message = MIMEMultipart("alternative")
        message["Subject"] = self._create_subject(transitions)

        # Plain text version
        message.attach(MIMEText(self._create_text_body(transitions, checked_at), "plain"))

        # HTML version
        message.attach(MIMEText(self._create_body(transitions, checked_at), "html"))

        return self._deliver(recipient, message)

    def _deliver(self, recipient: str, message: MIMEMultipart) -> NotificationResult:
        message["From"] = self.from_address
        message["To"] = recipient

        try:
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

    def _create_subject(self, transitions: list[Outcome]) -> str:
        symbols = ", ".join(o.symbol for o in transitions)
        return f"[FireStocks] {len(transitions)} prediction(s) closed: {symbols}"

    @staticmethod
    def _describe(outcome: Outcome) -> str:
        if outcome.classification == Classification.TARGET_REACHED:
            return "Target reached"
        return "Stop loss triggered"

    def _create_text_body(self, transitions: list[Outcome], checked_at: datetime) -> str:
        """Create plain text email body."""
        lines = ["FireStocks Price Check", ""]
        for outcome in transitions:
            lines.append(
                f"{outcome.symbol} ({outcome.company_name}): {self._describe(outcome)} "
                f"at {outcome.current_price:.2f} "
                f"(target {outcome.target_price}, stop loss {outcome.stop_loss_price})"
            )
        lines.extend(["", f"Time: {checked_at.strftime('%Y-%m-%d %H:%M:%S')} UTC"])
        return "\n".join(lines)

    def _create_body(self, transitions: list[Outcome], checked_at: datetime) -> str:
        """Create HTML email body."""
        rows = []
        for outcome in transitions:
            color = "#2ECC71" if outcome.target_reached else "#FF0000"
            rows.append(
                f"""
    <div class="alert-box" style="border-left-color: {color};">
        <div class="ticker" style="color: {color};">{outcome.symbol}</div>
        <div class="price">{self._describe(outcome)} at {outcome.current_price:.2f}</div>
        <div class="meta">
            {outcome.company_name}<br>
            Target: {outcome.target_price} / Stop loss: {outcome.stop_loss_price}
        </div>
    </div>"""
            )

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .alert-box {{
            border-left: 4px solid #3498DB;
            padding: 15px;
            background-color: #f9f9f9;
            margin-bottom: 20px;
        }}
        .ticker {{ font-size: 24px; font-weight: bold; }}
        .price {{ font-size: 18px; color: #333; }}
        .meta {{ color: #888; font-size: 12px; }}
    </style>
</head>
<body>
{"".join(rows)}
    <div class="meta">Checked at {checked_at.strftime("%Y-%m-%d %H:%M:%S")} UTC</div>
</body>
</html>
"""
