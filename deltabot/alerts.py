"""Best-effort email alerts. A failed send is logged, never raised."""

import logging
import smtplib
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)


class AlertSender:
    def __init__(self, config):
        self.config = config
        self.enabled = bool(
            config.ALERTS_ENABLED and config.SMTP_USER and config.ALERT_TO_EMAIL
        )
        if config.ALERTS_ENABLED and not self.enabled:
            logger.warning("Alerts enabled but SMTP_USER/ALERT_TO_EMAIL missing; disabling")

    def send_alert(self, subject: str, body: str) -> None:
        if not self.enabled:
            logger.info("[Alert] %s | %s", subject, body)
            return

        cfg = self.config
        msg = MIMEText(body)
        msg["Subject"] = f"[deltabot] {subject}"
        msg["From"] = cfg.SMTP_USER
        msg["To"] = cfg.ALERT_TO_EMAIL
        try:
            with smtplib.SMTP(cfg.SMTP_HOST, cfg.SMTP_PORT, timeout=10) as server:
                server.starttls()
                server.login(cfg.SMTP_USER, cfg.SMTP_PASS)
                server.sendmail(msg["From"], [msg["To"]], msg.as_string())
            logger.info("[Alert] Sent: %s", subject)
        except Exception as e:
            logger.error("[Alert] Failed to send '%s': %s", subject, e)
