"""
Shipment notifications
Envia el aviso de despacho al cliente por SMTP. Nunca lanza excepciones:
un fallo de envio se registra y la sincronizacion continua.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

logger = logging.getLogger('dropshipping')


class ShipmentNotifier:
    """Fire-and-forget e-mail dispatcher for shipment updates."""

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = int(smtp_port or 587)
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'ShipmentNotifier':
        return cls(
            smtp_host=config.get('SMTP_HOST'),
            smtp_port=config.get('SMTP_PORT', 587),
            smtp_user=config.get('SMTP_USER'),
            smtp_password=config.get('SMTP_PASSWORD'),
            from_email=config.get('FROM_EMAIL'),
        )

    @property
    def is_configured(self) -> bool:
        return all([self.smtp_host, self.smtp_user, self.smtp_password])

    def send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        if not to_email:
            logger.warning("[EMAIL] No recipient for '%s'; notification skipped", subject)
            return False
        if not self.is_configured:
            logger.warning(
                "[EMAIL] SMTP configuration incomplete - host:%s, user:%s, pass:%s",
                bool(self.smtp_host), bool(self.smtp_user), bool(self.smtp_password),
            )
            return False

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.from_email
        msg['To'] = to_email
        msg.attach(MIMEText(html_content, 'html', 'utf-8'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("[EMAIL] Error sending '%s' to %s: %s", subject, to_email, e)
            return False

        logger.info("[EMAIL] Sent '%s' to %s", subject, to_email)
        return True

    def notify_shipped(self, supplier_order) -> bool:
        """Tell the customer that (part of) their order left the supplier."""
        order = supplier_order.order
        subject = f"Your order {order.order_number} has shipped"
        order_number = escape(str(order.order_number))

        tracking = ''
        if supplier_order.tracking_number:
            tracking = f"<li><strong>Tracking number:</strong> {escape(supplier_order.tracking_number)}</li>"
            if supplier_order.carrier:
                tracking += f"<li><strong>Carrier:</strong> {escape(supplier_order.carrier)}</li>"
            # supplier-provided; only plain web links are rendered
            if supplier_order.tracking_url and urlparse(supplier_order.tracking_url).scheme in ('http', 'https'):
                tracking += f'<li><a href="{escape(supplier_order.tracking_url)}">Track your package</a></li>'
        eta = ''
        if supplier_order.estimated_delivery:
            eta = f"<li><strong>Estimated delivery:</strong> {supplier_order.estimated_delivery:%Y-%m-%d}</li>"

        html_content = f"""
        <h2>Your order is on its way</h2>
        <p>Hi {escape(order.customer_name or 'there')},</p>
        <p>Items from order <strong>{order_number}</strong> have been shipped.</p>
        <ul>
            {tracking}
            {eta}
        </ul>
        <p>Thank you for shopping with us.</p>
        """
        return self.send_email(order.customer_email, subject, html_content)
