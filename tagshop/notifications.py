"""Order notification mail. Failures are logged and never reach the caller."""

import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Protocol, Tuple

from tagshop.config import Settings
from tagshop.errors import NotificationFailure
from tagshop.models import Contact, Tag
from tagshop.reconciler import AppliedOrder

logger = logging.getLogger(__name__)

BUSINESS_NAME = "Execute & Engrave LLC"


class NotificationChannel(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> str:
        ...


class SmtpChannel:
    """Plain-text mail over SMTP with STARTTLS."""

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._from = sender or user
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpChannel":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
            timeout=settings.smtp_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._host and self._from)

    def send(self, recipient: str, subject: str, body: str) -> str:
        if not self.is_configured:
            raise NotificationFailure("SMTP is not configured (SMTP_HOST/SMTP_FROM)")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{BUSINESS_NAME} <{self._from}>"
        message["To"] = recipient
        message["Message-ID"] = make_msgid()
        message.set_content(body)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls()
                if self._user and self._password:
                    server.login(self._user, self._password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationFailure(f"SMTP error: {exc}") from exc

        return message["Message-ID"]


def _or_na(value) -> str:
    return str(value) if value else "N/A"


def _amount(order: AppliedOrder) -> str:
    return f"${order.amount / 100:.2f} {(order.currency or '').upper()}"


def format_order_notification(order: AppliedOrder, contact: Contact, tag: Optional[Tag]) -> Tuple[str, str]:
    subject = f"New order received #{order.id} - {_amount(order)}"
    name = f"{contact.firstname or ''} {contact.lastname or ''}".strip()
    lines = [
        f"New Order #{order.id}",
        "",
        "Order Details:",
        f"- Order ID: {order.id}",
        f"- Amount: {_amount(order)}",
        f"- Status: {order.status.value}",
        f"- Payment Intent ID: {order.payment_reference or 'Pending'}",
        "",
        "Tag Information:",
    ]
    if tag is None:
        lines.append("- No tag saved for this order")
    else:
        lines += [
            f"- Front: {' / '.join(filter(None, [tag.front_line_1, tag.front_line_2, tag.front_line_3])) or 'N/A'}",
            f"- Back: {' / '.join(filter(None, [tag.back_line_1, tag.back_line_2, tag.back_line_3])) or 'N/A'}",
            f"- Has QR Code: {'Yes' if tag.has_qr_code else 'No'}",
        ]
        if tag.has_qr_code:
            lines.append(f"- QR Content: {_or_na(tag.qr_content)}")
        lines.append(f"- Notes: {_or_na(tag.notes)}")
    lines += [
        "",
        "Customer Information:",
        f"- Name: {name or 'N/A'}",
        f"- Pet Name: {_or_na(contact.petname)}",
        f"- Phone: {_or_na(contact.phone)}",
        f"- Email: {_or_na(contact.email)}",
        f"- Address Line 1: {_or_na(contact.address_line_1)}",
        f"- Address Line 2: {_or_na(contact.address_line_2)}",
        f"- Address Line 3: {_or_na(contact.address_line_3)}",
        "",
        "Please process this order and begin crafting the laser tag.",
    ]
    return subject, "\n".join(lines)


def format_customer_confirmation(order: AppliedOrder, contact: Contact) -> Tuple[str, str]:
    subject = f"Order Confirmation #{order.id} - Your Custom Pet Tag is Being Made!"
    body = "\n".join(
        [
            f"Thank you, {contact.firstname or 'Valued Customer'}!",
            "",
            "Your order has been received and we're already working on the custom tag "
            f"for {contact.petname or 'your pet'}.",
            "",
            f"Order Number: #{order.id}",
            f"Amount: {_amount(order)}",
            f"Status: {order.status.value}",
            "",
            BUSINESS_NAME,
        ]
    )
    return subject, body


class NotificationDispatcher:
    def __init__(
        self,
        session_factory,
        channel: NotificationChannel,
        ops_recipient: Optional[str],
        send_customer_confirmation: bool = True,
    ):
        self._session_factory = session_factory
        self._channel = channel
        self._ops_recipient = ops_recipient
        self._send_customer_confirmation = send_customer_confirmation

    def dispatch(self, order: AppliedOrder) -> None:
        """Load contact and tag for ``order`` and send its notifications."""
        try:
            session = self._session_factory()
            try:
                contact = session.get(Contact, order.contact_id) if order.contact_id is not None else None
                tag = session.query(Tag).filter_by(order_id=order.id).first()
            finally:
                session.close()
        except Exception:
            logger.exception("Could not load notification context for order %s", order.id)
            return

        if contact is None:
            logger.warning("Order %s has no contact %s; notification skipped", order.id, order.contact_id)
            return

        self.notify(order, contact, tag)

    def notify(self, order: AppliedOrder, contact: Contact, tag: Optional[Tag]) -> None:
        if self._ops_recipient:
            subject, body = format_order_notification(order, contact, tag)
            self._send(self._ops_recipient, subject, body, order)
        else:
            logger.warning("ORDER_NOTIFICATION_RECIPIENT not set; order %s notification skipped", order.id)

        if self._send_customer_confirmation and contact.email:
            subject, body = format_customer_confirmation(order, contact)
            self._send(contact.email, subject, body, order)

    def _send(self, recipient: str, subject: str, body: str, order: AppliedOrder) -> None:
        try:
            message_id = self._channel.send(recipient, subject, body)
        except Exception:
            logger.exception("Error sending notification for order %s", order.id)
            return
        logger.info("Notification sent for order %s message_id=%s", order.id, message_id)
