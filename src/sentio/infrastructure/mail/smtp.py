"""SMTP implementation of ``MessageSender``.

smtplib is blocking, so every send runs in a worker thread. Sends are not
retried here; a failure surfaces as ``SendError`` and the workflow records
it.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from sentio.core.base import DeliveryErrorDetails, ErrorLevel
from sentio.core.config import MailSettings
from sentio.core.decorators import with_error_handling
from sentio.core.errors import SendError
from sentio.core.logging import get_logger
from sentio.domain.models import MessageId, OutgoingMessage

logger = get_logger(__name__)


def build_email(message: OutgoingMessage, message_id: MessageId) -> EmailMessage:
    email = EmailMessage()
    email["From"] = message.sender
    email["To"] = message.to
    email["Subject"] = message.subject
    email["Date"] = formatdate(localtime=False, usegmt=True)
    email["Message-ID"] = message_id
    if message.in_reply_to:
        email["In-Reply-To"] = message.in_reply_to
        email["References"] = message.in_reply_to
    email.set_content(message.body)
    return email


class SmtpSender:
    def __init__(self, settings: MailSettings) -> None:
        self.settings = settings

    def _deliver(self, email: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout_seconds) as smtp:
            if self.settings.use_tls:
                smtp.starttls()
            if self.settings.username:
                smtp.login(self.settings.username, self.settings.password.get_secret_value())
            smtp.send_message(email)

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def send(self, message: OutgoingMessage) -> MessageId:
        """Deliver a reply and return the Message-ID it was sent with.

        Raises:
            SendError: If the SMTP conversation fails
        """
        domain = message.sender.rpartition("@")[2] or None
        message_id = make_msgid(domain=domain)
        email = build_email(message, message_id)

        try:
            await asyncio.to_thread(self._deliver, email)
        except (smtplib.SMTPException, OSError) as e:
            raise SendError(
                reason=str(e) or type(e).__name__,
                recipient=message.to,
                details=DeliveryErrorDetails(
                    source="smtp_sender",
                    operation="send",
                    service_name="smtp",
                    endpoint=f"{self.settings.host}:{self.settings.port}",
                    recipient=message.to,
                ),
            ) from e

        logger.info("Reply sent", to=message.to, message_id=message_id)
        return message_id
