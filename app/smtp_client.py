"""
SMTP client for sending replies
"""
import html
import logging
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

import aiosmtplib

from .models import DeliveryReceipt, ReplyDraft

logger = logging.getLogger(__name__)


def build_reply_draft(
    to: str,
    original_subject: str,
    body_text: str,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None
) -> ReplyDraft:
    """
    Build the reply: "Re: " subject, plain text and an HTML copy with <br> line breaks
    """
    body_html = "<p>" + html.escape(body_text).replace("\n", "<br>") + "</p>"

    # Thread the reply under the original message
    if in_reply_to and references:
        references = f"{references} {in_reply_to}"
    elif in_reply_to:
        references = in_reply_to

    return ReplyDraft(
        recipient=to,
        subject=f"Re: {original_subject}",
        body_text=body_text,
        body_html=body_html,
        in_reply_to=in_reply_to,
        references=references
    )


class MailTransportClient:
    """Delivers replies through an SMTP relay"""

    def __init__(
        self,
        smtp_server: str,
        username: str,
        password: str,
        port: int = 465,
        from_name: str = "AI Email Assistant",
        timeout: float = 30.0
    ):
        """
        Initialize the SMTP client.

        Args:
            smtp_server: Relay hostname (e.g., smtp.gmail.com)
            username: SMTP login, also used as the From address
            password: SMTP password
            port: 465 uses implicit TLS, anything else upgrades with STARTTLS
            from_name: Display name on outgoing replies
            timeout: Connection timeout in seconds
        """
        self.smtp_server = smtp_server
        self.username = username
        self.password = password
        self.port = port
        self.from_name = from_name
        self.timeout = timeout

    def build_message(self, draft: ReplyDraft) -> EmailMessage:
        """Build a multipart/alternative message from a draft"""
        message = EmailMessage()
        message["From"] = formataddr((self.from_name, self.username))
        message["To"] = str(draft.recipient)
        message["Subject"] = draft.subject
        message["Message-ID"] = make_msgid()
        if draft.in_reply_to:
            message["In-Reply-To"] = draft.in_reply_to
        if draft.references:
            message["References"] = draft.references

        message.set_content(draft.body_text)
        message.add_alternative(draft.body_html, subtype="html")
        return message

    async def send(
        self,
        to: str,
        original_subject: str,
        body_text: str,
        *,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None
    ) -> DeliveryReceipt:
        """
        Send one reply.

        Args:
            to: Recipient address
            original_subject: Subject of the message being answered
            body_text: Reply text

        Returns:
            DeliveryReceipt for the accepted message

        Raises:
            aiosmtplib.SMTPException: If the relay refuses the message
            OSError: If the relay cannot be reached
        """
        draft = build_reply_draft(to, original_subject, body_text, in_reply_to, references)
        message = self.build_message(draft)

        use_tls = self.port == 465
        try:
            _, response = await aiosmtplib.send(
                message,
                hostname=self.smtp_server,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=use_tls,
                start_tls=not use_tls,
                timeout=self.timeout
            )
        except Exception as e:
            logger.error(f"Failed to send reply to {to}: {e}")
            raise

        logger.info(f"Reply sent to {to}")
        return DeliveryReceipt(recipient=to, subject=draft.subject, response=response or "")


def create_mail_transport(settings) -> MailTransportClient:
    """
    Build the SMTP client from settings.

    Returns:
        MailTransportClient instance
    """
    return MailTransportClient(
        smtp_server=settings.smtp_host,
        username=settings.outbound_user,
        password=settings.outbound_password,
        port=settings.smtp_port,
        from_name=settings.reply_from_name
    )
