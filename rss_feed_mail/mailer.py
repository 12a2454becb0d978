"""
Email delivery of feed items.

Defines the interface the pipeline sends through, an SMTP implementation
that tags messages with Gmail labels, and the HTML rendering of an item.
"""

import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid, parseaddr
from typing import Protocol, runtime_checkable

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request

from rss_feed_mail.config import GmailConfig, SmtpConfig
from rss_feed_mail.labels import build_credentials
from rss_feed_mail.rss_parser import FeedItem

logger = logging.getLogger(__name__)

LABELS_HEADER = "X-GM-LABELS"

EMAIL_STYLE = """
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 800px; margin: 0 auto; }
    h1 { color: #444; border-bottom: 1px solid #ddd; padding-bottom: 10px; }
    h2 { color: #666; margin-top: 25px; }
    .item { margin-bottom: 30px; border-bottom: 1px solid #eee; padding-bottom: 20px; }
    .meta { font-size: 0.8em; color: #888; }
    a { color: #0366d6; text-decoration: none; }
    a:hover { text-decoration: underline; }
    .content { margin-top: 10px; }
"""


class MailDeliveryError(Exception):
    """
    Raised when a message could not be submitted.

    Attributes
    ----------
    status_code : int | None
        SMTP reply code of the failure, if the server sent one.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class OutgoingMail:
    """A message ready to be sent."""

    recipient: str
    sender: str
    subject: str
    html: str
    labels: str = ""


@runtime_checkable
class MailSender(Protocol):
    """
    Protocol defining the interface for mail delivery backends.

    The pipeline only depends on this interface, so tests and alternative
    transports can stand in for SMTP.
    """

    async def send(self, mail: OutgoingMail) -> str:
        """
        Send a message.

        Returns
        -------
        str
            Message identifier.

        Raises
        ------
        MailDeliveryError
            If the message could not be sent.
        """
        ...

    async def close(self) -> None:
        """Release any resources held by the sender."""
        ...


def sender_address(sender: str) -> str:
    """Return the bare address of a sender such as ``"Name" <a@b.c>``."""
    _, address = parseaddr(sender)
    return address or sender


def render_item_html(item: FeedItem) -> str:
    """
    Render a feed item as an HTML email body.

    Parameters
    ----------
    item : FeedItem
        The item to render.

    Returns
    -------
    str
        Complete HTML document.
    """
    title = html.escape(item.title) if item.title else "No title"
    if item.link:
        heading = f'<a href="{html.escape(item.link, quote=True)}">{title}</a>'
    else:
        heading = title

    meta = [f"<span>From: {html.escape(item.feed_title)}</span>"]
    if item.published:
        meta.append(f"<span> &bull; {item.published.strftime('%Y-%m-%d %H:%M UTC')}</span>")
    if item.author:
        meta.append(f"<span> &bull; By {html.escape(item.author)}</span>")

    # Feed bodies are already HTML and are embedded as-is
    body = item.full_content or item.content or (item.summary and html.escape(item.summary))
    body = body or "No content available"

    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>{EMAIL_STYLE}</style>
</head>
<body>
  <h1>RSS Feed Updates</h1>
  <div class="item">
    <h2>{heading}</h2>
    <div class="meta">
      {"".join(meta)}
    </div>
    <div class="content">
      {body}
    </div>
  </div>
</body>
</html>"""


def build_message(mail: OutgoingMail) -> EmailMessage:
    """Build the MIME message for an outgoing mail."""
    message = EmailMessage()
    message["From"] = mail.sender
    message["To"] = mail.recipient
    message["Subject"] = mail.subject
    message["Date"] = formatdate(localtime=False)
    message["Message-ID"] = make_msgid(domain=sender_address(mail.sender).rpartition("@")[2] or None)
    if mail.labels:
        message[LABELS_HEADER] = mail.labels
    message.set_content("This message is best viewed in an HTML capable mail client.")
    message.add_alternative(mail.html, subtype="html")
    return message


class SmtpMailer:
    """
    SMTP mail sender.

    Authenticates with a password when one is configured, otherwise with
    XOAUTH2 using a Google access token refreshed from the OAuth settings.
    """

    def __init__(self, config: SmtpConfig, oauth: GmailConfig | None = None, username: str | None = None):
        """
        Initialize the SMTP sender.

        Parameters
        ----------
        config : SmtpConfig
            SMTP connection settings.
        oauth : GmailConfig | None
            OAuth credentials used when ``config.password`` is empty.
        username : str | None
            Login name used when ``config.username`` is empty.
        """
        if not config.password and oauth is None:
            raise ValueError("SMTP needs either a password or OAuth credentials")
        self.config = config
        self.oauth = oauth
        self.username = config.username or username
        self._credentials = None

    async def send(self, mail: OutgoingMail) -> str:
        """Send a message in a worker thread."""
        message = build_message(mail)
        await asyncio.to_thread(self._send_sync, message)
        logger.info("Email sent: %s", mail.subject[:80])
        return message["Message-ID"]

    def _send_sync(self, message: EmailMessage) -> None:
        try:
            if self.config.use_ssl:
                server = smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=self.config.timeout)
            else:
                server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.config.timeout)
            with server:
                if self.config.starttls and not self.config.use_ssl:
                    server.starttls()
                self._authenticate(server)
                server.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            code = next((c for c, _ in e.recipients.values()), None)
            raise MailDeliveryError(f"Recipient refused: {e}", status_code=code) from e
        except smtplib.SMTPResponseException as e:
            raise MailDeliveryError(
                f"SMTP error {e.smtp_code}: {e.smtp_error!r}", status_code=e.smtp_code
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"SMTP failure: {e}") from e

    def _authenticate(self, server: smtplib.SMTP) -> None:
        if self.config.password:
            server.login(self.username or "", self.config.password)
            return

        token = self._access_token()
        auth_string = f"user={self.username}\x01auth=Bearer {token}\x01\x01"
        server.auth("XOAUTH2", lambda challenge=None: auth_string)

    def _access_token(self) -> str:
        if self._credentials is None:
            self._credentials = build_credentials(self.oauth)
        if not self._credentials.valid or self._credentials.expiry is None:
            try:
                self._credentials.refresh(Request())
            except RefreshError as e:
                raise MailDeliveryError(f"Could not refresh OAuth access token: {e}") from e
        return self._credentials.token

    async def close(self) -> None:
        """Connections are per message, nothing to release."""
        logger.debug("SMTP mailer closed")
