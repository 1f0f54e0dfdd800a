"""
Mail transport for order notifications.

A single Mailer is created in extensions.py and bound to the app in
create_app(), so every request shares the same configured transport
instead of building one per message.

Usage:
    from fulfillment.extensions import mailer

    mailer.send(
        sender="Shop <support@shop.test>",
        recipient="user@example.com",
        subject="Hello",
        html="<p>Hi</p>",
    )
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from fulfillment.errors import MailDeliveryError

logger = logging.getLogger(__name__)


class Mailer:
    """SMTP transport with a bounded timeout.

    With MAIL_SUPPRESS_SEND enabled, messages are kept in ``outbox``
    instead of being delivered.
    """

    def __init__(self, app=None):
        self.host = None
        self.port = None
        self.use_tls = True
        self.username = None
        self.password = None
        self.timeout = 20
        self.suppress = False
        self.from_name = None
        self.from_address = None
        self.reply_to = None
        self.outbox = []
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        config = app.config
        self.host = config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
        self.port = config.get("MAIL_SMTP_PORT", 587)
        self.use_tls = config.get("MAIL_USE_TLS", True)
        self.username = config.get("MAIL_USERNAME")
        self.password = config.get("MAIL_PASSWORD")
        self.timeout = config.get("MAIL_TIMEOUT", 20)
        self.suppress = config.get("MAIL_SUPPRESS_SEND", False)
        self.from_name = config.get("MAIL_FROM_NAME")
        self.from_address = config.get("MAIL_FROM_ADDRESS") or self.username
        self.reply_to = config.get("MAIL_REPLY_TO")
        app.extensions["mailer"] = self

    @property
    def default_sender(self):
        if self.from_name:
            return f"{self.from_name} <{self.from_address}>"
        return self.from_address

    def _connect(self):
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            server.ehlo()
            if self.use_tls:
                server.starttls()
                server.ehlo()
            if self.username and self.password:
                server.login(self.username, self.password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def send(self, sender, recipient, subject, html, reply_to=None):
        """Send one HTML message.

        Raises MailDeliveryError if the message could not be handed to the
        SMTP server.
        """
        if not recipient:
            raise MailDeliveryError("No recipient address")
        if not sender:
            raise MailDeliveryError("No sender address configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = recipient
        reply_to = reply_to or self.reply_to
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(html, "html"))

        if self.suppress:
            self.outbox.append(msg)
            logger.info(f"Email captured (suppressed) for {recipient}: {subject}")
            return

        try:
            with self._connect() as server:
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"SMTP delivery to {recipient} failed: {e}") from e
        logger.info(f"Email sent to {recipient}: {subject}")

    def verify(self):
        """Open and authenticate a connection without sending anything."""
        if self.suppress:
            return True
        try:
            with self._connect() as server:
                server.noop()
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"Mail transport check failed: {e}") from e
        return True
