"""
Notification Service

Reports terminal transaction outcomes to customers:
- LoggingNotifier: writes the notification to the application log
- EmailNotifier: sends it over SMTP with retry on temporary failures

Notifications are fire-and-forget; a failed notification never changes
the transaction it reports on.
"""

from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from typing import Callable, Optional, Tuple
import smtplib
import time

from core.config import get_settings
from core.logger import get_logger
from models.transaction import Transaction, TransactionStatus

settings = get_settings()
logger = get_logger(__name__)


class Notifier(ABC):
    """Notification collaborator: deliver a message to a user."""

    @abstractmethod
    def send(self, user_id: str, subject: str, body: str) -> bool:
        """Send a message. Returns True when it was delivered."""


class LoggingNotifier(Notifier):
    """Notifier that only logs. Used when email is disabled."""

    def send(self, user_id: str, subject: str, body: str) -> bool:
        logger.info(f"Notification for user {user_id}: {subject}")
        return True


class EmailNotifier(Notifier):
    """Sends notifications by email."""

    # Retry configuration
    MAX_RETRIES = 3
    INITIAL_RETRY_DELAY = 1  # seconds
    MAX_RETRY_DELAY = 8  # seconds

    def __init__(self, address_lookup: Callable[[str], Optional[str]], sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            address_lookup: Resolves a user id to an email address
            sleep: Delay function between retries
        """
        self._address_lookup = address_lookup
        self._sleep = sleep

    @staticmethod
    def _is_retryable_error(error: Exception) -> bool:
        """
        Determine if an SMTP error is temporary.

        Connection drops, timeouts and 4xx codes are retried; authentication
        failures and other permanent errors are not.
        """
        if isinstance(error, smtplib.SMTPAuthenticationError):
            return getattr(error, "smtp_code", None) == 454
        if isinstance(error, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected, TimeoutError, ConnectionError)):
            return True
        if isinstance(error, smtplib.SMTPResponseException):
            return 400 <= error.smtp_code < 500
        return False

    @staticmethod
    def _create_smtp_connection() -> smtplib.SMTP:
        """
        Create an authenticated SMTP connection (SSL on 465, STARTTLS otherwise).

        Raises:
            ValueError: If SMTP configuration is incomplete
        """
        if not settings.SMTP_HOST or not settings.SMTP_USER or not settings.SMTP_PASSWORD:
            raise ValueError("SMTP configuration is incomplete. Check SMTP_HOST, SMTP_USER, and SMTP_PASSWORD.")

        if settings.SMTP_PORT == 465:
            server = smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30)
        else:
            server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30)
            server.starttls()
        server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        return server

    def send(self, user_id: str, subject: str, body: str) -> bool:
        """
        Send a plain-text email to the user, retrying temporary SMTP errors
        with exponential backoff.

        Returns:
            bool: True if sent successfully, False otherwise
        """
        to_email = self._address_lookup(user_id)
        if not to_email:
            logger.warning(f"No email address for user {user_id}, notification skipped")
            return False

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
        msg["To"] = to_email

        for attempt in range(self.MAX_RETRIES):
            try:
                server = self._create_smtp_connection()
                try:
                    server.send_message(msg)
                finally:
                    try:
                        server.quit()
                    except smtplib.SMTPException:
                        pass  # Connection already gone
                logger.info(f"Email sent to {to_email} (subject: {subject})")
                return True
            except Exception as e:
                if not self._is_retryable_error(e) or attempt == self.MAX_RETRIES - 1:
                    logger.error(f"Failed to send email to {to_email}: {type(e).__name__}: {str(e)}")
                    return False
                delay = min(self.INITIAL_RETRY_DELAY * (2 ** attempt), self.MAX_RETRY_DELAY)
                logger.warning(
                    f"Temporary SMTP error sending to {to_email} (attempt {attempt + 1}/{self.MAX_RETRIES}): "
                    f"{type(e).__name__}. Retrying in {delay}s..."
                )
                self._sleep(delay)
        return False


def transaction_outcome_message(transaction: Transaction) -> Tuple[str, str]:
    """
    Build the subject and body reporting a transaction outcome.

    Args:
        transaction: Transaction in a terminal or refunded state

    Returns:
        tuple: (subject, body)
    """
    status = transaction.status
    if status == TransactionStatus.COMPLETED:
        subject = f"Payment received for order {transaction.order_id}"
        body = (
            f"We received your payment of {transaction.formatted_amount}.\n"
            f"Reference: {transaction.processor_transaction_id}"
        )
    elif status in (TransactionStatus.REFUNDED, TransactionStatus.PARTIALLY_REFUNDED):
        subject = f"Refund issued for order {transaction.order_id}"
        body = (
            f"A refund of ${transaction.refunded_amount:.2f} {transaction.currency} was issued.\n"
            f"Reason: {transaction.refund_reason}"
        )
    else:
        subject = f"Payment failed for order {transaction.order_id}"
        body = (
            f"Your payment of {transaction.formatted_amount} could not be processed.\n"
            f"Reason: {transaction.failure_reason}"
        )
    return subject, body
