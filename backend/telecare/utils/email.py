"""SMTP email gateway.

smtplib is blocking, so each send runs in a worker thread. Connections are
pooled and recycled after ``SMTP_MAX_MESSAGES`` messages.
"""
import asyncio
import queue
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from telecare.config import Settings, get_settings
from telecare.errors import ChannelError
from telecare.utils.logger import audit, get_logger, redact_email

logger = get_logger("email")


@dataclass
class _PooledConnection:
    smtp: smtplib.SMTP
    sent: int = 0


class EmailGateway:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._idle: queue.LifoQueue[_PooledConnection] = queue.LifoQueue()
        self._slots: asyncio.Semaphore | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.SMTP_HOST)

    # ------------------------ connection pool ------------------------

    def _connect(self) -> _PooledConnection:
        s = self.settings
        smtp = smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=s.EMAIL_TIMEOUT_SECONDS)
        if s.SMTP_USE_TLS:
            smtp.starttls()
        if s.EMAIL_USER:
            smtp.login(s.EMAIL_USER, s.EMAIL_PASS or "")
        return _PooledConnection(smtp=smtp)

    def _acquire(self) -> _PooledConnection:
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            return self._connect()

    def _release(self, conn: _PooledConnection) -> None:
        if conn.sent >= self.settings.SMTP_MAX_MESSAGES:
            self._quit(conn)
            return
        self._idle.put(conn)

    @staticmethod
    def _quit(conn: _PooledConnection) -> None:
        try:
            conn.smtp.quit()
        except smtplib.SMTPException:
            conn.smtp.close()
        except OSError:
            pass

    def _resend(self, stale: _PooledConnection, msg: MIMEMultipart, to: str) -> _PooledConnection:
        """Retry once on a fresh connection after the pooled one went stale."""
        self._quit(stale)
        conn = self._connect()
        try:
            conn.smtp.sendmail(self.settings.EMAIL_FROM, [to], msg.as_string())
        except Exception:
            self._quit(conn)
            raise
        return conn

    def _send_sync(self, msg: MIMEMultipart, to: str) -> None:
        conn = self._acquire()
        # SMTPException subclasses OSError; only a dropped link is retried
        try:
            conn.smtp.sendmail(self.settings.EMAIL_FROM, [to], msg.as_string())
        except smtplib.SMTPServerDisconnected:
            conn = self._resend(conn, msg, to)
        except smtplib.SMTPException:
            self._quit(conn)
            raise
        except OSError:
            conn = self._resend(conn, msg, to)
        except Exception:
            self._quit(conn)
            raise
        conn.sent += 1
        self._release(conn)

    # ------------------------ public API ------------------------

    async def init(self) -> bool:
        """Open one connection to check settings at startup."""
        if not self.enabled:
            logger.warning("SMTP_HOST not configured; emails will only be logged")
            return False
        try:
            conn = await asyncio.to_thread(self._connect)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP verification failed: {e}")
            return False
        self._idle.put(conn)
        logger.info(f"SMTP gateway ready ({self.settings.SMTP_HOST}:{self.settings.SMTP_PORT})")
        return True

    async def send(self, to: str, subject: str, html: str, text: str | None = None) -> None:
        """Send one message. Raises ChannelError on failure or timeout."""
        if not self.enabled:
            logger.info(f"[EMAIL:SKIP] to={redact_email(to)} subject={subject}")
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.settings.EMAIL_FROM_NAME, self.settings.EMAIL_FROM))
        msg["To"] = to
        if text:
            msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))

        if self._slots is None:
            self._slots = asyncio.Semaphore(self.settings.SMTP_POOL_SIZE)
        async with self._slots:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self._send_sync, msg, to),
                    timeout=self.settings.EMAIL_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                audit("email_failed", to=redact_email(to), subject=subject, error="timeout")
                raise ChannelError("Email send timed out")
            except (smtplib.SMTPException, OSError) as e:
                audit("email_failed", to=redact_email(to), subject=subject, error=e)
                raise ChannelError(f"Email send failed: {e}")
        audit("email_sent", to=redact_email(to), subject=subject)

    async def close(self) -> None:
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            await asyncio.to_thread(self._quit, conn)


_gateway: EmailGateway | None = None


def get_email_gateway() -> EmailGateway:
    global _gateway
    if _gateway is None:
        _gateway = EmailGateway()
    return _gateway


def set_email_gateway(gateway) -> None:
    """Swap the process-wide gateway (used by tests)."""
    global _gateway
    _gateway = gateway
