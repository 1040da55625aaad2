"""Outbound mail transports used to deliver access links."""

from __future__ import annotations

import asyncio
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from email.message import EmailMessage
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
import aiosmtplib

from .logger import get_logger

EMAIL_PATTERN = re.compile(r"^[^@\s,;<>]+@[^@\s,;<>]+\.[^@\s,;<>]+$")
DEFAULT_SENDER = "TimeCapsule <onboarding@resend.dev>"
RESEND_ENDPOINT = "https://api.resend.com/emails"

ConnectionParams = Tuple[str, int, Optional[str], Optional[str], bool]


@dataclass
class MailResult:
    """Outcome of a single send attempt.

    ``temporary`` flags rejections that would likely succeed later (network
    errors, 4xx SMTP replies, provider 5xx); it is informational only.
    """

    delivered: bool
    reason: Optional[str] = None
    temporary: bool = False

    @classmethod
    def ok(cls) -> "MailResult":
        return cls(delivered=True)

    @classmethod
    def rejected(cls, reason: str, temporary: bool = False) -> "MailResult":
        return cls(delivered=False, reason=reason, temporary=temporary)


def validate_recipient(address: Optional[str]) -> Optional[str]:
    """Return a rejection reason for an unusable address, ``None`` otherwise."""
    if not address or not address.strip():
        return "missing recipient address"
    if not EMAIL_PATTERN.match(address.strip()):
        return f"invalid recipient address: {address}"
    return None


def describe_smtp_error(exc: Exception) -> Tuple[str, bool]:
    """Return a readable reason for an SMTP failure and whether it is temporary."""
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "smtp_code", None) or getattr(exc, "code", None)

    reason = f"{exc} (SMTP {smtp_code})" if smtp_code else (str(exc) or exc.__class__.__name__)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return reason, True
    if smtp_code:
        return reason, 400 <= int(smtp_code) < 500
    return reason, True


class MailTransportBase:
    """Interface implemented by concrete transports."""

    async def send(self, to: str, subject: str, html: str) -> MailResult:
        """Deliver an HTML message, reporting failures through the result."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release any held resources."""
        return None


class SMTPPool:
    """Keep idle SMTP connections per server/credential pair for reuse."""

    def __init__(self, ttl: int = 300, max_idle: int = 5):
        """Create a pool whose idle connections live at most ``ttl`` seconds."""
        self.ttl = ttl
        self.max_idle = max_idle
        self.idle: Dict[ConnectionParams, List[Tuple[aiosmtplib.SMTP, float]]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: Optional[str], password: Optional[str], use_tls: bool) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # Direct TLS (port 465) must not also negotiate STARTTLS
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            start_tls=False if use_tls else None,
            use_tls=use_tls,
            timeout=10.0,
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            pass

    async def acquire(self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool) -> aiosmtplib.SMTP:
        """Return a live connection, reusing an idle one when possible."""
        params = (host, port, user, password, use_tls)
        while True:
            async with self.lock:
                bucket = self.idle.get(params) or []
                entry = bucket.pop() if bucket else None
            if entry is None:
                return await self._connect(host, port, user, password, use_tls)
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)

    async def release(self, smtp: aiosmtplib.SMTP, params: ConnectionParams, *, healthy: bool = True) -> None:
        """Hand a connection back, closing it when unhealthy or surplus."""
        if healthy:
            async with self.lock:
                bucket = self.idle.setdefault(params, [])
                if len(bucket) < self.max_idle:
                    bucket.append((smtp, time.time()))
                    return
        await self._quit(smtp)

    @asynccontextmanager
    async def connection(
        self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection for the duration of the ``async with`` block."""
        params = (host, port, user, password, use_tls)
        smtp = await self.acquire(host, port, user, password, use_tls=use_tls)
        healthy = False
        try:
            yield smtp
            healthy = True
        finally:
            await self.release(smtp, params, healthy=healthy)

    async def cleanup(self) -> None:
        """Close idle connections that expired or stopped answering."""
        now = time.time()
        async with self.lock:
            items = [(params, entry) for params, bucket in self.idle.items() for entry in bucket]
            self.idle = {}

        keep: List[Tuple[ConnectionParams, Tuple[aiosmtplib.SMTP, float]]] = []
        for params, (smtp, last_used) in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                keep.append((params, (smtp, last_used)))
            else:
                await self._quit(smtp)

        async with self.lock:
            for params, entry in keep:
                self.idle.setdefault(params, []).append(entry)

    async def close(self) -> None:
        """Close every idle connection."""
        async with self.lock:
            items = [entry for bucket in self.idle.values() for entry in bucket]
            self.idle = {}
        for smtp, _ in items:
            await self._quit(smtp)


class SMTPTransport(MailTransportBase):
    """Send HTML messages through an SMTP relay."""

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: str = DEFAULT_SENDER,
        pool: SMTPPool | None = None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.sender = sender
        self.pool = pool or SMTPPool()
        self.timeout = timeout

    def build_message(self, to: str, subject: str, html: str) -> EmailMessage:
        """Translate the delivery notice into an :class:`EmailMessage`."""
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to.strip()
        msg["Subject"] = subject
        msg.set_content(html, subtype="html")
        return msg

    async def send(self, to: str, subject: str, html: str) -> MailResult:
        if reason := validate_recipient(to):
            return MailResult.rejected(reason)
        if not self.host:
            return MailResult.rejected("missing transport credential: SMTP host not configured")
        msg = self.build_message(to, subject, html)
        try:
            async with self.pool.connection(self.host, self.port, self.user, self.password, use_tls=self.use_tls) as smtp:
                async with asyncio.timeout(self.timeout):
                    await smtp.send_message(msg)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            reason, temporary = describe_smtp_error(exc)
            return MailResult.rejected(reason, temporary=temporary)
        return MailResult.ok()

    async def close(self) -> None:
        await self.pool.close()


class ResendTransport(MailTransportBase):
    """Send messages through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        sender: str = DEFAULT_SENDER,
        endpoint: str = RESEND_ENDPOINT,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.endpoint = endpoint
        self.timeout = timeout
        self.logger = get_logger("mailer")

    async def send(self, to: str, subject: str, html: str) -> MailResult:
        if reason := validate_recipient(to):
            return MailResult.rejected(reason)
        if not self.api_key:
            return MailResult.rejected("missing transport credential: Resend API key not configured")
        payload = {"from": self.sender, "to": [to.strip()], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.endpoint, json=payload, headers=headers) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        self.logger.debug("Resend rejected message to %s: %s %s", to, resp.status, body)
                        return MailResult.rejected(
                            f"provider error {resp.status}: {body[:200]}",
                            temporary=resp.status >= 500 or resp.status == 429,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return MailResult.rejected(f"provider unreachable: {str(exc) or exc.__class__.__name__}", temporary=True)
        return MailResult.ok()
