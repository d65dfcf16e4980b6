"""
Send Gateway: delivers batches of at most SEND_BATCH_SIZE messages.

Two transports:
- SmtpGateway   one aiosmtplib connection per batch, one MIME message per recipient
- ResendGateway one POST to the Resend batch endpoint (aiohttp)

Every gateway in the process shares one limiter: at most
GATEWAY_MAX_CONCURRENCY calls in flight, optionally spaced by
GATEWAY_MIN_INTERVAL_SECONDS. GATEWAY_TIMEOUT_SECONDS bounds each HTTP batch
call, and each SMTP command.

Failures are returned, never raised: callers get a BatchResult with
success=False and an error string.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Dict, List, Optional
from urllib.parse import urlencode

import aiohttp
import aiosmtplib

import config

logger = logging.getLogger("mailscheduler.send_gateway")


def text_to_html(text: str) -> str:
    """Convert a plain text body to basic HTML."""
    html = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    html = html.replace("\n\n", "</p><p>").replace("\n", "<br>")
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; font-size: 14px; line-height: 1.6; color: #333; }}
        p {{ margin: 0 0 1em 0; }}
    </style>
</head>
<body>
    <p>{html}</p>
</body>
</html>"""


UNSUBSCRIBE_PLACEHOLDERS = ("{{{RESEND_UNSUBSCRIBE_URL}}}", "{{unsubscribe_url}}")


def unsubscribe_url(email: str) -> str:
    return f"{config.SITE_URL}/unsubscribe?{urlencode({'email': email})}"


def personalize_unsubscribe(content: str, email: str) -> str:
    """Replace unsubscribe placeholders with the recipient's own link."""
    if not content:
        return content
    url = unsubscribe_url(email)
    for placeholder in UNSUBSCRIBE_PLACEHOLDERS:
        content = content.replace(placeholder, url)
    return content


@dataclass
class OutboundMessage:
    to: str
    subject: str
    html: str = ""
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    from_email: Optional[str] = None

    @property
    def sender(self) -> str:
        return self.from_email or config.EMAIL_FROM


@dataclass
class BatchResult:
    success: bool
    batch_id: Optional[str] = None
    message_ids: List[str] = field(default_factory=list)
    delivered: int = 0
    # Recipients the gateway did not accept (all of them when the call failed outright)
    failed_recipients: List[str] = field(default_factory=list)
    error: Optional[str] = None


class SendGateway:
    """
    Base class. Subclasses implement `_send_batch`.

    Usage:
        gateway = get_gateway()
        result = await gateway.send_batch([OutboundMessage(...), ...])
    """

    name = "base"

    def __init__(self, max_concurrency: int = None, min_interval: float = None,
                 timeout: float = None):
        self.max_concurrency = max_concurrency or config.GATEWAY_MAX_CONCURRENCY
        self.min_interval = (
            min_interval if min_interval is not None else config.GATEWAY_MIN_INTERVAL_SECONDS
        )
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS

        # asyncio primitives belong to one event loop; each CLI invocation runs its own
        self._loop = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._pace_lock: Optional[asyncio.Lock] = None
        self._last_call = 0.0

    def _limiter(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
            self._pace_lock = asyncio.Lock()
        return self._semaphore

    async def _pace(self):
        if self.min_interval <= 0:
            return
        async with self._pace_lock:
            wait = self._last_call + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    async def send_batch(self, messages: List[OutboundMessage]) -> BatchResult:
        """
        Send up to SEND_BATCH_SIZE messages in one gateway call.

        Raises:
            ValueError: batch larger than SEND_BATCH_SIZE (a caller bug, not a send failure)
        """
        if not messages:
            return BatchResult(success=True)
        if len(messages) > config.SEND_BATCH_SIZE:
            raise ValueError(
                f"Batch of {len(messages)} exceeds SEND_BATCH_SIZE={config.SEND_BATCH_SIZE}"
            )

        async with self._limiter():
            await self._pace()
            try:
                timeout = self._batch_timeout(messages)
                result = await asyncio.wait_for(self._send_batch(messages), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error(
                    "gateway_timeout",
                    extra={"gateway": self.name, "size": len(messages), "timeout": timeout},
                )
                return BatchResult(
                    success=False,
                    failed_recipients=[m.to for m in messages],
                    error=f"{self.name} gateway timed out after {timeout}s",
                )

        if result.success:
            logger.info(
                "batch_sent",
                extra={"gateway": self.name, "batch_id": result.batch_id, "delivered": result.delivered},
            )
        else:
            logger.error(
                "batch_failed",
                extra={"gateway": self.name, "delivered": result.delivered, "error": result.error},
            )
        return result

    def _batch_timeout(self, messages: List[OutboundMessage]) -> Optional[float]:
        """Deadline for one whole `_send_batch` call, None for no outer limit."""
        return self.timeout

    async def send_one(self, message: OutboundMessage) -> BatchResult:
        return await self.send_batch([message])

    async def _send_batch(self, messages: List[OutboundMessage]) -> BatchResult:
        raise NotImplementedError


class SmtpGateway(SendGateway):
    """Plain SMTP relay via aiosmtplib."""

    name = "smtp"

    def __init__(self, host: str = None, port: int = None, username: str = None,
                 password: str = None, start_tls: bool = None, **kwargs):
        super().__init__(**kwargs)
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username if username is not None else config.SMTP_USERNAME
        self.password = password if password is not None else config.SMTP_PASSWORD
        self.start_tls = start_tls if start_tls is not None else config.SMTP_START_TLS

    def _build_mime(self, message: OutboundMessage):
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(message.text or "", "plain"))
        msg.attach(MIMEText(message.html or text_to_html(message.text or ""), "html"))

        sender = message.sender
        domain = sender.split("@")[1] if "@" in sender else "localhost"
        message_id = make_msgid(domain=domain)
        msg["Message-ID"] = message_id
        msg["Subject"] = message.subject
        msg["From"] = formataddr((config.FROM_NAME, sender)) if config.FROM_NAME else sender
        msg["To"] = message.to
        if config.REPLY_TO:
            msg["Reply-To"] = config.REPLY_TO
        for name, value in message.headers.items():
            msg[name] = value
        return msg, message_id

    def _batch_timeout(self, messages: List[OutboundMessage]) -> Optional[float]:
        # aiosmtplib applies self.timeout to each command, so a timeout fails only that recipient
        return None

    async def _send_batch(self, messages: List[OutboundMessage]) -> BatchResult:
        batch_id = f"smtp-{uuid.uuid4().hex}"
        message_ids: List[str] = []
        failed: List[str] = []
        errors: List[str] = []

        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.timeout,
            start_tls=self.start_tls,
        )
        try:
            await smtp.connect()
            if self.username:
                await smtp.login(self.username, self.password)
        except aiosmtplib.SMTPException as e:
            return BatchResult(
                success=False,
                batch_id=batch_id,
                failed_recipients=[m.to for m in messages],
                error=f"SMTP connect/login failed: {e}",
            )
        except OSError as e:
            return BatchResult(
                success=False,
                batch_id=batch_id,
                failed_recipients=[m.to for m in messages],
                error=f"SMTP connection error: {e}",
            )

        try:
            for message in messages:
                mime, message_id = self._build_mime(message)
                try:
                    await smtp.sendmail(message.sender, [message.to], mime.as_string())
                    message_ids.append(message_id)
                except aiosmtplib.SMTPException as e:
                    failed.append(message.to)
                    errors.append(f"{message.to}: {e}")
                    logger.warning(
                        "smtp_recipient_failed",
                        extra={"to": message.to, "error_code": getattr(e, "code", None)},
                    )
        finally:
            try:
                await smtp.quit()
            except aiosmtplib.SMTPException as e:
                logger.debug(f"smtp_quit_failed: {e}")

        return BatchResult(
            success=not failed,
            batch_id=batch_id,
            message_ids=message_ids,
            delivered=len(message_ids),
            failed_recipients=failed,
            error="; ".join(errors[:5]) if errors else None,
        )


class ResendGateway(SendGateway):
    """Resend HTTP API, one /emails/batch call per batch."""

    name = "resend"

    def __init__(self, api_key: str = None, api_url: str = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key or config.RESEND_API_KEY
        self.api_url = (api_url or config.RESEND_API_URL).rstrip("/")

    def _build_payload(self, message: OutboundMessage) -> Dict:
        sender = message.sender
        payload = {
            "from": formataddr((config.FROM_NAME, sender)) if config.FROM_NAME else sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html or text_to_html(message.text or ""),
        }
        if message.text:
            payload["text"] = message.text
        if message.headers:
            payload["headers"] = dict(message.headers)
        if config.REPLY_TO:
            payload["reply_to"] = config.REPLY_TO
        return payload

    async def _send_batch(self, messages: List[OutboundMessage]) -> BatchResult:
        recipients = [m.to for m in messages]
        payload = [self._build_payload(m) for m in messages]
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.api_url}/emails/batch",
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status not in (200, 201):
                        body = await resp.text()
                        return BatchResult(
                            success=False,
                            failed_recipients=recipients,
                            error=f"Resend returned {resp.status}: {body[:200]}",
                        )
                    data = await resp.json()
        except aiohttp.ClientError as e:
            return BatchResult(
                success=False,
                failed_recipients=recipients,
                error=f"Resend request failed: {e}",
            )

        message_ids = [item.get("id") for item in (data or {}).get("data", []) if item.get("id")]
        return BatchResult(
            success=True,
            batch_id=message_ids[0] if message_ids else None,
            message_ids=message_ids,
            delivered=len(messages),
        )


GATEWAYS = {
    SmtpGateway.name: SmtpGateway,
    ResendGateway.name: ResendGateway,
}

_instances: Dict[str, SendGateway] = {}


def get_gateway(name: str = None) -> SendGateway:
    """Process-wide gateway instance (and therefore limiter) for `name`."""
    name = (name or config.SEND_GATEWAY).lower()
    if name not in GATEWAYS:
        raise ValueError(f"Unknown send gateway: {name!r} (expected one of {sorted(GATEWAYS)})")
    if name not in _instances:
        _instances[name] = GATEWAYS[name]()
        logger.info(f"gateway_initialized: {name}")
    return _instances[name]
