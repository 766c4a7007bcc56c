"""Mail transports: the capability workers use to hand messages to a provider.

Every provider answers with a :class:`~bulk_mail_service.models.SendResult`
whose ``retryable`` flag separates soft failures from hard bounces, so the
worker never has to understand provider specific errors.
"""

from __future__ import annotations

import asyncio
import re
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Iterable, Mapping, Optional

import aiohttp
import aiosmtplib

from .logger import get_logger
from .models import BulkSendResult, SendResult
from .smtp_pool import SMTPPool, SMTPServer


class TransportConfigurationError(ValueError):
    """Raised when the configured provider cannot be built."""


def _classify_smtp_error(exc: Exception) -> tuple[bool, Optional[int]]:
    """
    Classify an SMTP error as temporary or permanent.

    Returns:
        tuple: (is_temporary, smtp_code)
            - is_temporary: True if the error should trigger a retry
            - smtp_code: The SMTP error code if available, None otherwise
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    elif isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        smtp_code = exc.recipients[0].code

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiosmtplib.SMTPServerDisconnected)):
        return True, smtp_code

    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    temporary_patterns = [
        "421",  # Service not available
        "450",  # Mailbox unavailable
        "451",  # Local error in processing
        "452",  # Insufficient system storage
        "timeout",
        "connection refused",
        "connection reset",
        "temporarily unavailable",
        "try again",
        "throttl",
    ]
    for pattern in temporary_patterns:
        if pattern in error_msg:
            return True, smtp_code

    # Unknown errors are retried
    return True, smtp_code


def _classify_http_status(status: int) -> bool:
    """Return ``True`` when an HTTP provider status is worth retrying."""
    return status == 429 or status == 408 or status >= 500


class MailTransport:
    """Contract shared by every mail provider."""

    name = "base"
    bulk_batch_size = 10

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        raise NotImplementedError

    async def send_bulk_emails(self, messages: Iterable[Mapping[str, Any]]) -> BulkSendResult:
        """Send several messages, a small batch at a time.

        Each message is a mapping with ``to``, ``subject``, ``html`` and the
        optional ``text`` and ``idempotency_key`` keys.
        """
        items = list(messages)
        outcome = BulkSendResult()
        for start in range(0, len(items), self.bulk_batch_size):
            batch = items[start : start + self.bulk_batch_size]
            results = await asyncio.gather(
                *(
                    self.send_email(
                        m["to"],
                        m["subject"],
                        m["html"],
                        m.get("text"),
                        idempotency_key=m.get("idempotency_key"),
                    )
                    for m in batch
                )
            )
            for message, result in zip(batch, results):
                outcome.results.append((message["to"], result))
                if result.success:
                    outcome.total_sent += 1
                else:
                    outcome.total_failed += 1
        return outcome

    async def test_connection(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SMTPTransport(MailTransport):
    """Deliver through an SMTP relay using pooled aiosmtplib connections."""

    name = "smtp"

    def __init__(
        self,
        server: SMTPServer,
        from_email: str,
        *,
        from_name: Optional[str] = None,
        pool: Optional[SMTPPool] = None,
        send_timeout: float = 30.0,
        logger=None,
    ):
        if not server.host:
            raise TransportConfigurationError("SMTP host is required")
        if not from_email:
            raise TransportConfigurationError("Sender address is required")
        self.server = server
        self.from_email = from_email
        self.from_name = from_name
        self.pool = pool or SMTPPool()
        self.send_timeout = send_timeout
        self.logger = logger or get_logger("BulkMailSMTP")

    def _message_id(self, idempotency_key: Optional[str]) -> str:
        domain = self.from_email.rpartition("@")[2] or None
        if not idempotency_key:
            return make_msgid(domain=domain)
        local = re.sub(r"[^A-Za-z0-9!#$%&'*+/=?^_`{|}~.-]", ".", idempotency_key)
        return f"<{local}@{domain or 'localhost'}>"

    def _build_message(
        self, to: str, subject: str, html: str, text: Optional[str], idempotency_key: Optional[str]
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = self._message_id(idempotency_key)
        msg.set_content(text or "")
        msg.add_alternative(html, subtype="html")
        return msg

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        msg = self._build_message(to, subject, html, text, idempotency_key)
        try:
            smtp = await self.pool.get_connection(self.server)
            async with asyncio.timeout(self.send_timeout):
                await smtp.send_message(msg, sender=self.from_email)
        except Exception as exc:
            is_temporary, smtp_code = _classify_smtp_error(exc)
            if isinstance(exc, (OSError, asyncio.TimeoutError, aiosmtplib.SMTPServerDisconnected)):
                await self.pool.discard()
            error_info = f"{exc} (SMTP {smtp_code})" if smtp_code else str(exc) or exc.__class__.__name__
            self.logger.debug("SMTP send to %s failed (temporary=%s): %s", to, is_temporary, error_info)
            return SendResult(success=False, error=error_info, retryable=is_temporary)
        return SendResult(success=True, message_id=msg["Message-ID"])

    async def test_connection(self) -> Dict[str, Any]:
        try:
            smtp = await self.pool.get_connection(self.server)
            code, message = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except Exception as exc:
            return {"success": False, "error": str(exc) or exc.__class__.__name__}
        if code != 250:
            return {"success": False, "error": f"NOOP answered {code}: {message}"}
        return {"success": True}

    async def close(self) -> None:
        await self.pool.close_all()


class HTTPTransport(MailTransport):
    """Deliver through a JSON e-mail API.

    The message is POSTed to ``<api_url>/send``; the idempotency key travels
    in the ``Idempotency-Key`` header so providers can drop duplicates.
    """

    name = "http"

    def __init__(
        self,
        api_url: str,
        from_email: str,
        *,
        api_key: Optional[str] = None,
        from_name: Optional[str] = None,
        send_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not api_url:
            raise TransportConfigurationError("API URL is required")
        if not from_email:
            raise TransportConfigurationError("Sender address is required")
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.send_timeout = send_timeout
        self._session = session
        self._owns_session = session is None

    def _endpoint(self, suffix: str) -> str:
        return f"{self.api_url}/{suffix.lstrip('/')}"

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.send_timeout))
            self._owns_session = True
        return self._session

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        payload: Dict[str, Any] = {
            "from": {"email": self.from_email, "name": self.from_name},
            "to": to,
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text
        try:
            session = self._get_session()
            async with session.post(
                self._endpoint("send"), json=payload, headers=self._headers(idempotency_key)
            ) as resp:
                if resp.status >= 400:
                    body = (await resp.text())[:200]
                    return SendResult(
                        success=False,
                        error=f"HTTP {resp.status}: {body}".strip(),
                        retryable=_classify_http_status(resp.status),
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return SendResult(success=False, error=str(exc) or exc.__class__.__name__, retryable=True)
        message_id = None
        if isinstance(data, dict):
            message_id = data.get("id") or data.get("messageId") or data.get("message_id")
        return SendResult(success=True, message_id=message_id)

    async def test_connection(self) -> Dict[str, Any]:
        try:
            session = self._get_session()
            async with session.get(self.api_url, headers=self._headers()) as resp:
                if resp.status >= 400:
                    return {"success": False, "error": f"HTTP {resp.status}"}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return {"success": False, "error": str(exc) or exc.__class__.__name__}
        return {"success": True}

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


def create_transport(settings: Mapping[str, Any]) -> MailTransport:
    """Build the provider named by ``settings["transport_provider"]``."""
    provider = str(settings.get("transport_provider") or "smtp").strip().lower()
    from_email = settings.get("from_email") or ""
    from_name = settings.get("from_name")
    send_timeout = float(settings.get("send_timeout") or 10.0)
    if provider == "smtp":
        server = SMTPServer(
            host=settings.get("smtp_host") or "",
            port=int(settings.get("smtp_port") or 587),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
        )
        return SMTPTransport(server, from_email, from_name=from_name, send_timeout=send_timeout)
    if provider == "http":
        return HTTPTransport(
            settings.get("api_url") or "",
            from_email,
            api_key=settings.get("api_key"),
            from_name=from_name,
            send_timeout=send_timeout,
        )
    raise TransportConfigurationError(f"Unknown mail provider: {provider}")

