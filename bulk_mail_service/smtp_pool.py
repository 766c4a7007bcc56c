"""SMTP connection pool keeping one connection per worker task."""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import aiosmtplib

from .logger import get_logger


@dataclass(frozen=True)
class SMTPServer:
    host: str
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: Optional[bool] = None

    @property
    def implicit_tls(self) -> bool:
        """Direct TLS on connect; defaults to on for port 465."""
        if self.use_tls is None:
            return int(self.port) == 465
        return bool(self.use_tls)


class SMTPPool:
    """Reuse SMTP connections across sends made by the same asyncio task.

    Each worker task processes one job at a time, so binding a connection
    to the task keeps sends of one job on one session.
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 10.0):
        """Create a pool with the given time-to-live, in seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float, SMTPServer]] = {}
        self.lock = asyncio.Lock()
        self.logger = get_logger("BulkMailSMTP")

    async def _open(self, server: SMTPServer) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        smtp = aiosmtplib.SMTP(
            hostname=server.host,
            port=server.port,
            use_tls=server.implicit_tls,
            start_tls=False if server.implicit_tls else None,
            timeout=self.connect_timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if server.user and server.password:
                await smtp.login(server.user, server.password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP."""
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
            smtp.close()

    async def get_connection(self, server: SMTPServer) -> aiosmtplib.SMTP:
        """Return the connection bound to the calling task, opening one when needed."""
        task_id = id(asyncio.current_task())

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, bound_server = entry
            if bound_server == server and (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), server)
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._quit(smtp)

        smtp = await self._open(server)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), server)
        return smtp

    async def discard(self) -> None:
        """Drop the calling task's connection, e.g. after a network error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> int:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired: List[Tuple[int, aiosmtplib.SMTP]] = []
        for task_id, (smtp, last_used, _server) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append((task_id, smtp))

        for task_id, smtp in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])
        if expired:
            self.logger.debug("Closed %d idle SMTP connection(s)", len(expired))
        return len(expired)

    async def close_all(self) -> None:
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used, _server in items:
            await self._quit(smtp)
