import aiosmtplib
import pytest

from bulk_mail_service.smtp_pool import SMTPPool, SMTPServer


class DummySMTP:
    def __init__(self, hostname, port, start_tls=None, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise aiosmtplib.SMTPServerDisconnected("Connection dead")
        return 250, "OK"

    async def quit(self):
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("bulk_mail_service.smtp_pool.aiosmtplib.SMTP", factory)
    return created


SERVER = SMTPServer("smtp.local", 25, "user", "pass", use_tls=False)


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection(SERVER)
    smtp2 = await pool.get_connection(SERVER)

    assert smtp1 is smtp2
    assert smtp1.connected
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    smtp1 = await pool.get_connection(SERVER)

    smtp2 = await pool.get_connection(SERVER)
    assert smtp1.closed is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_dead_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection(SERVER)
    smtp1.alive = False

    smtp2 = await pool.get_connection(SERVER)
    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_other_server_opens_new_connection(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection(SERVER)
    smtp2 = await pool.get_connection(SMTPServer("smtp.other", 587))

    assert smtp2 is not smtp1
    assert smtp2.hostname == "smtp.other"
    assert smtp2.login_credentials is None


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection(SERVER)
    smtp.alive = False

    assert await pool.cleanup() == 1
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_discard_and_close_all(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection(SERVER)

    await pool.discard()
    assert smtp.closed is True
    assert pool.pool == {}

    again = await pool.get_connection(SERVER)
    await pool.close_all()
    assert again.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_get_connection_respects_use_tls(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection(SMTPServer("smtp.secure", 465))
    assert smtp.use_tls is True
    assert smtp.start_tls is False

    plain = await pool.get_connection(SMTPServer("smtp.plain", 587, use_tls=False))
    assert plain.use_tls is False
    assert plain.start_tls is None
