"""Tests for the per-recipient SMTP fan-out and the aiosmtplib transport."""

import asyncio
import base64
import json
import socket

import aiosmtplib
import pytest
from aiosmtpd.controller import Controller

from mailgun_emulator.config_loader import SmtpConfig
from mailgun_emulator.delivery import NO_RECIPIENTS_ERROR, DeliveryEngine, describe_error
from mailgun_emulator.models import Message, RecipientAddress, StoredAttachment
from mailgun_emulator.recipients import extract_email
from mailgun_emulator.transport import SmtpSession, SmtpTransport


def smtp_config(**overrides):
    data = {
        "enabled": True,
        "host": "smtp.test",
        "port": 2525,
        "encryption": "",
        "auth": False,
        "username": "relay@test",
        "from_email": "fallback@test",
        "from_name": "Fallback",
        "timeout": 5,
    }
    data.update(overrides)
    return SmtpConfig(**data)


def make_message(**overrides):
    data = {
        "id": "<abc@example.org>",
        "domain": "example.org",
        "from_addr": "Sender <sender@example.org>",
        "to": "a@x.org,b@x.org,c@x.org",
        "subject": "Hello",
        "text": "Plain body",
        "timestamp": 1_700_000_000,
    }
    data.update(overrides)
    return Message(**data)


def encoded(raw):
    return base64.b64encode(raw).decode("ascii")


class DummySession:
    def __init__(self, transport):
        self.transport = transport

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.transport.closed += 1

    async def send(self, message, sender=None, recipients=None):
        address = extract_email(str(message["To"]))
        self.transport.sent.append((message, sender, recipients))
        error = self.transport.failures.get(address)
        if error is not None:
            raise error
        return self.transport.refused.get(address, {})


class DummyTransport:
    def __init__(self, failures=None, refused=None, test_error=None):
        self.failures = failures or {}
        self.refused = refused or {}
        self.test_error = test_error
        self.sent = []
        self.sessions = 0
        self.closed = 0

    def session(self):
        self.sessions += 1
        return DummySession(self)

    async def test_connection(self):
        if self.test_error is not None:
            raise self.test_error


def engine_with(transport, **config):
    return DeliveryEngine(smtp_config(**config), transport=transport)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_partial_failure_is_aggregated(self):
        transport = DummyTransport(failures={"b@x.org": aiosmtplib.SMTPResponseException(550, "User unknown")})
        engine = engine_with(transport)

        outcome = await engine.deliver(make_message())

        assert outcome.success is False
        assert (outcome.total_recipients, outcome.successful_sends, outcome.failed_sends) == (3, 2, 1)
        assert [(r.recipient, r.success) for r in outcome.results] == [
            ("a@x.org", True),
            ("b@x.org", False),
            ("c@x.org", True),
        ]
        assert outcome.errors == ["Failed to send to b@x.org: 550 User unknown"]
        assert outcome.message == "Some emails failed to send"
        assert transport.sessions == 1
        assert transport.closed == 1
        assert [str(sent["To"]) for sent, _, _ in transport.sent] == ["a@x.org", "b@x.org", "c@x.org"]

    @pytest.mark.asyncio
    async def test_all_successful(self):
        engine = engine_with(DummyTransport())

        outcome = await engine.deliver(make_message(to="Ann <ann@x.org>"))

        assert outcome.success is True
        assert outcome.total_recipients == 1
        assert outcome.errors == []
        assert outcome.message == "All emails sent successfully via SMTP"

    @pytest.mark.asyncio
    async def test_no_recipients(self):
        transport = DummyTransport()
        engine = engine_with(transport)

        outcome = await engine.deliver(make_message(to=" , "))

        assert outcome.success is False
        assert outcome.total_recipients == 0
        assert outcome.errors == [NO_RECIPIENTS_ERROR]
        assert transport.sessions == 0

    @pytest.mark.asyncio
    async def test_connection_failure_counts_for_every_recipient(self):
        error = OSError("Connection refused")
        transport = DummyTransport(failures={"a@x.org": error, "b@x.org": error, "c@x.org": error})
        engine = engine_with(transport)

        outcome = await engine.deliver(make_message())

        assert outcome.failed_sends == 3
        assert outcome.successful_sends == 0
        assert outcome.errors[0] == "Failed to send to a@x.org: Connection refused"

    @pytest.mark.asyncio
    async def test_refused_recipients_count_as_failure(self):
        transport = DummyTransport(refused={"a@x.org": {"cc@x.org": (550, "nope")}})
        engine = engine_with(transport)

        outcome = await engine.deliver(make_message(to="a@x.org"))

        assert outcome.failed_sends == 1
        assert "Recipients refused" in outcome.errors[0]

    @pytest.mark.asyncio
    async def test_timeout_is_described(self):
        transport = DummyTransport(failures={"a@x.org": asyncio.TimeoutError()})
        engine = engine_with(transport)

        outcome = await engine.deliver(make_message(to="a@x.org"))

        assert outcome.errors == ["Failed to send to a@x.org: Timed out"]


class TestBuildEmail:
    @pytest.mark.asyncio
    async def test_personalization_per_recipient(self):
        variables = {"john@x.org": {"first": "John", "id": "to_1"}}
        message = make_message(
            to="john@x.org,ann@x.org",
            subject="Hi %recipient.first%",
            text="Your id is %id%",
            html="<p>Hello %recipient.first%</p>",
            recipient_variables=json.dumps(variables),
        )
        transport = DummyTransport()

        await engine_with(transport).deliver(message)

        john, ann = (sent for sent, _, _ in transport.sent)
        assert john["Subject"] == "Hi John"
        assert "Your id is to_1" in john.get_body(preferencelist=("plain",)).get_content()
        assert "Hello John" in john.get_body(preferencelist=("html",)).get_content()
        assert ann["Subject"] == "Hi %recipient.first%"

    def test_headers(self):
        message = make_message(
            cc="Carl <carl@x.org>",
            bcc="hidden@x.org",
            reply_to="Support <support@example.org>",
            headers=[
                ("Mime-Version", "1.0"),
                ("Subject", "ignored"),
                ("From", "ignored@x.org"),
                ("To", "ignored@x.org"),
                ("Content-Transfer-Encoding", "7bit"),
                ("Reply-To", "ignored@x.org"),
                ("X-Campaign", "spring"),
            ],
        )
        engine = engine_with(DummyTransport())

        built = engine.build_email(message, RecipientAddress(email="a@x.org", name="Ann"))

        assert built["From"] == "Sender <sender@example.org>"
        assert built["To"] == "Ann <a@x.org>"
        assert built["Cc"] == "Carl <carl@x.org>"
        assert built["Bcc"] == "hidden@x.org"
        assert built["Reply-To"] == "support@example.org"
        assert built["Subject"] == "Hello"
        assert built["X-Campaign"] == "spring"
        assert built["Message-ID"] == "<abc@example.org>"
        assert built.get_all("Subject") == ["Hello"]
        assert built.get_all("From") == ["Sender <sender@example.org>"]

    def test_custom_single_headers_replace_generated_ones(self):
        message = make_message(
            cc="carl@x.org",
            headers=[
                ("Date", "Mon, 19 Oct 2026 10:00:00 +0000"),
                ("Cc", "other@x.org"),
                ("Message-ID", "<custom@example.org>"),
                ("X-Trace", "one"),
                ("X-Trace", "two"),
            ],
        )
        engine = engine_with(DummyTransport())

        built = engine.build_email(message, RecipientAddress(email="a@x.org"))

        assert built.get_all("Date") == ["Mon, 19 Oct 2026 10:00:00 +0000"]
        assert built.get_all("Cc") == ["other@x.org"]
        assert built.get_all("Message-ID") == ["<custom@example.org>"]
        assert built.get_all("X-Trace") == ["one", "two"]

    def test_html_only_and_text_only_bodies(self):
        engine = engine_with(DummyTransport())
        recipient = RecipientAddress(email="a@x.org")

        html_only = engine.build_email(make_message(text="", html="<b>hi</b>"), recipient)
        assert html_only.get_content_type() == "text/html"

        text_only = engine.build_email(make_message(text="hi"), recipient)
        assert text_only.get_content_type() == "text/plain"

        both = engine.build_email(make_message(text="hi", html="<b>hi</b>"), recipient)
        assert both.get_content_type() == "multipart/alternative"

    def test_sender_falls_back_to_configured_identity(self):
        engine = engine_with(DummyTransport())

        built = engine.build_email(make_message(from_addr=""), RecipientAddress(email="a@x.org"))

        assert built["From"] == "Fallback <fallback@test>"

    @pytest.mark.asyncio
    async def test_missing_attachment_files_are_skipped(self, tmp_path):
        present = tmp_path / "present.txt"
        present.write_bytes(b"attached")
        attachments = [
            StoredAttachment(
                id="1", filename="1.txt", original_name="notes.txt", size=8, mime_type="text/plain", path=str(present)
            ),
            StoredAttachment(
                id="2",
                filename="2.pdf",
                original_name="gone.pdf",
                size=1,
                mime_type="application/pdf",
                path=str(tmp_path / "gone.pdf"),
            ),
        ]
        transport = DummyTransport()

        outcome = await engine_with(transport).deliver(make_message(to="a@x.org", attachments=attachments))

        assert outcome.success is True
        sent = transport.sent[0][0]
        files = list(sent.iter_attachments())
        assert [part.get_filename() for part in files] == ["notes.txt"]
        assert files[0].get_content() == "attached"


class TestMimeDelivery:
    MIME = (
        b"From: Origin <origin@example.org>\r\n"
        b"To: placeholder@example.org\r\n"
        b"Subject: Raw subject\r\n"
        b"Content-Type: text/plain\r\n"
        b"\r\n"
        b"Raw body\r\n"
    )

    @pytest.mark.asyncio
    async def test_to_rewritten_per_recipient(self):
        transport = DummyTransport(failures={"b@x.org": aiosmtplib.SMTPResponseException(554, "Rejected")})
        message = make_message(to="a@x.org,b@x.org", content_type="message/rfc822", mime_content=encoded(self.MIME))

        outcome = await engine_with(transport).deliver_mime(message)

        assert (outcome.successful_sends, outcome.failed_sends) == (1, 1)
        assert outcome.message == "Some MIME emails failed to send"
        first, sender, envelope = transport.sent[0]
        assert first.get_all("To") == ["a@x.org"]
        assert first["Subject"] == "Raw subject"
        assert sender == "origin@example.org"
        assert envelope == ["a@x.org"]

    def test_missing_from_uses_configured_sender(self):
        engine = engine_with(DummyTransport())
        message = make_message(mime_content=encoded(b"Subject: x\r\n\r\nbody\r\n"))

        built, sender = engine.build_mime_email(message, RecipientAddress(email="a@x.org"))

        assert sender == "fallback@test"
        assert built["From"] == "Fallback <fallback@test>"


@pytest.mark.asyncio
async def test_test_connection_results():
    ok = await engine_with(DummyTransport()).test_connection()
    assert ok == {"success": True, "message": "SMTP connection successful"}

    failing = DummyTransport(test_error=aiosmtplib.SMTPConnectError("Error connecting to smtp.test on port 2525"))
    result = await engine_with(failing).test_connection()
    assert result["success"] is False
    assert "smtp.test" in result["error"]


def test_describe_error_variants():
    refused = aiosmtplib.SMTPRecipientsRefused([aiosmtplib.SMTPRecipientRefused(550, "User not found", "x@y.org")])
    assert describe_error(refused) == "x@y.org: 550 User not found"
    assert describe_error(aiosmtplib.SMTPResponseException(421, "Busy")) == "421 Busy"
    assert describe_error(ValueError()) == "ValueError"


def test_is_enabled_requires_host_and_username():
    assert DeliveryEngine(smtp_config()).is_enabled is True
    assert DeliveryEngine(smtp_config(username="")).is_enabled is False
    assert DeliveryEngine(smtp_config(enabled=False)).is_enabled is False


# --- transport -------------------------------------------------------------


class FakeSMTP:
    def __init__(self, registry, fail_first_send=False, **kwargs):
        self.kwargs = kwargs
        self.is_connected = False
        self.logins = []
        self.sent = []
        self.quit_calls = 0
        self.fail_first_send = fail_first_send
        registry.append(self)

    async def connect(self):
        self.is_connected = True

    async def login(self, username, password):
        self.logins.append((username, password))

    async def send_message(self, message, sender=None, recipients=None):
        if self.fail_first_send:
            self.fail_first_send = False
            self.is_connected = False
            raise aiosmtplib.SMTPServerDisconnected("Connection lost")
        self.sent.append((message, sender, recipients))
        return {}, "OK"

    async def quit(self):
        self.quit_calls += 1
        self.is_connected = False


def fake_factory(registry, **first_options):
    def factory(**kwargs):
        options = {} if registry else first_options
        return FakeSMTP(registry, **options, **kwargs)

    return factory


class TestSmtpTransport:
    @pytest.mark.parametrize(
        "encryption,use_tls,start_tls",
        [("ssl", True, False), ("tls", False, True), ("", False, False), ("none", False, False)],
    )
    @pytest.mark.asyncio
    async def test_encryption_modes(self, encryption, use_tls, start_tls):
        created = []
        transport = SmtpTransport(smtp_config(encryption=encryption, verify_peer=False), fake_factory(created))

        await transport.connect()

        kwargs = created[0].kwargs
        assert (kwargs["use_tls"], kwargs["start_tls"]) == (use_tls, start_tls)
        assert kwargs["validate_certs"] is False
        assert kwargs["hostname"] == "smtp.test"
        assert kwargs["port"] == 2525
        assert kwargs["timeout"] == 5.0

    @pytest.mark.parametrize(
        "verify_peer,allow_self_signed,validate_certs",
        [(True, False, True), (True, True, False), (False, False, False)],
    )
    @pytest.mark.asyncio
    async def test_certificate_validation(self, verify_peer, allow_self_signed, validate_certs):
        created = []
        config = smtp_config(encryption="tls", verify_peer=verify_peer, allow_self_signed=allow_self_signed)

        await SmtpTransport(config, fake_factory(created)).connect()

        assert created[0].kwargs["validate_certs"] is validate_certs

    @pytest.mark.asyncio
    async def test_login_only_with_auth(self):
        created = []
        await SmtpTransport(smtp_config(auth=True, password="pw"), fake_factory(created)).connect()
        await SmtpTransport(smtp_config(auth=False), fake_factory(created)).connect()

        assert created[0].logins == [("relay@test", "pw")]
        assert created[1].logins == []

    @pytest.mark.asyncio
    async def test_session_connects_lazily_and_closes(self):
        created = []
        transport = SmtpTransport(smtp_config(), fake_factory(created))

        async with transport.session() as session:
            assert created == []
            await session.send("first")
            await session.send("second")

        assert len(created) == 1
        assert [item[0] for item in created[0].sent] == ["first", "second"]
        assert created[0].quit_calls == 1
        assert session.connected is False

    @pytest.mark.asyncio
    async def test_session_reconnects_after_disconnect(self):
        created = []
        transport = SmtpTransport(smtp_config(), fake_factory(created, fail_first_send=True))
        session = SmtpSession(transport)

        with pytest.raises(aiosmtplib.SMTPServerDisconnected):
            await session.send("lost")
        await session.send("retry")
        await session.close()

        assert len(created) == 2
        assert created[1].sent[0][0] == "retry"

    @pytest.mark.asyncio
    async def test_test_connection_quits(self):
        created = []
        await SmtpTransport(smtp_config(), fake_factory(created)).test_connection()

        assert created[0].quit_calls == 1


# --- integration with a local SMTP server -----------------------------------


def get_free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class RecordingHandler:
    def __init__(self, rejected=()):
        self.rejected = set(rejected)
        self.received = []

    async def handle_RCPT(self, server, session, envelope, address, rcpt_options):
        if address in self.rejected:
            return "550 User not found"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server, session, envelope):
        self.received.append((envelope.mail_from, list(envelope.rcpt_tos), envelope.content))
        return "250 Message accepted for delivery"


@pytest.fixture
def smtp_server():
    handler = RecordingHandler(rejected={"reject@example.org"})
    port = get_free_port()
    controller = Controller(handler, hostname="127.0.0.1", port=port)
    controller.start()
    try:
        yield handler, port
    finally:
        controller.stop()


@pytest.mark.asyncio
async def test_delivery_against_local_smtp_server(smtp_server):
    handler, port = smtp_server
    engine = DeliveryEngine(smtp_config(host="127.0.0.1", port=port))
    message = make_message(to="ok1@example.org,reject@example.org,ok2@example.org", subject="Integration")

    outcome = await engine.deliver(message)

    assert (outcome.total_recipients, outcome.successful_sends, outcome.failed_sends) == (3, 2, 1)
    assert outcome.errors[0].startswith("Failed to send to reject@example.org:")
    assert "550" in outcome.errors[0]
    assert [rcpts for _, rcpts, _ in handler.received] == [["ok1@example.org"], ["ok2@example.org"]]
    assert all(mail_from == "sender@example.org" for mail_from, _, _ in handler.received)
    assert b"Subject: Integration" in handler.received[0][2]


@pytest.mark.asyncio
async def test_connection_test_against_local_smtp_server(smtp_server):
    _, port = smtp_server
    engine = DeliveryEngine(smtp_config(host="127.0.0.1", port=port))

    assert (await engine.test_connection())["success"] is True
