"""Tests for SMTP delivery — message building, threading headers, factory."""
from unittest.mock import AsyncMock, patch

import pytest

from channels.mail_transport import SmtpMailTransport, create_mail_transport, html_to_plain
from config.settings import MailConfig


def _config(**kwargs) -> MailConfig:
    data = dict(smtp_host="smtp.example.com", smtp_port=2525, smtp_user="desk",
                smtp_password="secret", from_address="desk@acmetravel.com", from_name="Acme Travel")
    data.update(kwargs)
    return MailConfig(**data)


class TestHtmlToPlain:
    def test_paragraphs_and_entities(self):
        html = "<style>p{}</style><p>Dear Claire,</p><p>Paris &amp; Rome<br>from 4,900</p>"
        assert html_to_plain(html) == "Dear Claire,\nParis & Rome\nfrom 4,900"


class TestBuildMessage:
    def test_reply_headers(self):
        transport = SmtpMailTransport(_config())
        msg = transport.build_message(
            "claire@example.com", "Re: Paris in June", "<p>Hello</p>",
            in_reply_to="<abc123@mail.example.com>",
        )

        assert msg["From"] == "Acme Travel <desk@acmetravel.com>"
        assert msg["To"] == "claire@example.com"
        assert msg["In-Reply-To"] == "<abc123@mail.example.com>"
        assert msg["References"] == "<abc123@mail.example.com>"
        assert msg["Message-ID"].endswith("@acmetravel.com>")
        assert msg.is_multipart()
        assert msg.get_body(("plain",)).get_content().strip() == "Hello"
        assert "<p>Hello</p>" in msg.get_body(("html",)).get_content()

    def test_new_thread_has_no_reply_headers(self):
        msg = SmtpMailTransport(_config()).build_message("claire@example.com", "Hi", "<p>x</p>", text_body="x")
        assert msg["In-Reply-To"] is None
        assert msg.get_body(("plain",)).get_content().strip() == "x"


class TestSendMail:
    @pytest.mark.asyncio
    async def test_sends_with_configured_server(self):
        transport = SmtpMailTransport(_config())
        with patch("channels.mail_transport.aiosmtplib.send", new=AsyncMock()) as send:
            receipt = await transport.send_mail("claire@example.com", "Re: Paris", "<p>Hi</p>")

        send.assert_awaited_once()
        sent, = send.await_args.args
        kwargs = send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 2525
        assert kwargs["username"] == "desk"
        assert kwargs["start_tls"] is True
        assert receipt.delivery_id == sent["Message-ID"]

    @pytest.mark.asyncio
    async def test_blank_credentials_are_not_sent(self):
        transport = SmtpMailTransport(_config(smtp_user="", smtp_password=""))
        with patch("channels.mail_transport.aiosmtplib.send", new=AsyncMock()) as send:
            await transport.send_mail("claire@example.com", "Re: Paris", "<p>Hi</p>")
        assert send.await_args.kwargs["username"] is None
        assert send.await_args.kwargs["password"] is None

    @pytest.mark.asyncio
    async def test_smtp_errors_propagate(self):
        transport = SmtpMailTransport(_config())
        with patch("channels.mail_transport.aiosmtplib.send", new=AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(OSError):
                await transport.send_mail("claire@example.com", "Re: Paris", "<p>Hi</p>")


class TestFactory:
    def test_no_host_means_no_transport(self):
        assert create_mail_transport(MailConfig()) is None
        assert create_mail_transport(None) is None

    def test_configured_host(self):
        assert isinstance(create_mail_transport(_config()), SmtpMailTransport)
