"""Tests for SMTP email rendering and delivery handling."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from identity_engine.logging import redact_email
from identity_engine.service.email import EmailKind, SmtpEmailSender, deliver


@pytest.fixture
def sender():
    return SmtpEmailSender(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="secret",
        from_name="Quanby Task Manager",
        base_url="https://app.example.com/",
    )


class TestRender:
    def test_verification_link(self, sender):
        subject, html_body, text_body = sender.render(
            EmailKind.EMAIL_VERIFICATION, token="abc123", name="Ada"
        )

        assert subject == "Verify Your Email - Quanby Task Manager"
        assert "https://app.example.com/verify-email?token=abc123" in text_body
        assert "Hi Ada," in text_body
        assert "Verify Email Address" in html_body

    def test_federated_link_carries_provider(self, sender):
        _, _, text_body = sender.render(EmailKind.FEDERATED_VERIFICATION, token="abc123")

        assert "/verify-email?token=abc123&provider=google" in text_body

    def test_reset_link_and_name_escaping(self, sender):
        _, html_body, text_body = sender.render(
            EmailKind.PASSWORD_RESET, token="t0k", name="<script>"
        )

        assert "https://app.example.com/reset-password?token=t0k" in text_body
        assert "<script>" not in html_body
        assert "&lt;script&gt;" in html_body

    def test_notice_without_link(self, sender):
        subject, _, text_body = sender.render(EmailKind.PASSWORD_CHANGED)

        assert subject == "Password Changed - Quanby Task Manager"
        assert "http" not in text_body


class TestSend:
    def test_dev_mode_logs_instead_of_sending(self):
        sender = SmtpEmailSender()

        with patch("identity_engine.service.email.smtplib.SMTP") as smtp:
            assert sender.send(EmailKind.PASSWORD_RESET, "a@example.com", token="t") is True

        smtp.assert_not_called()

    def test_starttls_delivery(self, sender):
        server = MagicMock()
        with patch("identity_engine.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert sender.send(EmailKind.PASSWORD_RESET, "a@example.com", token="t")

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "secret")
        from_addr, to_addr, _ = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("mailer@example.com", "a@example.com")

    def test_transport_failure_returns_false(self, sender):
        with patch("identity_engine.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = (
                smtplib.SMTPServerDisconnected("gone")
            )
            assert sender.send(EmailKind.PASSWORD_RESET, "a@example.com", token="t") is False

    async def test_deliver_turns_exceptions_into_false(self):
        broken = MagicMock()
        broken.send.side_effect = RuntimeError("boom")

        assert await deliver(broken, EmailKind.PASSWORD_SET, "a@example.com") is False


def test_redact_email_keeps_domain_only():
    assert redact_email("john.doe@example.com") == "jo***@example.com"
