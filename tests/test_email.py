import smtplib
from email import message_from_string

import pytest

from securesnap.service import email as email_module
from securesnap.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        self.tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, from_addr, to_addr, raw):
        self.sent.append((from_addr, to_addr, raw))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, from_addr, to_addr, raw):
        raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})


@pytest.fixture(autouse=True)
def reset_instances():
    FakeSMTP.instances = []


@pytest.fixture
def mailer():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@securesnap.test",
        base_url="https://app.securesnap.test/",
    )


def _only_message():
    [server] = FakeSMTP.instances
    [(_, to_addr, raw)] = server.sent
    return server, to_addr, message_from_string(raw)


def _part(message, subtype):
    for part in message.walk():
        if part.get_content_type() == f"text/{subtype}":
            return part.get_payload(decode=True).decode()
    raise AssertionError(f"no text/{subtype} part")


def test_magic_link_email(monkeypatch, mailer):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    link = "https://app.securesnap.test/auth/magic-link?token=abc&redirect=%2Fhome"
    assert mailer.send_magic_link("rita@example.com", "Rita", link, 15)

    server, to_addr, message = _only_message()
    assert server.tls
    assert server.logged_in == "mailer"
    assert to_addr == "rita@example.com"
    assert message["Subject"] == "Your SecureSnap sign-in link"
    assert link in _part(message, "plain")
    assert 'href="https://app.securesnap.test/auth/magic-link?token=abc&amp;redirect=%2Fhome"' in _part(
        message, "html"
    )


def test_names_are_escaped(monkeypatch, mailer):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    mailer.send_welcome("sam@example.com", "<script>alert(1)</script>")
    _, _, message = _only_message()
    html = _part(message, "html")
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "https://app.securesnap.test/login" in html


def test_backup_codes_listed(monkeypatch, mailer):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    codes = ["AAAA-1111", "BBBB-2222"]
    mailer.send_backup_codes("tom@example.com", None, codes)
    _, _, message = _only_message()
    text = _part(message, "plain")
    assert all(code in text for code in codes)


def test_known_alert_headline(monkeypatch, mailer):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    mailer.send_security_alert("uma@example.com", "Uma", "LOW_BACKUP_CODES", "1 left")
    _, _, message = _only_message()
    subject = " ".join(str(message["Subject"]).split())
    assert "running low on two-factor backup codes" in subject


def test_delivery_failure_reported(monkeypatch, mailer):
    monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)
    assert mailer.send_welcome("vic@example.com", "Vic") is False


def test_unconfigured_service_only_logs(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    service = EmailService()
    assert not service.is_configured
    assert service.send_welcome("wes@example.com", None)
    assert FakeSMTP.instances == []
