import smtplib
from datetime import timedelta

import pytest

from hrsecurity.service import notifications
from hrsecurity.service.notifications import EmailNotifier
from hrsecurity.storage.models import Account, utcnow


def _account():
    return Account(id="a1", tenant_id="acme", email="jane@acme.test", password_hash="h")


class _FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        return None

    def login(self, user, password):
        return None

    def sendmail(self, sender, recipient, body):
        _FakeSMTP.sent.append((sender, recipient, body))


class _RefusingSMTP(_FakeSMTP):
    def sendmail(self, sender, recipient, body):
        raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})


def test_redact_email_keeps_domain():
    assert EmailNotifier._redact_email("jane.doe@acme.test") == "ja***@acme.test"
    assert EmailNotifier._redact_email("not-an-address") == "redacted"


@pytest.mark.asyncio
async def test_unconfigured_notifier_logs_instead_of_sending(monkeypatch):
    monkeypatch.setattr(notifications.smtplib, "SMTP", _RefusingSMTP)
    notifier = EmailNotifier()

    assert notifier.is_configured is False
    assert await notifier.password_changed(_account()) is True


@pytest.mark.asyncio
async def test_lock_notice_is_sent_over_smtp(monkeypatch):
    _FakeSMTP.sent = []
    monkeypatch.setattr(notifications.smtplib, "SMTP", _FakeSMTP)
    notifier = EmailNotifier(smtp_host="smtp.acme.test", from_email="security@acme.test")

    assert await notifier.account_locked(_account(), utcnow() + timedelta(minutes=15)) is True

    sender, recipient, body = _FakeSMTP.sent[0]
    assert sender == "security@acme.test"
    assert recipient == "jane@acme.test"
    assert "temporarily locked" in body


@pytest.mark.asyncio
async def test_smtp_failure_is_reported_not_raised(monkeypatch):
    monkeypatch.setattr(notifications.smtplib, "SMTP", _RefusingSMTP)
    notifier = EmailNotifier(smtp_host="smtp.acme.test", from_email="security@acme.test")

    assert await notifier.mfa_disabled(_account()) is False
