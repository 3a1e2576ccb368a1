import threading

import pytest

import notifier as notifications
from config import DEFAULT_JWT_SECRET, Settings, load_settings
from notifier import LoggingNotifier, Notifier, SMTPNotifier, build_notifier, render


@pytest.mark.parametrize(
    "kind, params, needle",
    [
        (notifications.ACCOUNT_LOCKED, {"fullname": "An", "max_attempts": 5}, "5 lần"),
        (notifications.RECOVERY_CODE, {"fullname": "An", "code": "abc123"}, "abc123"),
        (notifications.ORDER_CONFIRMATION, {"customer_name": "An", "order_code": "00042"}, "#00042"),
        (notifications.PAYMENT_CONFIRMATION, {"order_code": "00042", "transaction_id": "TX9"}, "TX9"),
        (notifications.ORDER_CANCELLED, {"order_code": "00042", "reason": "payment expired"}, "payment expired"),
    ],
)
def test_render_known_kinds(kind, params, needle):
    subject, body = render(kind, params)
    assert subject
    assert needle in body


def test_render_unknown_kind():
    with pytest.raises(ValueError):
        render("newsletter", {})


class CollectingNotifier(Notifier):
    def __init__(self, fail=False):
        super().__init__(max_workers=1)
        self.fail = fail
        self.delivered = []
        self.done = threading.Event()

    def deliver(self, recipient, subject, body):
        self.done.set()
        if self.fail:
            raise OSError("smtp unreachable")
        self.delivered.append((recipient, subject))


def test_notify_delivers_in_background():
    notifier = CollectingNotifier()
    notifier.notify("an@example.com", notifications.ORDER_CANCELLED, {"order_code": "00001"})
    notifier.shutdown()
    assert notifier.delivered == [("an@example.com", "Đơn hàng #00001 đã bị hủy")]


def test_failed_delivery_is_logged_not_raised(caplog):
    notifier = CollectingNotifier(fail=True)
    notifier.notify("an@example.com", notifications.ORDER_CANCELLED, {"order_code": "00001"})
    notifier.shutdown()
    assert notifier.done.is_set()
    assert "Failed to deliver order_cancelled notification" in caplog.text


def test_build_notifier_picks_smtp_when_configured():
    assert isinstance(build_notifier(Settings()), LoggingNotifier)
    smtp = build_notifier(Settings(smtp_host="smtp.example.com", smtp_username="shop@example.com"))
    assert isinstance(smtp, SMTPNotifier)
    assert smtp.host == "smtp.example.com"
    smtp.shutdown()


def test_load_settings_defaults(monkeypatch):
    for name in ("DATABASE_URL", "DB_HOST", "JWT_SECRET", "PORT", "CORS_ORIGINS", "ENABLE_SCHEDULERS"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.database_url == "sqlite:///./storelite.db"
    assert settings.jwt_secret == DEFAULT_JWT_SECRET
    assert settings.port == 8080
    assert settings.enable_schedulers is True
    assert settings.cors_origins == ["*"]


def test_load_settings_from_environment(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DB_HOST", "db")
    monkeypatch.setenv("DB_USER", "shop")
    monkeypatch.setenv("DB_PASSWORD", "pw")
    monkeypatch.setenv("DB_NAME", "store")
    monkeypatch.setenv("PORT", "not-a-number")
    monkeypatch.setenv("ENABLE_SCHEDULERS", "false")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("SMTP_USERNAME", "shop@example.com")
    monkeypatch.delenv("SMTP_FROM", raising=False)

    settings = load_settings()
    assert settings.database_url == "postgresql+psycopg2://shop:pw@db:5432/store?sslmode=disable"
    assert settings.port == 8080
    assert settings.enable_schedulers is False
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.smtp_from == "shop@example.com"
