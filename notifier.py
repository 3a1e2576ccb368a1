"""
Outbound customer notifications.

``Notifier.notify`` returns immediately; delivery runs on a worker thread and a
failed delivery is logged, never raised to the caller.
"""
import logging
import smtplib
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from typing import Any, Dict, List, Tuple

from config import Settings

logger = logging.getLogger(__name__)

ACCOUNT_LOCKED = "account_locked"
RECOVERY_CODE = "recovery_code"
ORDER_CONFIRMATION = "order_confirmation"
PAYMENT_CONFIRMATION = "payment_confirmation"
ORDER_CANCELLED = "order_cancelled"


def render(kind: str, params: Dict[str, Any]) -> Tuple[str, str]:
    """Subject and plain-text body for a notification kind."""
    name = params.get("fullname") or params.get("customer_name") or ""
    code = params.get("order_code", "")
    if kind == ACCOUNT_LOCKED:
        return (
            "Tài khoản của bạn đã bị khóa",
            f"Xin chào {name},\n\nTài khoản của bạn đã bị khóa do nhập sai mật khẩu quá "
            f"{params.get('max_attempts', 5)} lần. Hãy yêu cầu mã khôi phục để mở khóa.",
        )
    if kind == RECOVERY_CODE:
        return (
            "Mã khôi phục tài khoản",
            f"Xin chào {name},\n\nMã khôi phục của bạn là: {params.get('code')}\n"
            f"Mã có hiệu lực trong {params.get('expires_in_minutes', 30)} phút và chỉ dùng được một lần.",
        )
    if kind == ORDER_CONFIRMATION:
        return (
            f"Xác nhận đơn hàng #{code}",
            f"Xin chào {name},\n\nĐơn hàng #{code} đã được tạo.\n"
            f"Tổng thanh toán: {params.get('final_amount')}\n"
            f"Phương thức thanh toán: {params.get('payment_method_text', '')}",
        )
    if kind == PAYMENT_CONFIRMATION:
        return (
            f"Thanh toán thành công đơn hàng #{code}",
            f"Xin chào {name},\n\nChúng tôi đã nhận được thanh toán cho đơn hàng #{code}.\n"
            f"Mã giao dịch: {params.get('transaction_id', '')}",
        )
    if kind == ORDER_CANCELLED:
        return (
            f"Đơn hàng #{code} đã bị hủy",
            f"Xin chào {name},\n\nĐơn hàng #{code} đã bị hủy.\nLý do: {params.get('reason', '')}",
        )
    raise ValueError(f"unknown notification kind: {kind}")


class Notifier:
    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notifier")

    def notify(self, recipient: str, kind: str, params: Dict[str, Any]) -> None:
        self._executor.submit(self._deliver_safely, recipient, kind, dict(params))

    def _deliver_safely(self, recipient: str, kind: str, params: Dict[str, Any]) -> None:
        try:
            subject, body = render(kind, params)
            self.deliver(recipient, subject, body)
        except Exception:
            logger.exception("Failed to deliver %s notification to %s", kind, recipient)

    def deliver(self, recipient: str, subject: str, body: str) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class LoggingNotifier(Notifier):
    def deliver(self, recipient: str, subject: str, body: str) -> None:
        logger.info("Notification to %s: %s", recipient, subject)


class SMTPNotifier(Notifier):
    def __init__(self, settings: Settings, max_workers: int = 2):
        super().__init__(max_workers=max_workers)
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_username
        self.password = settings.smtp_password
        self.sender = settings.smtp_from

    def deliver(self, recipient: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)
        logger.info("Sent %r to %s", subject, recipient)


class RecordingNotifier:
    """Synchronous notifier that keeps what it was asked to send."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, recipient: str, kind: str, params: Dict[str, Any]) -> None:
        render(kind, params)
        self.sent.append((recipient, kind, dict(params)))

    def kinds(self) -> List[str]:
        return [kind for _, kind, _ in self.sent]

    def shutdown(self) -> None:
        pass


def build_notifier(settings: Settings):
    if settings.smtp_host:
        return SMTPNotifier(settings)
    logger.info("SMTP_HOST not set; notifications will be logged only")
    return LoggingNotifier()
