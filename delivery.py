"""
Out-of-band OTP delivery.

SMS is not wired up; codes go to the console in development, or by e-mail when
SMTP is configured and the account has an address. Swap `OTP_TRANSPORT` to
plug in another channel.
"""

import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

import settings


class OtpTransport(Protocol):
    def send(self, phone: str, code: str, email: Optional[str] = None) -> bool:
        ...


class ConsoleTransport:
    def send(self, phone: str, code: str, email: Optional[str] = None) -> bool:
        print(f"### OTP for {phone}: {code} ###")
        return True


class EmailTransport:
    """E-mails the code when possible, otherwise falls back to the console."""

    subject = "Your LabLoom login code"

    def __init__(self, fallback: OtpTransport = None):
        self.fallback = fallback or ConsoleTransport()

    def compose(self, email: str, code: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = settings.FROM_EMAIL
        msg["To"] = email
        msg["Subject"] = self.subject
        msg.set_content(f"Your login code is: {code}. It expires in 10 minutes.")
        msg.add_alternative(
            "<div style='font-family:Inter,Segoe UI,Arial,sans-serif'>"
            "<h2>Sign in to LabLoom</h2>"
            f"<p style='font-size:24px;font-weight:700;letter-spacing:3px'>{code}</p>"
            "<p>This code expires in 10 minutes.</p></div>",
            subtype="html",
        )
        return msg

    def deliver(self, msg: EmailMessage) -> bool:
        try:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
                server.starttls()
                server.login(settings.SMTP_USER, settings.SMTP_PASS)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            print(f"OTP e-mail to {msg['To']} failed: {e}")
            return False
        return True

    def send(self, phone: str, code: str, email: Optional[str] = None) -> bool:
        if email and self.deliver(self.compose(email, code)):
            return True
        return self.fallback.send(phone, code)


def default_transport() -> OtpTransport:
    if settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASS:
        return EmailTransport()
    return ConsoleTransport()


OTP_TRANSPORT: OtpTransport = default_transport()


def get_otp_transport() -> OtpTransport:
    return OTP_TRANSPORT
