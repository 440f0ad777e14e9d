"""Transactional email over SMTP with STARTTLS."""
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from errors import UpstreamServiceError

logger = logging.getLogger(__name__)

_WRAPPER = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
    "{body}"
    '<div style="text-align: center; margin-top: 30px;">'
    '<a href="{link}" style="background-color: #007bff; color: white; padding: 12px 24px; '
    'text-decoration: none; border-radius: 5px;">{cta}</a>'
    "</div></div>"
)


class EmailService:
    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: str = "noreply@askfriendlearn.com",
        frontend_url: str = "http://localhost:3000",
        timeout: float = 10,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email
        self.frontend_url = (frontend_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.from_email,
            settings.frontend_url,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def send_email(self, to: str, subject: str, html_body: str, text: Optional[str] = None) -> None:
        if not self.configured:
            raise UpstreamServiceError("Email service is not configured")
        message = EmailMessage()
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text or subject)
        message.add_alternative(html_body, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email to %s failed: %s", to, exc)
            raise UpstreamServiceError("Failed to send email") from None
        logger.info("Sent email %r to %s", subject, to)

    def send_welcome_email(self, email: str, username: str) -> None:
        name = html.escape(username or email)
        body = (
            '<h1 style="color: #333; text-align: center;">Welcome to Ask Friend Learn!</h1>'
            f"<p>Hi {name},</p>"
            "<p>Welcome to Ask Friend Learn! We're excited to have you join our AI-powered tutoring platform.</p>"
            "<p>You can now chat with the AI tutor, build learning plans and track your progress.</p>"
            "<p>Happy learning!</p>"
        )
        self.send_email(
            email,
            "Welcome to Ask Friend Learn!",
            _WRAPPER.format(body=body, link=self.frontend_url, cta="Start Learning"),
            f"Welcome to Ask Friend Learn, {username or email}! Start your AI-powered learning journey today.",
        )

    def send_chat_milestone_email(self, email: str, username: str, session_count: int) -> None:
        body = (
            '<h1 style="color: #333; text-align: center;">Chat Session Milestone!</h1>'
            f"<p>Congratulations {html.escape(username or '')}! You've completed {session_count} "
            "chat sessions with our AI tutor.</p>"
            "<p>Keep up the great work in your learning journey!</p>"
        )
        self.send_email(
            email,
            f"Chat Session Milestone: {session_count} Sessions!",
            _WRAPPER.format(body=body, link=f"{self.frontend_url}/chat", cta="Continue Learning"),
            f"Congratulations! You've completed {session_count} chat sessions.",
        )
