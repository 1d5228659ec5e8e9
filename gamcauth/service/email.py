from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from gamcauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #1f2933;">
  <h2>{title}</h2>
  {body}
  <p style="color: #6b7280; font-size: 12px;">
    Gobierno Autónomo Municipal de Cochabamba. Si usted no solicitó este cambio,
    ignore este mensaje y comuníquese con soporte.
  </p>
</body>
</html>
"""


class EmailService:
    """Outbound mail for the password-reset flow.

    When SMTP is not configured the message is logged instead of sent, so the
    reset flow keeps working in development.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "GAMC Intranet",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connection_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset(self, to_email: str, token: str, expires_minutes: int) -> bool:
        """Send the reset link for accounts without a security question."""
        reset_url = f"{self.base_url}/reset-password?token={quote(token)}"
        subject = "Restablecer contraseña - GAMC"
        text_body = (
            "Recibimos una solicitud para restablecer su contraseña.\n\n"
            f"Abra el siguiente enlace para continuar: {reset_url}\n\n"
            f"El enlace vence en {expires_minutes} minutos y solo puede usarse una vez."
        )
        html_body = _HTML_TEMPLATE.format(
            title="Restablecer contraseña",
            body=(
                "<p>Recibimos una solicitud para restablecer su contraseña.</p>"
                f'<p><a href="{html.escape(reset_url)}">Restablecer contraseña</a></p>'
                f"<p>El enlace vence en {expires_minutes} minutos y solo puede usarse una vez.</p>"
            ),
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_security_challenge(
        self, to_email: str, question_id: int, question_text: str, expires_minutes: int
    ) -> bool:
        """Tell the user which security question unlocks their reset."""
        verify_url = f"{self.base_url}/forgot-password/verify?email={quote(to_email)}&questionId={question_id}"
        subject = "Verificación de seguridad - GAMC"
        text_body = (
            "Para restablecer su contraseña responda su pregunta de seguridad:\n\n"
            f"  {question_text}\n\n"
            f"Continúe en: {verify_url}\n"
            f"La solicitud vence en {expires_minutes} minutos."
        )
        html_body = _HTML_TEMPLATE.format(
            title="Verificación de seguridad",
            body=(
                "<p>Para restablecer su contraseña responda su pregunta de seguridad:</p>"
                f"<blockquote>{html.escape(question_text)}</blockquote>"
                f'<p><a href="{html.escape(verify_url)}">Responder pregunta</a></p>'
                f"<p>La solicitud vence en {expires_minutes} minutos.</p>"
            ),
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        subject = "Su contraseña fue cambiada - GAMC"
        text_body = (
            "La contraseña de su cuenta fue cambiada y todas las sesiones abiertas "
            "fueron cerradas."
        )
        html_body = _HTML_TEMPLATE.format(
            title="Contraseña actualizada", body=f"<p>{text_body}</p>"
        )
        return self._send_email(to_email, subject, html_body, text_body)


__all__ = ["EmailService"]
