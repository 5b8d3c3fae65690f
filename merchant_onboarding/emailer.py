"""
Email delivery for merchant credentials

Renders the welcome-credentials message with Jinja2 and hands it to one
of several transports. Transports raise DeliveryFailed instead of
returning False so the delivery queue can record the reason per entry.
"""

import logging
import os
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import DeliveryFailed

logger = logging.getLogger(__name__)

WELCOME_SUBJECT = "Welcome to Nairobi CBD Business Directory - Your Account is Ready!"
SETUP_COMPLETE_SUBJECT = "Account Setup Complete - Welcome to Nairobi CBD!"
TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), 'templates')


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    html_content: str
    text_content: str


def build_template_env(template_dir: Optional[str] = None) -> Environment:
    return Environment(
        loader=FileSystemLoader(template_dir or TEMPLATE_DIR),
        autoescape=select_autoescape(['html', 'xml'])
    )


class WelcomeEmailComposer:
    """Builds the credential e-mail for a queued delivery entry"""

    def __init__(self, support_email: str, ttl_days: int = 14, template_dir: Optional[str] = None):
        self.support_email = support_email
        self.ttl_days = ttl_days
        self.template_env = build_template_env(template_dir)

    def compose(self, entry) -> EmailMessage:
        """
        Render subject and bodies for a CredentialDeliveryEntry

        Returns:
            EmailMessage containing the plaintext credentials (do not log)
        """
        merchant = entry.merchant
        credentials = entry.credentials
        context = {
            'business_name': merchant.business_name,
            'email': merchant.email,
            'internal_id': merchant.internal_id or f"NAIROBI-CBD-{merchant.merchant_id[-3:].upper()}",
            'temp_password': credentials.temp_password,
            'setup_url': credentials.setup_url,
            'login_url': credentials.login_url,
            'needs_manual_review': entry.needs_manual_review,
            'ttl_days': self.ttl_days,
            'support_email': self.support_email,
            'current_year': datetime.now().year,
        }
        html_content = self.template_env.get_template('welcome_credentials.html').render(**context)
        text_content = self.template_env.get_template('welcome_credentials.txt').render(**context)
        return EmailMessage(WELCOME_SUBJECT, html_content, text_content)


class SetupCompleteEmailComposer:
    """Builds the confirmation sent once a merchant finishes account setup"""

    def __init__(self, frontend_url: str, support_email: str, template_dir: Optional[str] = None):
        self.dashboard_url = f"{frontend_url.rstrip('/')}/merchant/dashboard"
        self.support_email = support_email
        self.template_env = build_template_env(template_dir)

    def compose(self, merchant) -> EmailMessage:
        context = {
            'business_name': merchant.business_name,
            'dashboard_url': self.dashboard_url,
            'support_email': self.support_email,
            'current_year': datetime.now().year,
        }
        html_content = self.template_env.get_template('setup_complete.html').render(**context)
        text_content = self.template_env.get_template('setup_complete.txt').render(**context)
        return EmailMessage(SETUP_COMPLETE_SUBJECT, html_content, text_content)


# Email Provider Implementations

class EmailSender:
    """Transport interface"""

    def send(self, to_email: str, subject: str, html_content: str, text_content: str = "") -> None:
        raise NotImplementedError


class ConsoleEmailSender(EmailSender):
    """Logs instead of sending; keeps an outbox for inspection in tests"""

    def __init__(self):
        self.outbox: List[dict] = []

    def send(self, to_email: str, subject: str, html_content: str, text_content: str = "") -> None:
        logger.info(f"CONSOLE EMAIL - To: {to_email}, Subject: {subject}")
        self.outbox.append({
            'to': to_email,
            'subject': subject,
            'html': html_content,
            'text': text_content,
        })


class SMTPEmailSender(EmailSender):
    """SMTP email provider"""

    def __init__(self, host: str, port: int, username: Optional[str], password: Optional[str],
                 from_email: str, use_tls: bool = True, timeout: float = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, to_email: str, subject: str, html_content: str, text_content: str = "") -> None:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.from_email
        msg['To'] = to_email

        msg.attach(MIMEText(text_content, 'plain'))
        msg.attach(MIMEText(html_content, 'html'))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailed(f"SMTP delivery failed: {str(e)}", details={'to': to_email})


class SendGridEmailSender(EmailSender):
    """SendGrid email provider"""

    def __init__(self, api_key: str, from_email: str):
        import sendgrid

        if not api_key:
            raise ValueError("SENDGRID_API_KEY not configured")
        self.sg = sendgrid.SendGridAPIClient(api_key=api_key)
        self.from_email = from_email

    def send(self, to_email: str, subject: str, html_content: str, text_content: str = "") -> None:
        from sendgrid.helpers.mail import Mail

        mail = Mail(
            from_email=self.from_email,
            to_emails=to_email,
            subject=subject,
            html_content=html_content,
            plain_text_content=text_content or None,
        )

        try:
            response = self.sg.send(mail)
        except Exception as e:
            raise DeliveryFailed(f"SendGrid delivery failed: {str(e)}", details={'to': to_email})

        if response.status_code >= 300:
            raise DeliveryFailed(f"SendGrid returned HTTP {response.status_code}",
                                 details={'to': to_email, 'status_code': response.status_code})


class SESEmailSender(EmailSender):
    """AWS SES email provider"""

    def __init__(self, from_email: str, ses_client=None):
        if ses_client is None:
            import boto3
            ses_client = boto3.client('ses')
        self.ses = ses_client
        self.from_email = from_email

    def send(self, to_email: str, subject: str, html_content: str, text_content: str = "") -> None:
        try:
            self.ses.send_email(
                Source=self.from_email,
                Destination={'ToAddresses': [to_email]},
                Message={
                    'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                    'Body': {
                        'Text': {'Data': text_content, 'Charset': 'UTF-8'},
                        'Html': {'Data': html_content, 'Charset': 'UTF-8'}
                    }
                }
            )
        except Exception as e:
            raise DeliveryFailed(f"SES delivery failed: {str(e)}", details={'to': to_email})


def get_email_sender(config) -> EmailSender:
    """
    Initialize email provider based on configuration

    Raises:
        ValueError: Unknown provider name or missing provider settings
    """
    provider_type = (config.EMAIL_PROVIDER or 'console').lower()

    if provider_type == 'console':
        return ConsoleEmailSender()
    if provider_type == 'smtp':
        return SMTPEmailSender(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            from_email=config.FROM_EMAIL,
            use_tls=config.SMTP_USE_TLS,
            timeout=config.SMTP_TIMEOUT_SECONDS,
        )
    if provider_type == 'sendgrid':
        return SendGridEmailSender(config.SENDGRID_API_KEY, config.FROM_EMAIL)
    if provider_type == 'ses':
        return SESEmailSender(config.FROM_EMAIL)

    raise ValueError(f"Unknown email provider: {provider_type}")
