"""Tests for welcome e-mail rendering, transports and configuration"""

import smtplib
import sys
from unittest.mock import MagicMock, Mock, patch

import pytest

from ..config import CONFIGS, ProductionConfig, TestingConfig, configure_logging, get_config
from ..delivery_queue import CredentialDeliveryEntry, Credentials, MerchantSnapshot
from ..emailer import (
    SETUP_COMPLETE_SUBJECT,
    WELCOME_SUBJECT,
    ConsoleEmailSender,
    SendGridEmailSender,
    SESEmailSender,
    SetupCompleteEmailComposer,
    SMTPEmailSender,
    WelcomeEmailComposer,
    get_email_sender,
)
from ..errors import DeliveryFailed
from ..models import MerchantRecord


@pytest.fixture
def entry():
    token = "ab" * 32
    return CredentialDeliveryEntry(
        merchant=MerchantSnapshot("mer_4f2a9c1e7b3d0a12", "Amini <Electronics>", "a@x.com", None),
        credentials=Credentials(
            email="a@x.com",
            temp_password="Xy7#kLm2pQ9z",
            setup_token=token,
            setup_url=f"https://nairobicbd.directory/merchant/account-setup/{token}",
            login_url="https://nairobicbd.directory/auth?merchant=true",
        ),
        needs_manual_review=True,
    )


@pytest.fixture
def composer():
    return WelcomeEmailComposer("support@nairobicbd.directory", ttl_days=14)


class TestWelcomeEmailComposer:

    def test_contains_credentials_and_links(self, composer, entry):
        message = composer.compose(entry)

        assert message.subject == WELCOME_SUBJECT
        assert entry.credentials.setup_url in message.html_content
        assert entry.credentials.login_url in message.text_content
        assert entry.credentials.temp_password in message.text_content
        assert "expires in 14 days" in message.html_content
        assert "support@nairobicbd.directory" in message.html_content

    def test_internal_id_fallback(self, composer, entry):
        assert "NAIROBI-CBD-A12" in composer.compose(entry).html_content

    def test_manual_review_notice(self, composer, entry):
        assert "incomplete" in composer.compose(entry).html_content

        plain = CredentialDeliveryEntry(entry.merchant, entry.credentials, needs_manual_review=False)
        assert "incomplete" not in composer.compose(plain).html_content

    def test_html_is_escaped(self, composer, entry):
        html = composer.compose(entry).html_content
        assert "Amini &lt;Electronics&gt;" in html
        assert "Amini <Electronics>" not in html


class TestSetupCompleteEmailComposer:

    def test_links_dashboard_and_escapes_name(self):
        composer = SetupCompleteEmailComposer("https://nairobicbd.directory/", "support@nairobicbd.directory")
        message = composer.compose(MerchantRecord(email="a@x.com", business_name="Amini <Electronics>"))

        assert message.subject == SETUP_COMPLETE_SUBJECT
        assert "https://nairobicbd.directory/merchant/dashboard" in message.html_content
        assert "https://nairobicbd.directory/merchant/dashboard" in message.text_content
        assert "Amini &lt;Electronics&gt;" in message.html_content
        assert "Upload verification documents" in message.text_content


class TestSenders:

    def test_console_outbox(self):
        sender = ConsoleEmailSender()
        sender.send("a@x.com", "Hi", "<p>Hi</p>", "Hi")
        assert sender.outbox == [{'to': "a@x.com", 'subject': "Hi", 'html': "<p>Hi</p>", 'text': "Hi"}]

    def test_smtp_sends_multipart(self):
        sender = SMTPEmailSender("smtp.test", 587, "user", "secret", "noreply@nairobicbd.directory")
        with patch('merchant_onboarding.emailer.smtplib.SMTP') as smtp_cls:
            sender.send("a@x.com", "Hi", "<p>Hi</p>", "Hi")

        server = smtp_cls.return_value.__enter__.return_value
        smtp_cls.assert_called_once_with("smtp.test", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "secret")
        message = server.send_message.call_args.args[0]
        assert message['To'] == "a@x.com"
        assert message.is_multipart()

    def test_smtp_failure_raises_delivery_failed(self):
        sender = SMTPEmailSender("smtp.test", 587, None, None, "noreply@nairobicbd.directory")
        with patch('merchant_onboarding.emailer.smtplib.SMTP',
                   side_effect=smtplib.SMTPConnectError(421, b"busy")):
            with pytest.raises(DeliveryFailed) as exc_info:
                sender.send("a@x.com", "Hi", "<p>Hi</p>")
        assert exc_info.value.details == {'to': "a@x.com"}

    def test_ses_sender(self):
        client = Mock()
        SESEmailSender("noreply@nairobicbd.directory", ses_client=client).send("a@x.com", "Hi", "<p>Hi</p>", "Hi")
        kwargs = client.send_email.call_args.kwargs
        assert kwargs['Destination'] == {'ToAddresses': ["a@x.com"]}
        assert kwargs['Message']['Body']['Html']['Data'] == "<p>Hi</p>"

    def test_ses_failure(self):
        client = Mock()
        client.send_email.side_effect = RuntimeError("throttled")
        with pytest.raises(DeliveryFailed):
            SESEmailSender("noreply@nairobicbd.directory", ses_client=client).send("a@x.com", "Hi", "<p>Hi</p>")

    def test_sendgrid_error_status(self):
        sendgrid = MagicMock()
        sendgrid.SendGridAPIClient.return_value.send.return_value = Mock(status_code=401)
        modules = {'sendgrid': sendgrid, 'sendgrid.helpers': sendgrid.helpers,
                   'sendgrid.helpers.mail': sendgrid.helpers.mail}
        with patch.dict(sys.modules, modules):
            sender = SendGridEmailSender("SG.key", "noreply@nairobicbd.directory")
            with pytest.raises(DeliveryFailed) as exc_info:
                sender.send("a@x.com", "Hi", "<p>Hi</p>")
        assert exc_info.value.details['status_code'] == 401

    def test_get_email_sender(self):
        assert isinstance(get_email_sender(TestingConfig), ConsoleEmailSender)
        smtp_config = type('SMTPConfig', (TestingConfig,), {'EMAIL_PROVIDER': 'smtp'})
        assert isinstance(get_email_sender(smtp_config), SMTPEmailSender)
        with pytest.raises(ValueError):
            get_email_sender(type('BadConfig', (TestingConfig,), {'EMAIL_PROVIDER': 'pigeon'}))


class TestConfig:

    def test_get_config(self, monkeypatch):
        assert get_config('testing') is TestingConfig
        monkeypatch.setenv('ONBOARDING_ENV', 'production')
        assert get_config() is ProductionConfig
        with pytest.raises(ValueError):
            get_config('staging')

    def test_defaults(self):
        assert TestingConfig.SETUP_TOKEN_TTL_DAYS == 14
        assert TestingConfig.TEMP_PASSWORD_LENGTH == 12
        assert set(CONFIGS) == {'development', 'testing', 'production'}

    def test_testing_config_is_valid(self):
        result = TestingConfig.validate()
        assert result['is_valid'], result['errors']

    def test_production_rejects_localhost_and_console(self):
        config = type('Prod', (ProductionConfig,), {
            'FRONTEND_URL': 'http://localhost:3000',
            'EMAIL_PROVIDER': 'console',
        })
        result = config.validate()
        assert result['is_valid'] is False
        assert len(result['errors']) == 2

    def test_sendgrid_requires_key(self):
        config = type('Prod', (ProductionConfig,), {
            'FRONTEND_URL': 'https://nairobicbd.directory',
            'EMAIL_PROVIDER': 'sendgrid',
            'SENDGRID_API_KEY': None,
        })
        assert "SENDGRID_API_KEY is required for the sendgrid provider" in config.validate()['errors']

    def test_configure_logging_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "onboarding.log"
        logger = configure_logging('debug', str(log_file))
        try:
            logger.info("configured")
            assert log_file.exists()
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
