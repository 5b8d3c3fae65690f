"""
Centralised configuration for the merchant onboarding service.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()


class Config:
    """Base configuration."""

    # Public URLs
    FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')
    SUPPORT_EMAIL = os.getenv('SUPPORT_EMAIL', 'support@nairobicbd.directory')

    # Merchant store
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///onboarding.db')

    # Credential delivery queue
    QUEUE_DIR = os.getenv('QUEUE_DIR', 'data')
    INTER_SEND_DELAY_SECONDS = float(os.getenv('INTER_SEND_DELAY_SECONDS', '2.0'))
    DEFAULT_SCHEDULED_TIME = os.getenv('DEFAULT_SCHEDULED_TIME', '07:00')
    REDIS_URL = os.getenv('REDIS_URL')  # Optional cross-process queue lock

    # Credentials
    SETUP_TOKEN_TTL_DAYS = int(os.getenv('SETUP_TOKEN_TTL_DAYS', '14'))
    TEMP_PASSWORD_LENGTH = int(os.getenv('TEMP_PASSWORD_LENGTH', '12'))

    # Email transport
    EMAIL_PROVIDER = os.getenv('EMAIL_PROVIDER', 'console')
    FROM_EMAIL = os.getenv('FROM_EMAIL', 'noreply@nairobicbd.directory')
    SENDGRID_API_KEY = os.getenv('SENDGRID_API_KEY')
    SMTP_HOST = os.getenv('SMTP_HOST', 'localhost')
    SMTP_PORT = int(os.getenv('SMTP_PORT', '587'))
    SMTP_USERNAME = os.getenv('SMTP_USERNAME')
    SMTP_PASSWORD = os.getenv('SMTP_PASSWORD')
    SMTP_USE_TLS = os.getenv('SMTP_USE_TLS', 'true').lower() == 'true'
    SMTP_TIMEOUT_SECONDS = float(os.getenv('SMTP_TIMEOUT_SECONDS', '30'))

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FILE = os.getenv('LOG_FILE')

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Validate configuration and return errors/warnings."""
        errors = []
        warnings = []

        if cls.SETUP_TOKEN_TTL_DAYS <= 0:
            errors.append("SETUP_TOKEN_TTL_DAYS must be positive")

        if cls.TEMP_PASSWORD_LENGTH < 12:
            errors.append("TEMP_PASSWORD_LENGTH must be at least 12")

        if cls.INTER_SEND_DELAY_SECONDS < 0:
            errors.append("INTER_SEND_DELAY_SECONDS cannot be negative")

        if cls.EMAIL_PROVIDER == 'sendgrid' and not cls.SENDGRID_API_KEY:
            errors.append("SENDGRID_API_KEY is required for the sendgrid provider")

        if cls.EMAIL_PROVIDER == 'console':
            warnings.append("EMAIL_PROVIDER is 'console' - credential e-mails are only logged")

        if not cls.REDIS_URL:
            warnings.append("REDIS_URL not set - queue lock is process-local")

        return {
            'errors': errors,
            'warnings': warnings,
            'is_valid': len(errors) == 0
        }


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class TestingConfig(Config):
    """Test configuration."""
    DEBUG = True
    TESTING = True
    DATABASE_URL = 'sqlite:///:memory:'
    FRONTEND_URL = 'https://test.nairobicbd.directory'
    EMAIL_PROVIDER = 'console'
    INTER_SEND_DELAY_SECONDS = 0.0
    REDIS_URL = None


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Stricter validation for production."""
        result = super().validate()

        if 'localhost' in cls.FRONTEND_URL:
            result['errors'].append("FRONTEND_URL must not point to localhost in production")

        if cls.EMAIL_PROVIDER == 'console':
            result['errors'].append("A real EMAIL_PROVIDER is required in production")

        if cls.EMAIL_PROVIDER == 'smtp' and not (cls.SMTP_USERNAME and cls.SMTP_PASSWORD):
            result['errors'].append("SMTP_USERNAME and SMTP_PASSWORD are required in production")

        result['is_valid'] = len(result['errors']) == 0
        return result


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name: Optional[str] = None):
    """Return the configuration class for the given environment name."""
    env = name or os.getenv('ONBOARDING_ENV', 'development')
    try:
        return CONFIGS[env]
    except KeyError:
        raise ValueError(f"Unknown environment: {env}")


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None):
    """Install stream and optional rotating file handlers on the package logger."""
    logger = logging.getLogger('merchant_onboarding')
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
               for h in logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    if log_file and not any(isinstance(h, RotatingFileHandler) and h.baseFilename == os.path.abspath(log_file)
                            for h in logger.handlers):
        directory = os.path.dirname(log_file)
        if directory and not os.path.exists(directory):
            os.makedirs(directory)
        file_handler = RotatingFileHandler(log_file, maxBytes=10240000, backupCount=10)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
