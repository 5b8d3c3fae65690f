"""
Input validators for merchant onboarding

Validates merchant creation input, feed records and uploaded documents
before anything is written. Validators return (is_valid, error, value)
tuples; the orchestrator turns failures into ValidationError.
"""

import re
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Script-injection patterns rejected in any free-text field
DANGEROUS_PATTERNS = [
    re.compile(r'<script', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'on\w+\s*=', re.IGNORECASE),  # onclick, onload, etc.
    re.compile(r'<iframe', re.IGNORECASE),
    re.compile(r'<object', re.IGNORECASE),
    re.compile(r'<embed', re.IGNORECASE)
]


def contains_dangerous_content(value: str) -> bool:
    return any(pattern.search(value) for pattern in DANGEROUS_PATTERNS)


class EmailValidator:
    """Email validation utilities"""

    EMAIL_PATTERN = re.compile(
        r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    )

    # Common temporary email domains to block
    BLOCKED_DOMAINS = {
        'tempmail.com', 'throwaway.email', 'guerrillamail.com',
        'mailinator.com', '10minutemail.com', 'trashmail.com'
    }

    @classmethod
    def validate_email(cls, email: str) -> Tuple[bool, Optional[str], str]:
        """
        Validate email address

        Args:
            email: Email to validate

        Returns:
            Tuple of (is_valid, error_message, normalized_email)
        """
        if not email or not isinstance(email, str):
            return False, "Email is required", ""

        email = email.strip().lower()

        if not cls.EMAIL_PATTERN.match(email):
            return False, "Invalid email format", ""

        if len(email) > 255:
            return False, "Email is too long", ""

        domain = email.split('@')[1]
        if domain in cls.BLOCKED_DOMAINS:
            return False, "Temporary email domains are not allowed", ""

        return True, None, email


class MerchantInputValidator:
    """
    Validator for merchant creation input and feed records

    Input uses the feed's camelCase keys; the sanitized result uses
    MerchantRecord attribute names.
    """

    BUSINESS_NAME_MIN_LENGTH = 2
    BUSINESS_NAME_MAX_LENGTH = 200
    DESCRIPTION_MAX_LENGTH = 2000
    BUSINESS_HOURS_MAX_LENGTH = 100

    PHONE_PATTERN = re.compile(r'^\+?[\d\s\-()]{7,20}$')

    # Optional free-text fields: input key -> record attribute
    OPTIONAL_TEXT_FIELDS = {
        'ownerName': 'owner_name',
        'internalId': 'internal_id',
        'businessType': 'business_type',
        'description': 'description',
        'address': 'address',
        'location': 'location',
    }

    @classmethod
    def validate_business_name(cls, name: Any) -> Tuple[bool, Optional[str], str]:
        if not name or not isinstance(name, str):
            return False, "Business name is required", ""

        name = ' '.join(name.split())
        if len(name) < cls.BUSINESS_NAME_MIN_LENGTH:
            return False, f"Business name must be at least {cls.BUSINESS_NAME_MIN_LENGTH} characters", ""

        if len(name) > cls.BUSINESS_NAME_MAX_LENGTH:
            return False, f"Business name cannot exceed {cls.BUSINESS_NAME_MAX_LENGTH} characters", ""

        if contains_dangerous_content(name):
            return False, "Business name contains forbidden content", ""

        if not name.isprintable():
            return False, "Business name contains unsupported characters", ""

        return True, None, name

    @classmethod
    def validate_phone(cls, phone: Any) -> Tuple[bool, Optional[str], Optional[str]]:
        """Phone is optional; when present it must look like a phone number"""
        if phone in (None, ''):
            return True, None, None

        phone = str(phone).strip()
        if not cls.PHONE_PATTERN.match(phone):
            return False, "Invalid phone number", None

        return True, None, phone

    @classmethod
    def validate_url(cls, url: str, allowed_domains: List[str] = None) -> Tuple[bool, Optional[str]]:
        """
        Validate URL for safety

        Args:
            url: URL to validate
            allowed_domains: Optional list of allowed domains

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not url:
            return False, "URL is required"

        try:
            parsed = urlparse(url)
        except ValueError as e:
            logger.error(f"URL validation error: {str(e)}")
            return False, "Invalid URL"

        if parsed.scheme not in ['http', 'https']:
            return False, "Only HTTP and HTTPS URLs are allowed"

        if not parsed.netloc:
            return False, "Invalid URL"

        if allowed_domains and parsed.netloc not in allowed_domains:
            return False, f"Domain not allowed. Allowed domains: {', '.join(allowed_domains)}"

        return True, None

    @classmethod
    def validate_merchant_input(cls, data: Any) -> Tuple[bool, Optional[str], Dict[str, Any]]:
        """
        Validate complete merchant input

        Args:
            data: Mapping with businessName, email and optional fields

        Returns:
            Tuple of (is_valid, error_message, sanitized_data)
        """
        if not isinstance(data, dict):
            return False, "Merchant input must be an object", {}

        errors = []
        sanitized: Dict[str, Any] = {}

        name_valid, name_error, name = cls.validate_business_name(data.get('businessName'))
        if name_valid:
            sanitized['business_name'] = name
        else:
            errors.append(f"businessName: {name_error}")

        email_valid, email_error, email = EmailValidator.validate_email(data.get('email'))
        if email_valid:
            sanitized['email'] = email
        else:
            errors.append(f"email: {email_error}")

        phone_valid, phone_error, phone = cls.validate_phone(data.get('phone'))
        if phone_valid:
            sanitized['phone'] = phone
        else:
            errors.append(f"phone: {phone_error}")

        website = (data.get('website') or '').strip()
        if website:
            url_valid, url_error = cls.validate_url(website)
            if url_valid:
                sanitized['website'] = website
            else:
                errors.append(f"website: {url_error}")
        else:
            sanitized['website'] = None

        for key, attribute in cls.OPTIONAL_TEXT_FIELDS.items():
            value = data.get(key)
            if value in (None, ''):
                sanitized[attribute] = None
                continue
            text_error, value = cls.validate_text(value, cls.DESCRIPTION_MAX_LENGTH)
            if text_error:
                errors.append(f"{key}: {text_error}")
            else:
                sanitized[attribute] = value

        if errors:
            return False, " | ".join(errors), {}

        return True, None, sanitized

    @classmethod
    def validate_text(cls, value: Any, max_length: int) -> Tuple[Optional[str], Optional[str]]:
        """Returns (error, stripped_value) for a free-text field"""
        if not isinstance(value, str):
            return "must be a string", None
        value = value.strip()
        if contains_dangerous_content(value):
            return "contains forbidden content", None
        if len(value) > max_length:
            return f"cannot exceed {max_length} characters", None
        return None, value

    @classmethod
    def validate_business_hours(cls, hours: Any) -> Tuple[bool, Optional[str], Dict[str, str]]:
        """Business hours map a day name to free text such as '08:00 - 18:00'"""
        if not isinstance(hours, dict):
            return False, "must be an object mapping days to hours", {}

        sanitized = {}
        for day, value in hours.items():
            if not isinstance(day, str) or not day.strip():
                return False, "day names must be non-empty strings", {}
            text_error, value = cls.validate_text(value, cls.BUSINESS_HOURS_MAX_LENGTH)
            if text_error:
                return False, f"{day}: {text_error}", {}
            sanitized[day.strip().lower()] = value

        return True, None, sanitized

    @classmethod
    def validate_profile_update(cls, data: Any) -> Tuple[bool, Optional[str], Dict[str, Any]]:
        """
        Validate the optional profile fields supplied at account setup

        Only description, website and businessHours are accepted. Empty
        values are skipped, so the stored value is kept.

        Returns:
            Tuple of (is_valid, error_message, sanitized_patch)
        """
        if data is None:
            return True, None, {}
        if not isinstance(data, dict):
            return False, "Profile update must be an object", {}

        unknown = set(data) - {'description', 'website', 'businessHours'}
        if unknown:
            return False, f"Unsupported profile fields: {', '.join(sorted(unknown))}", {}

        errors = []
        sanitized: Dict[str, Any] = {}

        if data.get('description'):
            text_error, description = cls.validate_text(data['description'], cls.DESCRIPTION_MAX_LENGTH)
            if text_error:
                errors.append(f"description: {text_error}")
            else:
                sanitized['description'] = description

        if data.get('website'):
            website = str(data['website']).strip()
            url_valid, url_error = cls.validate_url(website)
            if url_valid:
                sanitized['website'] = website
            else:
                errors.append(f"website: {url_error}")

        if data.get('businessHours'):
            hours_valid, hours_error, hours = cls.validate_business_hours(data['businessHours'])
            if hours_valid:
                sanitized['business_hours'] = hours
            else:
                errors.append(f"businessHours: {hours_error}")

        if errors:
            return False, " | ".join(errors), {}

        return True, None, sanitized


class DocumentValidator:
    """Validator for uploaded verification documents"""

    MAX_SIZE_BYTES = 10 * 1024 * 1024  # 10MB

    ALLOWED_MIME_TYPES = {
        'application/pdf',
        'image/jpeg',
        'image/jpg',
        'image/png',
        'image/gif',
        'application/msword',
        'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    }

    @classmethod
    def validate_upload(cls, path: str, original_name: str, size_bytes: int,
                        mime_type: str) -> Tuple[bool, Optional[str]]:
        """
        Validate document metadata before it is attached to a merchant

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not path:
            return False, "Document path is required"

        if not original_name:
            return False, "Original file name is required"

        if size_bytes is None or size_bytes <= 0:
            return False, "Document is empty"

        if size_bytes > cls.MAX_SIZE_BYTES:
            return False, "Document exceeds the 10MB limit"

        if mime_type not in cls.ALLOWED_MIME_TYPES:
            return False, "Invalid file type. Only PDF, images, and Word documents are allowed."

        return True, None
