# /mya_recovery/services/security_service.py

import re
import secrets
from typing import Optional, Tuple

import bcrypt

# Credential hashing, API token handling and contact-field sanitisation.

API_TOKEN_PREFIX = "mya"
CLIENT_ID_PATTERN = re.compile(r"^[a-z0-9]{8,32}$")


class SecurityService:
    @staticmethod
    def hash_secret(secret: str) -> str:
        return bcrypt.hashpw(secret.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    @staticmethod
    def verify_secret(secret: str, hashed: str) -> bool:
        """Checks a secret against its bcrypt hash; malformed hashes never match."""
        try:
            return bcrypt.checkpw(secret.encode('utf-8'), hashed.encode('utf-8'))
        except (ValueError, TypeError, AttributeError):
            return False

    @staticmethod
    def constant_time_equals(provided: str, expected: str) -> bool:
        return secrets.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))

    @staticmethod
    def generate_api_credentials() -> Tuple[str, str, str]:
        """
        Creates a new client credential.

        Returns (client_id, secret, token); the token is what callers send as
        the bearer value and is shown exactly once.
        """
        client_id = secrets.token_hex(8)
        secret = secrets.token_urlsafe(32)
        return client_id, secret, f"{API_TOKEN_PREFIX}_{client_id}_{secret}"

    @staticmethod
    def parse_api_token(token: str) -> Optional[Tuple[str, str]]:
        """Splits a `mya_<client_id>_<secret>` token; returns None for other shapes."""
        if not token or not token.startswith(f"{API_TOKEN_PREFIX}_"):
            return None
        parts = token.split("_", 2)
        if len(parts) != 3:
            return None
        _, client_id, secret = parts
        if not CLIENT_ID_PATTERN.match(client_id) or not secret:
            return None
        return client_id, secret


class EnhancedSecurityService(SecurityService):
    @staticmethod
    def sanitize_phone_number(phone: Optional[str]) -> str:
        """
        Normalises a phone number to +<digits>.
        Returns an empty string for empty or implausible input.
        """
        if not phone or not isinstance(phone, str):
            return ""

        clean_phone = re.sub(r"[^\d+]", "", phone.strip())
        digits = clean_phone.lstrip("+")
        if not digits.isdigit() or not (8 <= len(digits) <= 15):
            return ""
        return "+" + digits

    @staticmethod
    def sanitize_email(email: Optional[str]) -> Optional[str]:
        if not email or not isinstance(email, str):
            return None
        cleaned = email.strip().lower()
        return cleaned or None

    @staticmethod
    def gateway_number(phone: Optional[str]) -> str:
        """The Evolution API expects the number without the leading '+'."""
        return EnhancedSecurityService.sanitize_phone_number(phone).lstrip("+")
