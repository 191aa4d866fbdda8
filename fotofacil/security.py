import hashlib
import hmac
import re
import secrets
from typing import Optional

from .errors import ValidationError

TOKEN_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
TOKEN_LENGTH = 64

_NON_DIGITS = re.compile(r"\D")


def normalize_cpf(value: str) -> str:
    digits = _NON_DIGITS.sub("", value or "")
    if len(digits) != 11:
        raise ValidationError("CPF inválido", "INVALID_CPF")
    return digits


def hash_cpf(value: str, salt: str) -> str:
    """Customer lookup key: salted SHA-256 of the 11 CPF digits. The raw CPF is never stored."""
    digits = normalize_cpf(value)
    return hashlib.sha256((digits + salt).encode("utf-8")).hexdigest()


def generate_delivery_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def verify_delivery_token(presented: str, stored: Optional[str]) -> bool:
    if not presented or not stored:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))
