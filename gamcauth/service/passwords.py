from __future__ import annotations

import secrets
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from gamcauth.logging import get_logger
from gamcauth.service.errors import ValidationError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = "@$!%*?&"


def password_policy_violations(password: str) -> List[str]:
    """Return the list of unmet password rules (empty when the password is acceptable)."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any("a" <= ch <= "z" for ch in password):
        problems.append("must contain a lowercase letter")
    if not any("A" <= ch <= "Z" for ch in password):
        problems.append("must contain an uppercase letter")
    if not any(ch.isdigit() for ch in password):
        problems.append("must contain a digit")
    if not any(ch in SPECIAL_CHARACTERS for ch in password):
        problems.append(f"must contain one of {SPECIAL_CHARACTERS}")
    return problems


def validate_password_strength(password: str) -> None:
    problems = password_policy_violations(password)
    if problems:
        raise ValidationError("password does not meet policy", detail={"password": problems})


class PasswordService:
    """argon2id hashing for account passwords."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, algo: str, password: str, *, user_id: Optional[str] = None) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def burn_verify(self, password: str) -> None:
        """Run a verification that always fails, costing what a real one costs.

        Used when there is no account to check against, so the response time
        of a login does not reveal whether the email is registered.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_hex(16))
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass


__all__ = [
    "PASSWORD_ALGO",
    "MIN_PASSWORD_LENGTH",
    "MAX_PASSWORD_LENGTH",
    "SPECIAL_CHARACTERS",
    "password_policy_violations",
    "validate_password_strength",
    "PasswordService",
]
