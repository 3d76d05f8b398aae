"""
Password validation utilities
Enforces the account password policy
"""

import re
from typing import Tuple

class PasswordValidator:
    """Validates password length and composition"""

    MIN_LENGTH = 8
    MAX_LENGTH = 100

    @staticmethod
    def validate(password: str) -> Tuple[bool, str]:
        """
        Validate password against the policy

        Returns:
            (is_valid, error_message)
        """
        if not password:
            return False, "Password is required"

        if len(password) < PasswordValidator.MIN_LENGTH:
            return False, f"Password must be at least {PasswordValidator.MIN_LENGTH} characters long"

        if len(password) > PasswordValidator.MAX_LENGTH:
            return False, f"Password cannot exceed {PasswordValidator.MAX_LENGTH} characters"

        if not re.search(r'[A-Za-z]', password):
            return False, "Password must contain at least one letter"

        if not re.search(r'\d', password):
            return False, "Password must contain at least one number"

        return True, ""

def validate_password(password: str) -> str:
    """
    Validate password, returning it unchanged (usable as a pydantic validator)

    Raises:
        ValueError: If password doesn't meet requirements
    """
    is_valid, error_message = PasswordValidator.validate(password)
    if not is_valid:
        raise ValueError(error_message)
    return password
