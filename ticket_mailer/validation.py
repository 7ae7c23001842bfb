import re

# Mirrors the CHECK constraint on tickets.email in schema.sql
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def is_valid_email(email) -> bool:
    """Syntax-only check of a recipient address"""
    if not email or not isinstance(email, str):
        return False
    return EMAIL_PATTERN.fullmatch(email) is not None
