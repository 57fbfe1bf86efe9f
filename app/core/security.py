"""
Password hashing for user accounts created by imports.

Imported users never arrive with a usable password. The executor hashes the
configured default once per run and stores that hash on every user row
that lacks one.
"""
import bcrypt


def get_password_hash(password: str) -> str:
    """Return the bcrypt hash of ``password`` as text for ``users.password``."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check ``plain_password`` against a stored hash; non-bcrypt values never match."""
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False
