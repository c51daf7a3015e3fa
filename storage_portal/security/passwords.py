from pwdlib import PasswordHash


password_hash = PasswordHash.recommended()


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def verify_password(raw_password: str, hashed_password: str) -> bool:
    if not raw_password or not hashed_password:
        return False
    return password_hash.verify(raw_password, hashed_password)


def check_login_password(raw_password: str, hashed_password: str) -> tuple[bool, str | None]:
    """Verify a login password; also return a fresh hash when the stored one uses outdated parameters."""
    if not raw_password or not hashed_password:
        return False, None
    return password_hash.verify_and_update(raw_password, hashed_password)
