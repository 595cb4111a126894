import hashlib
import hmac


def hash_refresh_token(refresh_token: str) -> str:
    """One-way SHA-256 digest of a raw refresh token. Only this is ever stored."""
    return hashlib.sha256(refresh_token.encode()).hexdigest()


def refresh_token_matches(refresh_token: str, stored_hash: str) -> bool:
    # Constant-time comparison
    return hmac.compare_digest(hash_refresh_token(refresh_token), stored_hash)
