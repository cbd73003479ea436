import hashlib


def hash_session_token(token: str) -> str:
    # Sessions are looked up by this hash, never by the raw token.
    # Prefix prevents "hash-as-token" replay.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()
