import hmac, hashlib

SIGNATURE_HEADER = "X-Hub-Signature-256"

def expected_signature(app_secret: str, raw: bytes) -> str:
    return "sha256=" + hmac.new(app_secret.encode(), raw, hashlib.sha256).hexdigest()

def verify_meta_signature(app_secret: str, raw: bytes, header: str | None) -> bool:
    """Check an X-Hub-Signature-256 header (``sha256=<hex>``) against the raw request body."""
    if not app_secret or not header or not header.startswith("sha256="):
        return False
    return hmac.compare_digest(expected_signature(app_secret, raw), header)
