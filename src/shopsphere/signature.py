import hashlib
import hmac


def payment_material(intent_id: str, payment_ref: str) -> str:
    return f"{intent_id}|{payment_ref}"


def sign(material: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        material.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify(material: str, signature: str, secret: str) -> bool:
    """
    Checks an HMAC-SHA256 payment signature.
    The comparison is constant time (hmac.compare_digest).
    """
    if not isinstance(signature, str) or not signature:
        return False
    expected = sign(material, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
