import base64
import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

# HS256 JWT without external deps

def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{_b64url_encode(signature)}"

def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
    except (ValueError, TypeError) as e:
        raise ValueError(str(e))
    # exp is a unix timestamp
    if 'exp' in payload and datetime.now(timezone.utc).timestamp() > float(payload['exp']):
        raise ValueError("Token expired")
    return payload


def create_token(data: dict, secret: str, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt_encode(to_encode, secret)


def create_access_token(user: dict, secret: str, expire_minutes: int) -> str:
    return create_token(
        {"sub": str(user["_id"]), "email": user["email"], "role": user.get("role", "user")},
        secret,
        timedelta(minutes=expire_minutes),
    )


def create_reset_token(user_id: str, secret: str, expire_minutes: int) -> str:
    return create_token({"sub": user_id, "purpose": "password_reset"}, secret, timedelta(minutes=expire_minutes))


# Salted PBKDF2, stored as "<iterations>$<salt hex>$<hash hex>"
PBKDF2_ITERATIONS = 100_000

def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ITERATIONS)
    return f"{PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"

def verify_password(password: str, hashed: str) -> bool:
    try:
        iterations, salt_hex, digest_hex = hashed.split("$")
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt_hex), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)
