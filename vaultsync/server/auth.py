"""User accounts and bearer tokens for the vault API."""

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import timedelta

from passlib.context import CryptContext

from ..errors import MalformedInputError, UnauthorizedError, UsernameTakenError
from ..models import utcnow
from ..storage.database import Database, from_db_timestamp, to_db_timestamp

logger = logging.getLogger("vaultsync.server.auth")

PASSWORD_SCHEMES = ["bcrypt"]
DEFAULT_TOKEN_TTL = 24 * 60 * 60

pwd_context = CryptContext(schemes=PASSWORD_SCHEMES, deprecated="auto")


def _prehash(password: str) -> str:
    # bcrypt only reads the first 72 bytes.
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    """Return a salted bcrypt hash for storage."""
    return pwd_context.hash(_prehash(password))


def verify_password(password: str, encoded: str) -> bool:
    try:
        return pwd_context.verify(_prehash(password), encoded)
    except ValueError:
        # Not a hash this context recognises.
        return False


def fingerprint(token: str) -> str:
    """One-way short hash of a token, safe for log lines."""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class UserDirectory:
    """Registers users and checks their credentials."""

    database: Database

    def register(self, username: str, password: str) -> int:
        username = (username or "").strip()
        if not username or not password:
            raise MalformedInputError("username and password are required")

        encoded = hash_password(password)
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO users (username, password_hash, created_at) VALUES (?, ?, ?)",
                    (username, encoded, to_db_timestamp(utcnow())),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            logger.info("Registration refused: username '%s' is taken", username)
            raise UsernameTakenError()
        logger.info("Registered user '%s' (id %s)", username, user_id)
        return user_id

    def authenticate(self, username: str, password: str) -> int:
        """Return the user id for valid credentials, else raise ``UnauthorizedError``."""
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT id, password_hash FROM users WHERE username = ?",
                ((username or "").strip(),),
            ).fetchone()
        if row is None or not verify_password(password or "", row["password_hash"]):
            logger.info("Failed login for '%s'", username)
            raise UnauthorizedError("invalid username or password")
        return row["id"]


@dataclass
class TokenAuthority:
    """Issues opaque bearer tokens; only their SHA-256 hash is stored."""

    database: Database
    ttl_seconds: int = DEFAULT_TOKEN_TTL

    def issue(self, user_id: int) -> str:
        token = secrets.token_hex(32)
        now = utcnow()
        with self.database.transaction() as conn:
            conn.execute(
                "INSERT INTO auth_tokens (token_hash, user_id, created_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    _token_hash(token),
                    user_id,
                    to_db_timestamp(now),
                    to_db_timestamp(now + timedelta(seconds=self.ttl_seconds)),
                ),
            )
        logger.info("Issued token %s for user %s", fingerprint(token), user_id)
        return token

    def resolve(self, token: str) -> int:
        """Return the user id behind ``token`` or raise ``UnauthorizedError``."""
        if not token:
            raise UnauthorizedError()
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT user_id, expires_at FROM auth_tokens WHERE token_hash = ?",
                (_token_hash(token),),
            ).fetchone()
        if row is None:
            raise UnauthorizedError("invalid token")
        if from_db_timestamp(row["expires_at"]) <= utcnow():
            logger.info("Token %s expired", fingerprint(token))
            self.revoke(token)
            raise UnauthorizedError("token expired")
        return row["user_id"]

    def revoke(self, token: str) -> None:
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM auth_tokens WHERE token_hash = ?", (_token_hash(token),))


__all__ = [
    "TokenAuthority",
    "UserDirectory",
    "fingerprint",
    "hash_password",
    "verify_password",
]
