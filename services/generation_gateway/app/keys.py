from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import re
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import FailureKind, GatewayError

logger = logging.getLogger("in3d_gateway.keys")

KEY_PREFIX = "in3d_live_"
KEY_LENGTH = 32
MAX_ACTIVE_KEYS_PER_USER = 5

_KEY_BODY_RE = re.compile(r"^[a-f0-9]+$")


class Scope(str, Enum):
    READ = "read"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _SCOPE_RANK[self]

    def satisfies(self, required: "Scope") -> bool:
        return self.rank >= required.rank


_SCOPE_RANK = {Scope.READ: 0, Scope.FULL: 1}


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    TEAM = "team"
    ENTERPRISE = "enterprise"


def normalize_tier(value: str) -> Tier:
    return Tier((value or "").strip().lower())


def normalize_scope(value: str) -> Scope:
    return Scope((value or "").strip().lower())


@dataclass(frozen=True)
class Principal:
    user_id: str
    scope: Scope
    tier: Tier
    credits_remaining: int
    key_id: Optional[str] = None
    key_prefix: Optional[str] = None


# -------------------------------------------------------------------
# Key material
# -------------------------------------------------------------------


def generate_api_key() -> str:
    return f"{KEY_PREFIX}{secrets.token_hex(KEY_LENGTH // 2)}"


def is_valid_key_format(key: str) -> bool:
    if not key.startswith(KEY_PREFIX):
        return False
    body = key[len(KEY_PREFIX):]
    return len(body) == KEY_LENGTH and bool(_KEY_BODY_RE.match(body))


def key_display_prefix(key: str) -> str:
    body = key[len(KEY_PREFIX):] if key.startswith(KEY_PREFIX) else key
    if len(body) < 8:
        return body
    return f"{KEY_PREFIX}{body[:4]}…{body[-4:]}"


_pepper_warning_emitted = False


def _get_pepper() -> str:
    global _pepper_warning_emitted
    pepper = os.getenv("API_KEY_PEPPER", "")
    if not pepper and not _pepper_warning_emitted:
        logger.warning("API_KEY_PEPPER not set; API key hashes are unkeyed (dev only)")
        _pepper_warning_emitted = True
    return pepper


def hash_api_key(key: str) -> str:
    return hmac.new(_get_pepper().encode("utf-8"), key.encode("utf-8"), hashlib.sha256).hexdigest()


# -------------------------------------------------------------------
# Credential extraction
# -------------------------------------------------------------------


def parse_bearer_token(value: str) -> Optional[str]:
    if not value:
        return None
    parts = value.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def extract_credential(headers: Mapping[str, str], *, key_header: str | None = None) -> Optional[str]:
    """Pull the API key out of request headers.

    The bearer form is only taken when it carries an In3D key; any other bearer
    token (for instance a user session token) falls through to the dedicated
    key header.
    """
    header_name = key_header or os.getenv("API_KEY_HEADER", "x-in3d-key")
    bearer = parse_bearer_token(headers.get("authorization", ""))
    if bearer and bearer.startswith(KEY_PREFIX):
        return bearer
    dedicated = (headers.get(header_name) or "").strip()
    if dedicated:
        return dedicated
    return bearer


# -------------------------------------------------------------------
# Key stores
# -------------------------------------------------------------------


@dataclass(frozen=True)
class KeyRecord:
    key_id: str
    user_id: str
    scope: Scope
    key_prefix: str
    label: str = ""
    revoked: bool = False
    created_at: Optional[str] = None


@dataclass(frozen=True)
class AccountRecord:
    tier: Tier
    credits_remaining: int


def _store_invalid(exc: Exception | None = None) -> GatewayError:
    if exc is not None:
        logger.warning("Key store payload invalid: %s", exc)
    return GatewayError(FailureKind.STORE_UNAVAILABLE, "key store invalid")


def _key_record_from_dict(key_hash: str, raw: Any) -> KeyRecord:
    if not isinstance(raw, dict):
        raise _store_invalid()
    try:
        return KeyRecord(
            key_id=str(raw.get("key_id") or key_hash[:16]),
            user_id=str(raw["user_id"]),
            scope=normalize_scope(str(raw["scope"])),
            key_prefix=str(raw.get("key_prefix", "")),
            label=str(raw.get("label", "")),
            revoked=bool(raw.get("revoked", False)),
            created_at=raw.get("created_at"),
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise _store_invalid(exc) from exc


def _key_record_to_dict(record: KeyRecord) -> dict[str, Any]:
    return {
        "key_id": record.key_id,
        "user_id": record.user_id,
        "scope": record.scope.value,
        "key_prefix": record.key_prefix,
        "label": record.label,
        "revoked": record.revoked,
        "created_at": record.created_at,
    }


def _account_from_dict(raw: Any, default: AccountRecord) -> AccountRecord:
    if raw is None:
        return default
    if not isinstance(raw, dict):
        raise _store_invalid()
    try:
        tier = normalize_tier(str(raw["tier"])) if raw.get("tier") else default.tier
        credits = raw.get("credits_remaining")
        credits_remaining = int(credits) if credits is not None else default.credits_remaining
    except (ValueError, TypeError) as exc:
        raise _store_invalid(exc) from exc
    return AccountRecord(tier=tier, credits_remaining=credits_remaining)


def default_account() -> AccountRecord:
    try:
        return AccountRecord(
            tier=normalize_tier(os.getenv("DEFAULT_TIER", "free")),
            credits_remaining=int(os.getenv("DEFAULT_CREDITS", "100")),
        )
    except ValueError as exc:
        raise RuntimeError("DEFAULT_TIER / DEFAULT_CREDITS misconfigured") from exc


class KeyStore(ABC):
    """Credential and account persistence used by the validator and billing."""

    @abstractmethod
    def lookup_key(self, key_hash: str) -> Optional[KeyRecord]:
        ...

    @abstractmethod
    def get_account(self, user_id: str) -> AccountRecord:
        ...

    @abstractmethod
    def decrement_credits(self, user_id: str, amount: int) -> int:
        ...

    @abstractmethod
    def put_key(self, key_hash: str, record: KeyRecord) -> None:
        ...

    @abstractmethod
    def list_keys(self, user_id: str) -> dict[str, KeyRecord]:
        """Return the user's key records keyed by key hash."""

    def ping(self) -> None:
        return None


class NullKeyStore(KeyStore):
    def lookup_key(self, key_hash: str) -> Optional[KeyRecord]:
        return None

    def get_account(self, user_id: str) -> AccountRecord:
        return default_account()

    def decrement_credits(self, user_id: str, amount: int) -> int:
        raise GatewayError(FailureKind.STORE_UNAVAILABLE, "key store not configured")

    def put_key(self, key_hash: str, record: KeyRecord) -> None:
        raise GatewayError(FailureKind.STORE_UNAVAILABLE, "key store not configured")

    def list_keys(self, user_id: str) -> dict[str, KeyRecord]:
        return {}


class FileKeyStore(KeyStore):
    """JSON document of the shape ``{"keys": {hash: record}, "accounts": {uid: account}}``."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return {"keys": {}, "accounts": {}}
        except json.JSONDecodeError as exc:
            raise _store_invalid(exc) from exc
        if not isinstance(payload, dict):
            raise _store_invalid()
        payload.setdefault("keys", {})
        payload.setdefault("accounts", {})
        if not isinstance(payload["keys"], dict) or not isinstance(payload["accounts"], dict):
            raise _store_invalid()
        return payload

    def _save(self, payload: dict[str, Any]) -> None:
        tmp_path = f"{self._path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            logger.warning("Key store write failed: %s", exc)
            raise GatewayError(FailureKind.STORE_UNAVAILABLE, "key store unavailable") from exc

    def ping(self) -> None:
        with self._lock:
            self._load()

    def lookup_key(self, key_hash: str) -> Optional[KeyRecord]:
        with self._lock:
            raw = self._load()["keys"].get(key_hash)
        if raw is None:
            return None
        return _key_record_from_dict(key_hash, raw)

    def get_account(self, user_id: str) -> AccountRecord:
        with self._lock:
            raw = self._load()["accounts"].get(user_id)
        return _account_from_dict(raw, default_account())

    def decrement_credits(self, user_id: str, amount: int) -> int:
        with self._lock:
            payload = self._load()
            account = _account_from_dict(payload["accounts"].get(user_id), default_account())
            remaining = account.credits_remaining - amount
            payload["accounts"][user_id] = {
                "tier": account.tier.value,
                "credits_remaining": remaining,
            }
            self._save(payload)
        return remaining

    def put_key(self, key_hash: str, record: KeyRecord) -> None:
        with self._lock:
            payload = self._load()
            payload["keys"][key_hash] = _key_record_to_dict(record)
            self._save(payload)

    def list_keys(self, user_id: str) -> dict[str, KeyRecord]:
        with self._lock:
            keys = self._load()["keys"]
        records = {key_hash: _key_record_from_dict(key_hash, raw) for key_hash, raw in keys.items()}
        return {key_hash: record for key_hash, record in records.items() if record.user_id == user_id}


class RedisKeyStore(KeyStore):
    def __init__(
        self,
        redis_url: str,
        *,
        keys_hash: str | None = None,
        accounts_hash: str | None = None,
        credits_hash: str | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._keys_hash = keys_hash or os.getenv("KEYS_REDIS_HASH", "api_keys")
        self._accounts_hash = accounts_hash or os.getenv("ACCOUNTS_REDIS_HASH", "accounts")
        self._credits_hash = credits_hash or os.getenv("CREDITS_REDIS_HASH", "credits")
        self._redis_client = None

    def _client(self):
        if self._redis_client is None:
            import redis

            try:
                self._redis_client = redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_connect_timeout=float(
                        os.getenv("REDIS_CONNECT_TIMEOUT_SECONDS", "1.0")
                    ),
                    socket_timeout=float(os.getenv("REDIS_TIMEOUT_SECONDS", "1.0")),
                )
            except Exception as exc:
                logger.warning("Key store redis init failed: %s", exc)
                raise GatewayError(
                    FailureKind.STORE_UNAVAILABLE, "key store unavailable"
                ) from exc
        return self._redis_client

    def _call(self, op: str, *args: Any) -> Any:
        client = self._client()
        try:
            return getattr(client, op)(*args)
        except Exception as exc:
            logger.warning("Key store redis %s failed: %s", op, exc)
            raise GatewayError(FailureKind.STORE_UNAVAILABLE, "key store unavailable") from exc

    def _decode(self, data: Optional[str]) -> Any:
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError as exc:
            raise _store_invalid(exc) from exc

    def ping(self) -> None:
        self._call("ping")

    def lookup_key(self, key_hash: str) -> Optional[KeyRecord]:
        raw = self._decode(self._call("hget", self._keys_hash, key_hash))
        if raw is None:
            return None
        return _key_record_from_dict(key_hash, raw)

    def get_account(self, user_id: str) -> AccountRecord:
        account = _account_from_dict(
            self._decode(self._call("hget", self._accounts_hash, user_id)),
            default_account(),
        )
        credits = self._call("hget", self._credits_hash, user_id)
        if credits is None:
            return account
        try:
            return AccountRecord(tier=account.tier, credits_remaining=int(credits))
        except ValueError as exc:
            raise _store_invalid(exc) from exc

    def decrement_credits(self, user_id: str, amount: int) -> int:
        # Seed the counter from the account default so HINCRBY starts from the
        # same balance validation saw.
        self._call(
            "hsetnx",
            self._credits_hash,
            user_id,
            self.get_account(user_id).credits_remaining,
        )
        return int(self._call("hincrby", self._credits_hash, user_id, -amount))

    def put_key(self, key_hash: str, record: KeyRecord) -> None:
        self._call("hset", self._keys_hash, key_hash, json.dumps(_key_record_to_dict(record)))

    def list_keys(self, user_id: str) -> dict[str, KeyRecord]:
        entries = self._call("hgetall", self._keys_hash) or {}
        records = {
            key_hash: _key_record_from_dict(key_hash, self._decode(raw))
            for key_hash, raw in entries.items()
        }
        return {key_hash: record for key_hash, record in records.items() if record.user_id == user_id}


def key_store_from_env() -> KeyStore:
    redis_url = os.getenv("KEYS_REDIS_URL")
    if redis_url:
        return RedisKeyStore(redis_url)
    file_path = os.getenv("KEYS_FILE")
    if file_path:
        return FileKeyStore(file_path)
    logger.warning("No key store configured; every API key will be rejected")
    return NullKeyStore()


# -------------------------------------------------------------------
# Validation and key lifecycle
# -------------------------------------------------------------------


class KeyValidator:
    def __init__(self, store: KeyStore) -> None:
        self._store = store

    @property
    def store(self) -> KeyStore:
        return self._store

    def validate(self, credential: Optional[str]) -> Principal:
        if not credential:
            raise GatewayError(
                FailureKind.MISSING_CREDENTIAL,
                "API key required. Provide via Authorization: Bearer <key> or X-In3d-Key header",
            )
        if not is_valid_key_format(credential):
            logger.info("Rejected API key with invalid format")
            raise GatewayError(FailureKind.INVALID_CREDENTIAL, "Invalid or revoked API key")

        prefix = key_display_prefix(credential)
        record = self._store.lookup_key(hash_api_key(credential))
        if record is None or record.revoked:
            logger.info("Rejected unknown or revoked API key %s", prefix)
            raise GatewayError(FailureKind.INVALID_CREDENTIAL, "Invalid or revoked API key")

        account = self._store.get_account(record.user_id)
        return Principal(
            user_id=record.user_id,
            scope=record.scope,
            tier=account.tier,
            credits_remaining=account.credits_remaining,
            key_id=record.key_id,
            key_prefix=record.key_prefix or prefix,
        )


@dataclass(frozen=True)
class IssuedKey:
    raw_key: str
    record: KeyRecord


def issue_api_key(store: KeyStore, *, user_id: str, scope: str, label: str) -> IssuedKey:
    label = (label or "").strip()
    if not label:
        raise GatewayError(FailureKind.INVALID_REQUEST, "Label is required")
    try:
        normalized_scope = normalize_scope(scope)
    except ValueError as exc:
        raise GatewayError(
            FailureKind.INVALID_REQUEST, 'Invalid scope. Must be "read" or "full"'
        ) from exc
    active = [record for record in store.list_keys(user_id).values() if not record.revoked]
    if len(active) >= MAX_ACTIVE_KEYS_PER_USER:
        raise GatewayError(
            FailureKind.INVALID_REQUEST,
            f"Maximum of {MAX_ACTIVE_KEYS_PER_USER} active API keys allowed. "
            "Please revoke an existing key first.",
        )

    raw_key = generate_api_key()
    record = KeyRecord(
        key_id=uuid.uuid4().hex,
        user_id=user_id,
        scope=normalized_scope,
        key_prefix=key_display_prefix(raw_key),
        label=label,
        revoked=False,
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    store.put_key(hash_api_key(raw_key), record)
    logger.info("API key issued for user %s: %s", user_id, record.key_prefix)
    return IssuedKey(raw_key=raw_key, record=record)


def revoke_api_key(store: KeyStore, *, user_id: str, key_id: str) -> KeyRecord:
    match = next(
        (
            (key_hash, record)
            for key_hash, record in store.list_keys(user_id).items()
            if record.key_id == key_id
        ),
        None,
    )
    if match is None:
        raise GatewayError(FailureKind.NOT_FOUND, "API key not found")
    key_hash, record = match
    if record.revoked:
        raise GatewayError(FailureKind.INVALID_REQUEST, "API key is already revoked")
    revoked = KeyRecord(
        key_id=record.key_id,
        user_id=record.user_id,
        scope=record.scope,
        key_prefix=record.key_prefix,
        label=record.label,
        revoked=True,
        created_at=record.created_at,
    )
    store.put_key(key_hash, revoked)
    logger.info("API key revoked: %s", record.key_prefix)
    return revoked
