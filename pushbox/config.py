import base64
import hashlib
import json
import logging
import math
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from secrets import compare_digest
from typing import Any, Dict, List, Optional, Tuple

from werkzeug.security import check_password_hash

logger = logging.getLogger("pushbox.config")

BYTES_PER_MB = 1024 * 1024

DEFAULT_CONFIG: Dict[str, Any] = {
    "bind_addr": "127.0.0.1:8000",
    "external_url": "http://localhost:8000/",
    "base_path": "d",
    "api_keys": [],
    "users": [],
    "key": "",
    "session_ttl_hours": 12.0,
    "session_cookie_secure": False,
    "max_upload_size_mb": 500.0,
    "login_rate_limit_per_minute": 10.0,
    "upload_rate_limit_per_hour": 100.0,
    "name_attempts": 32.0,
    "logs_dir": "",
}

CONFIG_NUMERIC_KEYS = {
    "session_ttl_hours",
    "max_upload_size_mb",
    "login_rate_limit_per_minute",
    "upload_rate_limit_per_hour",
    "name_attempts",
}

CONFIG_STRING_KEYS = {"bind_addr", "external_url", "base_path", "key", "logs_dir"}

CONFIG_BOOLEAN_KEYS = {"session_cookie_secure"}

ENV_OVERRIDES = {
    "PUSHBOX_STORAGE_ROOT": "base_path",
    "PUSHBOX_EXTERNAL_URL": "external_url",
    "PUSHBOX_BIND_ADDR": "bind_addr",
    "PUSHBOX_SECRET_KEY": "key",
    "PUSHBOX_LOGS_DIR": "logs_dir",
}

# Prefixes produced by werkzeug.security.generate_password_hash.
_WERKZEUG_HASH_PREFIXES = ("pbkdf2:", "scrypt:")


class ConfigError(ValueError):
    """Raised when the configuration file cannot be used."""


def hash_api_key(key: str) -> str:
    """Hash an API key using SHA-256 for comparison."""

    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def legacy_password_digest(password: str) -> str:
    """Base64 encoded SHA-256 digest used by older credential files."""

    digest = hashlib.sha256(password.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass(frozen=True)
class APIKey:
    key_hash: str
    comment: str = ""


@dataclass(frozen=True)
class UserCredentials:
    username: str
    password: str

    def check(self, candidate: str) -> bool:
        if self.password.startswith(_WERKZEUG_HASH_PREFIXES):
            return check_password_hash(self.password, candidate)
        return compare_digest(self.password.encode("utf-8"), legacy_password_digest(candidate).encode("utf-8"))


@dataclass(frozen=True)
class ShareConfig:
    """Process-wide settings, read-only after startup."""

    bind_addr: str
    external_url: str
    storage_root: Path
    secret_key: str
    api_keys: Tuple[APIKey, ...] = ()
    users: Tuple[UserCredentials, ...] = ()
    session_ttl_hours: float = 12.0
    session_cookie_secure: bool = False
    max_upload_size_mb: float = 500.0
    login_rate_limit_per_minute: int = 10
    upload_rate_limit_per_hour: int = 100
    name_attempts: int = 32
    logs_dir: Optional[Path] = None

    @property
    def bind_host_port(self) -> Tuple[str, int]:
        host, _, port = self.bind_addr.rpartition(":")
        try:
            return host or "127.0.0.1", int(port)
        except ValueError:
            raise ConfigError(f"Invalid bind_addr: {self.bind_addr!r}") from None

    def api_key_matches(self, provided: Optional[str]) -> bool:
        """Linear scan over the configured keys."""

        if not provided:
            return False
        provided_hash = hash_api_key(provided)
        found = False
        for entry in self.api_keys:
            if compare_digest(entry.key_hash.encode("utf-8"), provided_hash.encode("utf-8")):
                found = True
        return found

    def authenticate(self, username: str, password: str) -> bool:
        for user in self.users:
            if compare_digest(user.username.encode("utf-8"), username.encode("utf-8")):
                return user.check(password)
        return False


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_api_keys(raw_entries: Any) -> List[Dict[str, str]]:
    cleaned: List[Dict[str, str]] = []
    if not isinstance(raw_entries, list):
        return cleaned
    seen = set()
    for entry in raw_entries:
        if not isinstance(entry, dict):
            continue
        key_hash = entry.get("key_hash")
        if not key_hash and entry.get("key"):
            key_hash = hash_api_key(str(entry.get("key")))
        if not key_hash or not isinstance(key_hash, str) or key_hash in seen:
            continue
        seen.add(key_hash)
        comment = entry.get("comment") if isinstance(entry.get("comment"), str) else ""
        cleaned.append({"key_hash": key_hash.strip(), "comment": comment.strip()})
    return cleaned


def _normalize_users(raw_entries: Any) -> List[Dict[str, str]]:
    cleaned: List[Dict[str, str]] = []
    if not isinstance(raw_entries, list):
        return cleaned
    for entry in raw_entries:
        if not isinstance(entry, dict):
            continue
        username = entry.get("username")
        password = entry.get("password") or entry.get("password_hash")
        if not isinstance(username, str) or not username.strip():
            continue
        if not isinstance(password, str) or not password.strip():
            logger.warning("config_user_skipped username=%s reason=no_password", username)
            continue
        cleaned.append({"username": username.strip(), "password": password.strip()})
    return cleaned


def normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    if config["session_ttl_hours"] <= 0:
        config["session_ttl_hours"] = DEFAULT_CONFIG["session_ttl_hours"]
    if config["max_upload_size_mb"] < 1:
        config["max_upload_size_mb"] = DEFAULT_CONFIG["max_upload_size_mb"]
    if config["login_rate_limit_per_minute"] < 1:
        config["login_rate_limit_per_minute"] = DEFAULT_CONFIG["login_rate_limit_per_minute"]
    if config["upload_rate_limit_per_hour"] < 1:
        config["upload_rate_limit_per_hour"] = DEFAULT_CONFIG["upload_rate_limit_per_hour"]
    if config["name_attempts"] < 1:
        config["name_attempts"] = DEFAULT_CONFIG["name_attempts"]

    for key in CONFIG_STRING_KEYS:
        value = raw_config.get(key)
        if isinstance(value, str) and value.strip():
            config[key] = value.strip()

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            value = raw_config.get(key)
            if isinstance(value, str):
                config[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                config[key] = bool(value)

    config["api_keys"] = _normalize_api_keys(raw_config.get("api_keys"))
    config["users"] = _normalize_users(raw_config.get("users"))

    if not config["external_url"].endswith("/"):
        config["external_url"] += "/"

    return config


def apply_env_overrides(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(raw_config)
    for env_key, config_key in ENV_OVERRIDES.items():
        value = os.environ.get(env_key)
        if value:
            merged[config_key] = value
    return merged


def build_config(raw_config: Dict[str, Any], base_dir: Optional[Path] = None) -> ShareConfig:
    """Turn a raw mapping into a ShareConfig, resolving relative paths against *base_dir*."""

    data = normalize_config(raw_config)
    base_dir = base_dir or Path.cwd()

    storage_root = Path(data["base_path"]).expanduser()
    if not storage_root.is_absolute():
        storage_root = base_dir / storage_root

    logs_dir: Optional[Path] = None
    if data["logs_dir"]:
        logs_dir = Path(data["logs_dir"]).expanduser()
        if not logs_dir.is_absolute():
            logs_dir = base_dir / logs_dir

    secret_key = data["key"]
    if not secret_key:
        logger.critical(
            "SECURITY WARNING: No session key configured. Using an in-memory key; "
            "sessions will not survive a restart. Set 'key' in the config file or "
            "PUSHBOX_SECRET_KEY."
        )
        secret_key = secrets.token_hex(32)

    config = ShareConfig(
        bind_addr=data["bind_addr"],
        external_url=data["external_url"],
        storage_root=storage_root.resolve(),
        secret_key=secret_key,
        api_keys=tuple(
            APIKey(key_hash=entry["key_hash"], comment=entry["comment"])
            for entry in data["api_keys"]
        ),
        users=tuple(
            UserCredentials(username=entry["username"], password=entry["password"])
            for entry in data["users"]
        ),
        session_ttl_hours=data["session_ttl_hours"],
        session_cookie_secure=data["session_cookie_secure"],
        max_upload_size_mb=data["max_upload_size_mb"],
        login_rate_limit_per_minute=int(data["login_rate_limit_per_minute"]),
        upload_rate_limit_per_hour=int(data["upload_rate_limit_per_hour"]),
        name_attempts=int(data["name_attempts"]),
        logs_dir=logs_dir.resolve() if logs_dir else None,
    )
    config.bind_host_port  # raises ConfigError on a malformed bind_addr
    return config


def load_config(path: Optional[Path] = None) -> ShareConfig:
    """Load the JSON config file named by *path* or ``PUSHBOX_CONFIG``."""

    if path is None:
        path = Path(os.environ.get("PUSHBOX_CONFIG", "config.json"))
    path = Path(path).expanduser()

    raw: Dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as config_file:
                raw = json.load(config_file)
        except (OSError, json.JSONDecodeError) as error:
            raise ConfigError(f"Unable to read config file {path}: {error}") from error
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
    else:
        logger.warning("config_missing path=%s using=defaults", path)

    config = build_config(apply_env_overrides(raw), base_dir=path.resolve().parent)
    logger.info(
        "config_loaded path=%s storage_root=%s users=%d api_keys=%d",
        path,
        config.storage_root,
        len(config.users),
        len(config.api_keys),
    )
    return config
