"""Config loading for the Everly gateway.

Reads `.everly/config.yaml` (or `~/.everly/config.yaml`), merges the private
credentials file and environment overrides, then validates the result.
Malformed or missing configuration is a fatal startup condition: every error
path writes a ``CONFIG ERROR:`` line to stderr and raises SystemExit(1).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. EVERLY_CONFIG environment variable (if set)
  3. `.everly/config.yaml` (working directory — for development)
  4. `~/.everly/config.yaml` (home directory — for production deployments)

If no YAML file is found the defaults are used; the upstream URL and the
credentials still have to come from the environment / secrets file.

Private credentials file:
  When SECRETS_DIR is set, ``$SECRETS_DIR/<EVERLY_PRIVATE_CONFIG_FILE>``
  (default ``everlybot.json``) must be a JSON object carrying non-blank
  ``senderId`` and ``synapsysClientKey``. Its values win over the YAML
  ``credentials`` section.

Environment variable overrides:
  SYNAPSYS_BASE_URL          — overrides upstream.base_url
  EVERLY_UPSTREAM_TIMEOUT_S  — overrides upstream.timeout_s
  PORT                       — overrides server.port
"""

from __future__ import annotations

import json
import math
import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional
from urllib.parse import urlsplit

import yaml

from everly.constants import (
    DEFAULT_BURST,
    DEFAULT_MAX_MESSAGE_CHARS,
    DEFAULT_PRUNE_INTERVAL_S,
    DEFAULT_RATE_PER_MINUTE,
    DEFAULT_UPSTREAM_TIMEOUT_S,
    UPSTREAM_CHAT_PATH,
)
from everly.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".everly/config.yaml",
    os.path.expanduser("~/.everly/config.yaml"),
]

DEFAULT_PRIVATE_CONFIG_FILE = "everlybot.json"

_ALLOWED_URL_SCHEMES: frozenset[str] = frozenset({"http", "https"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class UpstreamConfig:
    """Upstream broker location and outbound call bound."""

    base_url: str = ""
    timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S


@dataclass
class CredentialsConfig:
    """Sender identity and the shared signing secret.

    client_key is excluded from repr so it never lands in a log line.
    """

    sender_id: str = ""
    client_key: str = field(default="", repr=False)


@dataclass
class RateLimitConfig:
    """Per-caller token bucket parameters."""

    rate_per_minute: float = DEFAULT_RATE_PER_MINUTE
    burst: int = DEFAULT_BURST
    prune_interval_s: float = DEFAULT_PRUNE_INTERVAL_S


@dataclass
class ValidationConfig:
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS


@dataclass
class ServerConfig:
    """Server binding configuration."""

    host: str = "127.0.0.1"
    port: int = 3000


@dataclass
class Config:
    """Root configuration object, built once at startup and shared read-only."""

    version: int = SUPPORTED_CONFIG_VERSION
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    path: Optional[str] = None  # Path to the loaded YAML file, if any

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @property
    def upstream_chat_url(self) -> str:
        return f"{self.upstream.base_url.rstrip('/')}{UPSTREAM_CHAT_PATH}"

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.
        Values that cannot be coerced to the expected type raise SystemExit(1).
        """
        upstream_raw = _section(raw, "upstream")
        upstream = UpstreamConfig(
            base_url=str(upstream_raw.get("base_url", "") or ""),
            timeout_s=_coerce(
                upstream_raw, "timeout_s", float, DEFAULT_UPSTREAM_TIMEOUT_S, "upstream"
            ),
        )

        credentials_raw = _section(raw, "credentials")
        credentials = CredentialsConfig(
            sender_id=str(credentials_raw.get("sender_id", "") or ""),
            client_key=str(credentials_raw.get("client_key", "") or ""),
        )

        rate_raw = _section(raw, "rate_limit")
        rate_limit = RateLimitConfig(
            rate_per_minute=_coerce(
                rate_raw, "rate_per_minute", float, DEFAULT_RATE_PER_MINUTE, "rate_limit"
            ),
            burst=_coerce(rate_raw, "burst", int, DEFAULT_BURST, "rate_limit"),
            prune_interval_s=_coerce(
                rate_raw, "prune_interval_s", float, DEFAULT_PRUNE_INTERVAL_S, "rate_limit"
            ),
        )

        validation_raw = _section(raw, "validation")
        validation = ValidationConfig(
            max_message_chars=_coerce(
                validation_raw,
                "max_message_chars",
                int,
                DEFAULT_MAX_MESSAGE_CHARS,
                "validation",
            ),
        )

        server_raw = _section(raw, "server")
        server = ServerConfig(
            host=str(server_raw.get("host", "127.0.0.1")),
            port=_coerce(server_raw, "port", int, 3000, "server"),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            upstream=upstream,
            credentials=credentials,
            rate_limit=rate_limit,
            validation=validation,
            server=server,
            path=path,
        )


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _fail(msg: str) -> NoReturn:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        _fail(f"'{name}' must be a mapping, got {type(value).__name__}.")
    return value


def _coerce(raw: dict, key: str, kind: type, default: Any, section: str) -> Any:
    value = raw.get(key, default)
    # bool is an int subclass; "burst: true" is a typo, not a number
    if isinstance(value, bool):
        _fail(f"{section}.{key} must be a number, got {value!r}.")
    if kind is int and isinstance(value, float) and not value.is_integer():
        _fail(f"{section}.{key} must be a whole number, got {value!r}.")
    try:
        coerced = kind(value)
    except (TypeError, ValueError, OverflowError):
        _fail(f"{section}.{key} must be a number, got {value!r}.")
    if isinstance(coerced, float) and not math.isfinite(coerced):
        _fail(f"{section}.{key} must be a finite number, got {value!r}.")
    return coerced


def _required_string(obj: dict, key: str, source: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value.strip():
        _fail(f"Missing/invalid field '{key}' in {source}.")
    return value.strip()


def _validate_upstream_url(url: str, field_name: str) -> None:
    """Reject upstream URLs that are not absolute http(s) URLs.

    Raises:
        SystemExit(1): on an empty, relative or non-http(s) URL.
    """
    if not url:
        _fail(f"{field_name} is not configured (set it in config.yaml or SYNAPSYS_BASE_URL).")
    parts = urlsplit(url)
    if parts.scheme not in _ALLOWED_URL_SCHEMES or not parts.hostname:
        _fail(
            f"{field_name} must be an absolute http(s) URL, got {url!r}."
        )
    if parts.query or parts.fragment:
        _fail(f"{field_name} must not carry a query string or fragment, got {url!r}.")


# ─── Private credentials ─────────────────────────────────────────────────────


def load_private_credentials(secrets_dir: str, filename: str) -> CredentialsConfig:
    """Load sender id and client key from the private JSON credentials file.

    Raises:
        SystemExit(1): missing file, invalid JSON, non-object JSON or a
                       missing / blank field.
    """
    full_path = os.path.abspath(os.path.join(os.path.expanduser(secrets_dir), filename))
    if not os.path.isfile(full_path):
        _fail(f"Private config file not found: {full_path}")

    try:
        with open(full_path, encoding="utf-8") as fh:
            parsed = json.load(fh)
    except ValueError:
        # JSONDecodeError and UnicodeDecodeError
        _fail(f"Invalid JSON in private config file: {full_path}")
    except OSError as exc:
        _fail(f"Could not read {full_path}: {exc}")

    if not isinstance(parsed, dict):
        _fail(f"Private config JSON must be an object: {full_path}")

    return CredentialsConfig(
        sender_id=_required_string(parsed, "senderId", full_path),
        client_key=_required_string(parsed, "synapsysClientKey", full_path),
    )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load, merge and validate the gateway configuration.

    Returns:
        A validated Config.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field,
                       unsupported version, bad private credentials file,
                       invalid env override, or any validate_config() failure.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("EVERLY_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
    else:
        config = _load_yaml(found_path)

    secrets_dir = os.environ.get("SECRETS_DIR", "").strip()
    if secrets_dir:
        filename = (
            os.environ.get("EVERLY_PRIVATE_CONFIG_FILE") or DEFAULT_PRIVATE_CONFIG_FILE
        ).strip()
        config.credentials = load_private_credentials(secrets_dir, filename)

    _apply_env_overrides(config)
    validate_config(config)

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        upstream=config.upstream.base_url,
        sender_id=config.credentials.sender_id,
        rate_per_minute=config.rate_limit.rate_per_minute,
        burst=config.rate_limit.burst,
        max_message_chars=config.validation.max_message_chars,
    )
    return config


def _load_yaml(found_path: str) -> Config:
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "Everly refuses to start with an invalid config."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    return Config.from_dict(raw, path=found_path)


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If PORT or EVERLY_UPSTREAM_TIMEOUT_S is not numeric.
    """
    env_base = os.environ.get("SYNAPSYS_BASE_URL")
    if env_base:
        config.upstream.base_url = env_base.strip()

    env_timeout = os.environ.get("EVERLY_UPSTREAM_TIMEOUT_S")
    if env_timeout is not None:
        try:
            config.upstream.timeout_s = float(env_timeout)
        except ValueError:
            _fail(f"EVERLY_UPSTREAM_TIMEOUT_S is not a number: '{env_timeout}'")

    env_port = os.environ.get("PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(f"PORT environment variable is not a valid integer: '{env_port}'")


def validate_config(config: Config) -> None:
    """Check every value the gateway depends on.

    Raises:
        SystemExit(1): On the first invalid value.
    """
    config.upstream.base_url = config.upstream.base_url.strip().rstrip("/")
    _validate_upstream_url(config.upstream.base_url, "upstream.base_url")

    timeout_s = config.upstream.timeout_s
    if not math.isfinite(timeout_s) or timeout_s <= 0:
        _fail(f"upstream.timeout_s must be a finite number > 0, got {timeout_s}.")

    config.credentials.sender_id = config.credentials.sender_id.strip()
    config.credentials.client_key = config.credentials.client_key.strip()
    if not config.credentials.sender_id:
        _fail("credentials.sender_id is not configured.")
    if not config.credentials.client_key:
        _fail("credentials.client_key is not configured.")

    rate = config.rate_limit.rate_per_minute
    if not math.isfinite(rate) or rate <= 0:
        _fail(f"rate_limit.rate_per_minute must be a finite number > 0, got {rate}.")
    if config.rate_limit.burst < 1:
        _fail(f"rate_limit.burst must be >= 1, got {config.rate_limit.burst}.")
    prune_interval_s = config.rate_limit.prune_interval_s
    if not math.isfinite(prune_interval_s) or prune_interval_s < 0:
        _fail(
            "rate_limit.prune_interval_s must be a finite number >= 0, "
            f"got {prune_interval_s}."
        )

    if config.validation.max_message_chars < 1:
        _fail(
            "validation.max_message_chars must be >= 1, "
            f"got {config.validation.max_message_chars}."
        )

    if config.server.host == "0.0.0.0":
        logger.warning(
            "Everly is configured to bind on 0.0.0.0 (all interfaces). "
            "Make sure a reverse proxy sets the client address correctly."
        )
