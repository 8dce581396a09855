"""Configuration loading and validation."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/mailgate/config.yaml")
DEFAULT_ROOT_DIR = Path("~/.local/lib/mailgate")
DEFAULT_LOG_LEVEL = "info"
DEFAULT_INBOX_FOLDER = "INBOX"
DEFAULT_SENT_FOLDER = "[Gmail]/Sent Mail"
DEFAULT_SUSPICIOUS_SUFFIXES = (".com.tw",)
CONFIG_ENV = "MAILGATE_CONFIG"
PASSWORD_ENV = "MAILGATE_PASSWORD"


class ConfigError(ValueError):
    """Raised when configuration is invalid or missing."""


@dataclass(frozen=True)
class LoggingConfig:
    """Logging-related configuration."""

    level: str = DEFAULT_LOG_LEVEL
    debug_file: bool = False


@dataclass(frozen=True)
class ImapConfig:
    """Connection settings for the IMAP server."""

    host: str
    username: str
    password: str = field(repr=False)
    port: int = 993
    ssl: bool = True
    timeout: float | None = 60.0


@dataclass(frozen=True)
class FolderConfig:
    """Mailbox folder names."""

    trash: str
    inbox: str = DEFAULT_INBOX_FOLDER
    sent: str = DEFAULT_SENT_FOLDER


@dataclass(frozen=True)
class UserConfig:
    """Who the mailbox belongs to."""

    emails: tuple[str, ...]
    names: tuple[str, ...] = ()
    languages: tuple[str, ...] = ("en",)
    common_words: tuple[str, ...] = ()


@dataclass(frozen=True)
class TermsConfig:
    """Allow/deny term patterns matched against sender and subject."""

    allow: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyConfig:
    """Tunable thresholds for the coarser deny heuristics."""

    max_sender_words: int = 2
    suspicious_suffixes: tuple[str, ...] = DEFAULT_SUSPICIOUS_SUFFIXES
    require_user_name: bool = True


@dataclass(frozen=True)
class Config:
    """Fully parsed configuration."""

    root_dir: Path
    imap: ImapConfig
    folders: FolderConfig
    user: UserConfig
    terms: TermsConfig
    policy: PolicyConfig
    logging: LoggingConfig
    poll_interval: float = 60.0
    lookback: timedelta = timedelta(days=7)
    freshness: timedelta = timedelta(hours=24)
    subject_expiry: timedelta = timedelta(hours=1)


def load_config(path: Path | str | None = None) -> Config:
    """Load and validate configuration from YAML."""

    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        try:
            raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping.")

    return _parse_config(raw, base_dir=config_path.parent)


def resolve_config_path(explicit: Path | str | None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def _parse_config(raw: dict[str, Any], *, base_dir: Path) -> Config:
    root_dir = Path(raw.get("rootdir") or raw.get("root_dir") or DEFAULT_ROOT_DIR).expanduser()
    polling = _section(raw, "polling")
    whitelist = raw.get("whitelist") if isinstance(raw.get("whitelist"), dict) else {}
    subjects = _section(raw, "subjects")
    return Config(
        root_dir=root_dir,
        imap=_parse_imap(raw.get("imap")),
        folders=_parse_folders(raw.get("folders")),
        user=_parse_user(raw.get("user"), base_dir),
        terms=_parse_terms(raw),
        policy=_parse_policy(raw.get("rules")),
        logging=_parse_logging(raw.get("logging")),
        poll_interval=_positive_number(polling.get("interval_seconds", 60), "polling.interval_seconds"),
        lookback=timedelta(days=_positive_number(polling.get("lookback_days", 7), "polling.lookback_days")),
        freshness=timedelta(
            hours=_positive_number(whitelist.get("freshness_hours", 24), "whitelist.freshness_hours")
        ),
        subject_expiry=timedelta(
            minutes=_positive_number(subjects.get("expiry_minutes", 60), "subjects.expiry_minutes")
        ),
    )


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping.")
    return value


def _parse_imap(value: Any) -> ImapConfig:
    if not isinstance(value, dict):
        raise ConfigError("imap must be a mapping with 'host' and 'username'.")
    host = value.get("host")
    username = value.get("username") or value.get("user")
    if not host or not username:
        raise ConfigError("imap requires 'host' and 'username'.")
    password = os.environ.get(PASSWORD_ENV) or value.get("password")
    if not password:
        raise ConfigError(f"imap.password is required (or set ${PASSWORD_ENV}).")
    timeout = value.get("timeout", 60.0)
    return ImapConfig(
        host=str(host),
        username=str(username),
        password=str(password),
        port=int(value.get("port", 993)),
        ssl=bool(value.get("ssl", True)),
        timeout=None if timeout is None else _positive_number(timeout, "imap.timeout"),
    )


def _parse_folders(value: Any) -> FolderConfig:
    if not isinstance(value, dict) or not value.get("trash"):
        raise ConfigError("folders.trash is required.")
    return FolderConfig(
        trash=str(value["trash"]),
        inbox=str(value.get("inbox") or DEFAULT_INBOX_FOLDER),
        sent=str(value.get("sent") or DEFAULT_SENT_FOLDER),
    )


def _parse_user(value: Any, base_dir: Path) -> UserConfig:
    if not isinstance(value, dict):
        raise ConfigError("user must be a mapping.")
    emails = _string_list(value.get("emails"), "user.emails", lower=True)
    if not emails:
        raise ConfigError("user.emails must list at least one address.")
    languages = _string_list(value.get("languages", ["en"]), "user.languages", lower=True)
    common_words = list(_string_list(value.get("common_words"), "user.common_words", lower=True))
    words_file = value.get("common_words_file")
    if words_file:
        common_words.extend(_read_words_file(Path(str(words_file)), base_dir))
    return UserConfig(
        emails=emails,
        names=_string_list(value.get("names"), "user.names", lower=True),
        languages=languages or ("en",),
        common_words=tuple(common_words),
    )


def _read_words_file(path: Path, base_dir: Path) -> list[str]:
    resolved = path.expanduser()
    if not resolved.is_absolute():
        resolved = base_dir / resolved
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read user.common_words_file {resolved}: {exc}") from exc
    return [word.lower() for word in text.split()]


def _parse_terms(raw: dict[str, Any]) -> TermsConfig:
    value = _section(raw, "terms")
    legacy_allow = raw.get("whitelist") if isinstance(raw.get("whitelist"), list) else None
    legacy_deny = raw.get("blacklist")
    if legacy_allow is not None or legacy_deny is not None:
        if value:
            raise ConfigError("Configuration cannot define both 'terms' and top-level term lists.")
        LOGGER.warning(
            "Top-level 'whitelist'/'blacklist' term lists are deprecated; "
            "move them to 'terms.allow'/'terms.deny'."
        )
        value = {"allow": legacy_allow, "deny": legacy_deny}
    allow = _string_list(value.get("allow"), "terms.allow")
    deny = _string_list(value.get("deny"), "terms.deny")
    for name, terms in (("terms.allow", allow), ("terms.deny", deny)):
        for term in terms:
            try:
                re.compile(term)
            except re.error as exc:
                raise ConfigError(f"{name} contains an invalid pattern {term!r}: {exc}") from exc
    return TermsConfig(allow=allow, deny=deny)


def _parse_policy(value: Any) -> PolicyConfig:
    if value is None:
        return PolicyConfig()
    if not isinstance(value, dict):
        raise ConfigError("rules must be a mapping.")
    max_words = value.get("max_sender_words", 2)
    if not isinstance(max_words, int) or max_words < 1:
        raise ConfigError("rules.max_sender_words must be a positive integer.")
    suffixes = value.get("suspicious_suffixes")
    return PolicyConfig(
        max_sender_words=max_words,
        suspicious_suffixes=(
            DEFAULT_SUSPICIOUS_SUFFIXES
            if suffixes is None
            else _string_list(suffixes, "rules.suspicious_suffixes", lower=True)
        ),
        require_user_name=bool(value.get("require_user_name", True)),
    )


def _parse_logging(value: Any) -> LoggingConfig:
    if value is None:
        return LoggingConfig()
    if not isinstance(value, dict):
        raise ConfigError("logging must be a mapping.")
    level = str(value.get("level", DEFAULT_LOG_LEVEL)).lower()
    debug_file = bool(value.get("debug_file", False))
    return LoggingConfig(level=level, debug_file=debug_file)


def _string_list(value: Any, field_name: str, *, lower: bool = False) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings.")
    items: list[str] = []
    for idx, entry in enumerate(value, start=1):
        if not isinstance(entry, (str, int, float)):
            raise ConfigError(f"{field_name}[{idx}] must be a string.")
        text = str(entry).strip()
        if not text:
            continue
        items.append(text.lower() if lower else text)
    return tuple(items)


def _positive_number(value: Any, field_name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be a number.") from exc
    if number <= 0:
        raise ConfigError(f"{field_name} must be positive.")
    return number


__all__ = [
    "Config",
    "ConfigError",
    "FolderConfig",
    "ImapConfig",
    "LoggingConfig",
    "PolicyConfig",
    "TermsConfig",
    "UserConfig",
    "load_config",
    "resolve_config_path",
]
