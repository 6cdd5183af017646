"""Registry credentials from a docker-style config.json.

Only static credentials stored under ``auths`` are supported; credential
helpers are left to the user (``docker login`` writes ``auths`` entries when
no helper is configured).
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from fab_installer.errors import ConfigurationError

logger = logging.getLogger(__name__)


class CredentialsError(ConfigurationError):
    """Raised when the credential store cannot be parsed."""

    def __init__(self, message: str, code: str = "invalid_credentials") -> None:
        super().__init__(message, code=code)


@dataclass(frozen=True)
class Credentials:
    """Username/password pair for one registry host."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


def default_docker_config() -> Path:
    """Return the default docker config.json location."""
    return Path.home() / ".docker" / "config.json"


def _normalize_host(key: str) -> str:
    # Keys may be full URLs like https://index.docker.io/v1/
    host = key.split("://", 1)[-1]
    return host.split("/", 1)[0]


def _decode_entry(key: str, entry: dict[str, object]) -> Credentials | None:
    auth = entry.get("auth")
    if isinstance(auth, str) and auth:
        try:
            decoded = base64.b64decode(auth).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise CredentialsError(f"invalid auth entry for {key!r}") from e
        username, sep, password = decoded.partition(":")
        if not sep:
            raise CredentialsError(f"invalid auth entry for {key!r}: missing ':'")
        return Credentials(username=username, password=password)

    username = entry.get("username")
    password = entry.get("password")
    if isinstance(username, str) and isinstance(password, str):
        return Credentials(username=username, password=password)

    return None


def load_credentials(config_path: Path | None = None) -> dict[str, Credentials]:
    """Load static registry credentials keyed by registry host.

    Args:
        config_path: Path to config.json; uses ~/.docker/config.json if None.

    Returns:
        Mapping of host (``host[:port]``) to credentials. Empty if the file
        does not exist.

    Raises:
        CredentialsError: If the file exists but is malformed.
    """
    path = config_path or default_docker_config()
    if not path.exists():
        logger.debug("No registry credentials at %s", path)
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise CredentialsError(f"cannot read {path}: {e}") from e

    auths = data.get("auths") if isinstance(data, dict) else None
    if not isinstance(auths, dict):
        return {}

    result: dict[str, Credentials] = {}
    for key, entry in auths.items():
        if not isinstance(entry, dict):
            continue
        creds = _decode_entry(key, entry)
        if creds is not None:
            result[_normalize_host(key)] = creds

    logger.debug("Loaded registry credentials for %d host(s)", len(result))
    return result


__all__ = [
    "Credentials",
    "CredentialsError",
    "default_docker_config",
    "load_credentials",
]
