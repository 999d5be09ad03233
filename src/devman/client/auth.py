"""Credential discovery for the completion service."""

from __future__ import annotations

import json
import os
import time
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger

from devman.errors import CredentialsNotFoundError

OAUTH_TOKEN_PREFIX = "sk-ant-oat"
OAUTH_BETA = "oauth-2025-04-20"

CredentialKind = Literal["oauth", "api_key"]


@dataclass(frozen=True)
class Credential:
    value: str
    kind: CredentialKind
    source: str

    def headers(self) -> dict[str, str]:
        if self.kind == "oauth":
            return {"authorization": f"Bearer {self.value}", "anthropic-beta": OAUTH_BETA}
        return {"x-api-key": self.value}

    def __repr__(self) -> str:
        return f"Credential(kind={self.kind!r}, source={self.source!r})"


def _kind_for(value: str) -> CredentialKind:
    return "oauth" if value.startswith(OAUTH_TOKEN_PREFIX) else "api_key"


class CredentialResolver:
    """Resolve a credential from, in order: the delegated OAuth store, the
    environment, and the local credential file."""

    def __init__(
        self,
        *,
        oauth_path: Path | None,
        env_var: str = "ANTHROPIC_API_KEY",
        credentials_file: Path | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._oauth_path = oauth_path
        self._env_var = env_var
        self._credentials_file = credentials_file
        self._environ = environ if environ is not None else os.environ
        self._clock = clock
        self._current: Credential | None = None

    def resolve(self) -> Credential:
        if self._current is None:
            self._current = self._discover()
            logger.info("model.auth.resolved source={} kind={}", self._current.source, self._current.kind)
        return self._current

    def refresh(self) -> bool:
        """Re-read every source; report whether a different credential was found.

        Raises CredentialsNotFoundError when no source yields a credential any more.
        """
        previous = self._current
        try:
            fresh = self._discover()
        except CredentialsNotFoundError:
            logger.warning("model.auth.refresh_failed reason=no_credentials")
            raise
        self._current = fresh
        changed = previous is None or fresh.value != previous.value
        logger.info("model.auth.refresh source={} changed={}", fresh.source, changed)
        return changed

    def _discover(self) -> Credential:
        for source in (self._from_oauth_store, self._from_environment, self._from_file):
            credential = source()
            if credential is not None:
                return credential
        raise CredentialsNotFoundError(
            f"no credentials found: set {self._env_var} or write [anthropic] api_key to {self._credentials_file}"
        )

    def _from_oauth_store(self) -> Credential | None:
        path = self._oauth_path
        if path is None or not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("model.auth.oauth_unreadable path={} error={}", path, exc)
            return None
        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        if not isinstance(oauth, dict):
            return None
        token = oauth.get("accessToken")
        if not isinstance(token, str) or not token:
            return None
        expires_at = oauth.get("expiresAt")
        if isinstance(expires_at, int | float) and expires_at / 1000 <= self._clock():
            logger.warning("model.auth.oauth_expired path={}", path)
            return None
        return Credential(value=token, kind="oauth", source=f"oauth:{path}")

    def _from_environment(self) -> Credential | None:
        value = self._environ.get(self._env_var, "").strip()
        if not value:
            return None
        return Credential(value=value, kind=_kind_for(value), source=f"env:{self._env_var}")

    def _from_file(self) -> Credential | None:
        path = self._credentials_file
        if path is None or not path.is_file():
            return None
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("model.auth.file_unreadable path={} error={}", path, exc)
            return None
        section = data.get("anthropic")
        value = section.get("api_key") if isinstance(section, dict) else None
        if not isinstance(value, str) or not value.strip():
            return None
        value = value.strip()
        return Credential(value=value, kind=_kind_for(value), source=f"file:{path}")
