"""Credential store: the API token and organization slug that survive across sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .http_utils import normalize_authorization, strip_bearer
from .json_store import JsonFileStore

logger = logging.getLogger(__name__)

TOKEN_PREFIXES = ("FlyV1", "fo1_")
DEFAULT_ORG_SLUG = "personal"
TOKEN_KEY = "api_token"
ORG_SLUG_KEY = "org_slug"


class InvalidCredentialError(ValueError):
    """Raised at the login boundary for tokens that must never reach the gateway."""


@dataclass(frozen=True)
class Credential:
    token: str
    org_slug: str = DEFAULT_ORG_SLUG

    @property
    def authorization(self) -> str:
        return normalize_authorization(self.token)


def is_well_formed(token: str) -> bool:
    return strip_bearer(token).startswith(TOKEN_PREFIXES)


class CredentialStore:
    """Owns the persisted credential. Only login/logout write the token."""

    def __init__(self, path: str):
        self._store = JsonFileStore(path)

    def login(self, token: str, org_slug: str | None = None) -> Credential:
        clean_token = strip_bearer(token)
        if not clean_token:
            raise InvalidCredentialError("API token is required")
        if not clean_token.startswith(TOKEN_PREFIXES):
            raise InvalidCredentialError(
                f"API tokens start with one of: {', '.join(TOKEN_PREFIXES)}"
            )
        slug = (org_slug or "").strip() or DEFAULT_ORG_SLUG
        self._store.update({TOKEN_KEY: clean_token, ORG_SLUG_KEY: slug})
        logger.info("Stored API token for organization %s", slug)
        return Credential(token=clean_token, org_slug=slug)

    def logout(self) -> None:
        if self._store.remove(TOKEN_KEY):
            logger.info("Cleared stored API token")

    def load(self) -> Credential | None:
        token = self._store.get(TOKEN_KEY)
        if not isinstance(token, str) or not token:
            return None
        return Credential(token=token, org_slug=self.org_slug)

    def is_authenticated(self) -> bool:
        return self.load() is not None

    @property
    def org_slug(self) -> str:
        slug = self._store.get(ORG_SLUG_KEY)
        return slug if isinstance(slug, str) and slug else DEFAULT_ORG_SLUG

    def set_org_slug(self, org_slug: str) -> None:
        self._store.set(ORG_SLUG_KEY, org_slug.strip() or DEFAULT_ORG_SLUG)
