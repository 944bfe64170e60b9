"""
Playbook Catalog
================

Read-only catalog of named, versioned command templates.

Providers:
- RemotePlaybookProvider: fetches the catalog from the playbook API (httpx)
- StaticPlaybookProvider: the bundled YAML catalog
- FallbackPlaybookProvider: remote first, static when the remote fails
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog
import yaml

from control_plane.core.config import settings
from control_plane.core.exceptions import PlaybookCatalogError

logger = structlog.get_logger()


@dataclass
class Playbook:
    """One catalog entry. `command` is only present for runnable entries."""
    key: str
    version: str
    title: str
    description: str = ""
    visibility: str = "public"
    actions: list[str] = field(default_factory=list)
    schema: dict[str, Any] = field(default_factory=dict)
    group: str = "other"
    category: str = "installation"
    verifies: list[str] = field(default_factory=list)
    command: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Playbook":
        if not isinstance(data, dict):
            raise PlaybookCatalogError(f"Playbook entry must be a mapping, got {type(data).__name__}")
        missing = [k for k in ("key", "version", "title") if not data.get(k)]
        if missing:
            raise PlaybookCatalogError(f"Playbook entry missing {', '.join(missing)}")
        key = str(data["key"])
        return cls(
            key=key,
            version=str(data["version"]),
            title=str(data["title"]),
            description=data.get("description") or "",
            visibility=data.get("visibility") or "public",
            actions=list(data.get("actions") or []),
            schema=dict(data.get("schema") or {}),
            group=data.get("group") or key.split(".", 1)[0],
            category=data.get("category") or "installation",
            verifies=list(data.get("verifies") or []),
            command=data.get("command"),
        )


# ==========================================================================
# Providers
# ==========================================================================

class PlaybookProvider(ABC):
    """Catalog source."""

    name = "base"

    @abstractmethod
    async def list_playbooks(self) -> list[Playbook]:
        ...

    async def get_playbook(self, key: str) -> Optional[Playbook]:
        for playbook in await self.list_playbooks():
            if playbook.key == key:
                return playbook
        return None


class StaticPlaybookProvider(PlaybookProvider):
    """Bundled catalog loaded once from YAML."""

    name = "static"

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or settings.STATIC_PLAYBOOK_CATALOG)
        self._playbooks: Optional[list[Playbook]] = None

    def load(self) -> list[Playbook]:
        if self._playbooks is not None:
            return self._playbooks
        try:
            with self.path.open(encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PlaybookCatalogError(f"Cannot read playbook catalog {self.path}: {e}") from e

        entries = raw.get("playbooks", []) if isinstance(raw, dict) else raw
        self._playbooks = [Playbook.from_dict(entry) for entry in entries or []]
        logger.info("playbook_catalog_loaded", source=self.name, count=len(self._playbooks))
        return self._playbooks

    async def list_playbooks(self) -> list[Playbook]:
        return list(self.load())

    def verifies_map(self) -> dict[str, list[str]]:
        """playbook key -> capability keys it installs or verifies"""
        return {pb.key: list(pb.verifies) for pb in self.load()}

    def by_key(self) -> dict[str, Playbook]:
        return {pb.key: pb for pb in self.load()}


class RemotePlaybookProvider(PlaybookProvider):
    """Catalog served by the playbook API."""

    name = "remote"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PLAYBOOK_API_URL or "").rstrip("/")
        self.api_key = api_key or settings.PLAYBOOK_API_KEY
        self.timeout = timeout or settings.PLAYBOOK_API_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _get(self, path: str) -> Any:
        if not self.base_url:
            raise PlaybookCatalogError("Playbook API URL is not configured")
        try:
            async with self._client() as client:
                response = await client.get(path)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise PlaybookCatalogError(
                f"Playbook API returned {e.response.status_code} for {path}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise PlaybookCatalogError(f"Playbook API request failed: {e}") from e

    async def list_playbooks(self) -> list[Playbook]:
        data = await self._get("/playbooks")
        entries = data.get("playbooks", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise PlaybookCatalogError("Playbook API returned an unexpected payload")
        return [Playbook.from_dict(entry) for entry in entries]


class FallbackPlaybookProvider(PlaybookProvider):
    """Use the primary provider, falling back to the static catalog on failure."""

    name = "fallback"

    def __init__(self, primary: Optional[PlaybookProvider], fallback: StaticPlaybookProvider):
        self.primary = primary
        self.fallback = fallback
        self.last_source: Optional[str] = None

    async def list_playbooks(self) -> list[Playbook]:
        if self.primary is not None:
            try:
                playbooks = await self.primary.list_playbooks()
                self.last_source = self.primary.name
                return playbooks
            except PlaybookCatalogError as e:
                logger.warning("playbook_catalog_fallback", primary=self.primary.name, error=e.message)
        self.last_source = self.fallback.name
        return await self.fallback.list_playbooks()


# ==========================================================================
# Factory
# ==========================================================================

_static_provider: Optional[StaticPlaybookProvider] = None


def get_static_catalog() -> StaticPlaybookProvider:
    global _static_provider
    if _static_provider is None:
        _static_provider = StaticPlaybookProvider()
    return _static_provider


def get_playbook_provider() -> PlaybookProvider:
    """Provider for API handlers, built from settings."""
    primary = RemotePlaybookProvider() if settings.PLAYBOOK_API_URL else None
    return FallbackPlaybookProvider(primary, get_static_catalog())
