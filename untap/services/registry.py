"""Service registry — loads services.yaml and provides the typed Service model.

The catalog file is only a seed source: services live in the HealthStore
once seeded, and the worker reads them from there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from untap.config import settings

if TYPE_CHECKING:
    from untap.health.store import HealthStore

logger = logging.getLogger(__name__)

CHECK_TYPES = ("http", "tcp", "icmp")


# ── Data model ───────────────────────────────────────────────────────────────


@dataclass
class Service:
    """A monitored third-party service and its probe configuration."""

    slug: str
    display_name: str
    check_type: str  # http | tcp | icmp
    check_target: str  # URL for http, host:port for tcp/icmp
    category: str | None = None
    homepage_url: str | None = None
    expected_status: int = 200
    expected_body: str | None = None
    timeout_ms: int = 5_000
    check_interval_s: int = 60
    is_active: bool = True
    is_critical: bool = False
    id: int | None = None


# ── Registry ─────────────────────────────────────────────────────────────────


class ServiceRegistry:
    """Loads and caches the service catalog from services.yaml."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or settings.services_path
        self._services: list[Service] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[Service]:
        """Parse services.yaml and return the Service list."""
        if self._loaded and not force:
            return self._services

        self._services = []
        if not self._path.exists():
            logger.warning("Service catalog not found: %s", self._path)
            self._loaded = True
            return self._services

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._services

        for entry in raw.get("services", []) or []:
            try:
                self._services.append(_parse_service(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed service entry: %s", e)

        self._loaded = True
        logger.info("Loaded %d services from catalog", len(self._services))
        return self._services

    @property
    def services(self) -> list[Service]:
        return self.load()

    def get(self, slug: str) -> Service | None:
        return next((s for s in self.services if s.slug == slug), None)

    def reload(self) -> list[Service]:
        """Force reload from disk."""
        return self.load(force=True)

    def seed(self, store: HealthStore) -> int:
        """Upsert every catalog entry into the store, keyed by slug."""
        count = 0
        for service in self.services:
            store.upsert_service(service)
            logger.debug("Upserted service: %s", service.display_name)
            count += 1
        logger.info("Seeded %d services", count)
        return count

    def to_dict(self) -> list[dict[str, Any]]:
        return [service_to_dict(s) for s in self.services]


# ── Parsers ──────────────────────────────────────────────────────────────────


def _pick(raw: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in raw:
        return raw[snake]
    return raw.get(camel, default)


def _parse_service(raw: dict[str, Any]) -> Service:
    check_type = _pick(raw, "check_type", "checkType", "http")
    if check_type not in CHECK_TYPES:
        raise ValueError(f"unsupported check type {check_type!r} for {raw.get('slug')}")

    slug = raw["slug"]
    return Service(
        slug=slug,
        display_name=_pick(raw, "display_name", "displayName", slug),
        check_type=check_type,
        check_target=_pick(raw, "check_target", "checkTarget") or "",
        category=raw.get("category"),
        homepage_url=_pick(raw, "homepage_url", "homepageUrl"),
        expected_status=int(_pick(raw, "expected_status", "expectedStatus", 200)),
        expected_body=_pick(raw, "expected_body", "expectedBody") or None,
        timeout_ms=int(_pick(raw, "timeout_ms", "timeoutMs", 5_000)),
        check_interval_s=int(_pick(raw, "check_interval_s", "checkIntervalS", 60)),
        is_active=bool(_pick(raw, "is_active", "isActive", True)),
        is_critical=bool(_pick(raw, "is_critical", "isCritical", False)),
    )


def service_to_dict(s: Service) -> dict[str, Any]:
    return {
        "id": s.id,
        "slug": s.slug,
        "displayName": s.display_name,
        "category": s.category,
        "homepageUrl": s.homepage_url,
        "checkType": s.check_type,
        "checkTarget": s.check_target,
        "expectedStatus": s.expected_status,
        "expectedBody": s.expected_body,
        "timeoutMs": s.timeout_ms,
        "checkIntervalS": s.check_interval_s,
        "isActive": s.is_active,
        "isCritical": s.is_critical,
    }
