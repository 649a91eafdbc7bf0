"""
Versioned prompt template registry.

Templates are stored per (id, version). Resolution without an explicit
version returns the entry flagged as latest, skipping deprecated entries
unless asked to include them, and falls back to the highest version.
Resolved templates are kept in a small bounded cache.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional

from clinicinsights.core.exceptions import (
    PromptDeprecatedError,
    PromptNotFoundError,
    PromptValidationError,
)
from clinicinsights.domain.prompt_template import (
    VERSION_PATTERN,
    PromptRegistryEntry,
    PromptTemplate,
    parse_version,
)

logger = logging.getLogger(__name__)


@dataclass
class PromptSummary:
    id: str
    versions: List[str]
    latest_version: Optional[str]


@dataclass
class PromptRegistryStats:
    total_templates: int
    total_versions: int
    cache_size: int
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float


class PromptRegistry:
    """In-process registry of versioned prompt templates."""

    def __init__(self, cache_size: int = 50) -> None:
        self._registry: Dict[str, Dict[str, PromptRegistryEntry]] = {}
        self._cache: "OrderedDict[str, PromptRegistryEntry]" = OrderedDict()
        self._cache_size = cache_size
        self._cache_hits = 0
        self._cache_misses = 0
        # Guards isLatest transitions and the resolution cache
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def validate(self, template: PromptTemplate) -> List[str]:
        """Return warnings for ``template``; raise PromptValidationError listing every problem."""
        errors: List[str] = []
        warnings: List[str] = []

        if not template.id or not template.id.strip():
            errors.append("Template id is required")
        if not template.version or not VERSION_PATTERN.match(template.version):
            errors.append(
                f"Version '{template.version}' must follow major.minor.patch (e.g. 1.0.0)"
            )
        if not template.template or not template.template.strip():
            errors.append("Template text must not be empty")

        estimate = template.token_estimate
        if estimate is not None:
            if not estimate.min <= estimate.typical <= estimate.max:
                errors.append(
                    f"Token estimate must satisfy min <= typical <= max "
                    f"(got {estimate.min}/{estimate.typical}/{estimate.max})"
                )

        placeholders = set(template.placeholders())
        declared = set(template.variable_names)
        for name in sorted(placeholders - declared):
            warnings.append(f"Placeholder '{{{{{name}}}}}' is used but not declared as a variable")
        for name in sorted(declared - placeholders):
            warnings.append(f"Variable '{name}' is declared but never used in the template")

        if errors:
            raise PromptValidationError(template.id or "<missing>", errors)
        return warnings

    def register(self, template: PromptTemplate) -> List[str]:
        """Store ``template`` as the latest version of its id and return any warnings."""
        warnings = self.validate(template)

        with self._lock:
            versions = self._registry.setdefault(template.id, {})
            if template.version in versions:
                warnings.append(
                    f"Version {template.version} of '{template.id}' already registered; overwriting"
                )

            for entry in versions.values():
                entry.is_latest = False

            versions[template.version] = PromptRegistryEntry(template=template, is_latest=True)
            self._invalidate(template.id)

        for warning in warnings:
            logger.warning(f"Prompt registry: {template.id}@{template.version}: {warning}")
        logger.info(f"Registered prompt template {template.id}@{template.version}")
        return warnings

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def get(
        self,
        template_id: str,
        version: Optional[str] = None,
        latest: bool = True,
        include_deprecated: bool = False,
    ) -> PromptTemplate:
        """Resolve a template by exact version or by latest-version rules."""
        if version:
            cache_key = f"{template_id}:{version}:{include_deprecated}"
        else:
            cache_key = f"{template_id}:latest:{latest}:{include_deprecated}"

        with self._lock:
            entry = self._cache.get(cache_key)
            if entry is not None and self._is_registered(entry):
                self._cache_hits += 1
            else:
                self._cache_misses += 1
                entry = self._resolve(template_id, version, latest, include_deprecated)
                self._remember(cache_key, entry)

            entry.usage_count += 1
            return entry.template

    def get_entry(self, template_id: str, version: str) -> PromptRegistryEntry:
        with self._lock:
            versions = self._registry.get(template_id)
            if not versions or version not in versions:
                raise PromptNotFoundError(template_id, version)
            return versions[version]

    def _resolve(
        self,
        template_id: str,
        version: Optional[str],
        latest: bool,
        include_deprecated: bool,
    ) -> PromptRegistryEntry:
        versions = self._registry.get(template_id)
        if not versions:
            raise PromptNotFoundError(template_id)

        if version:
            entry = versions.get(version)
            if entry is None:
                raise PromptNotFoundError(template_id, version)
            if entry.template.is_deprecated and not include_deprecated:
                raise PromptDeprecatedError(template_id, version)
            return entry

        candidates = [
            entry
            for entry in versions.values()
            if include_deprecated or not entry.template.is_deprecated
        ]
        if not candidates:
            newest = max(versions, key=parse_version)
            raise PromptDeprecatedError(template_id, newest)

        if latest:
            for entry in candidates:
                if entry.is_latest:
                    return entry

        return max(candidates, key=lambda entry: parse_version(entry.template.version))

    def _remember(self, cache_key: str, entry: PromptRegistryEntry) -> None:
        self._cache[cache_key] = entry
        while len(self._cache) > self._cache_size:
            # oldest insertion goes first
            self._cache.popitem(last=False)

    def _is_registered(self, entry: PromptRegistryEntry) -> bool:
        versions = self._registry.get(entry.template.id, {})
        return versions.get(entry.template.version) is entry

    def _invalidate(self, template_id: str) -> None:
        prefix = f"{template_id}:"
        for key in [key for key in self._cache if key.startswith(prefix)]:
            del self._cache[key]

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def get_all_versions(self, template_id: str) -> List[PromptTemplate]:
        """Every registered version of ``template_id``, newest first."""
        with self._lock:
            versions = self._registry.get(template_id, {})
            return [
                versions[version].template
                for version in sorted(versions, key=parse_version, reverse=True)
            ]

    def list(self) -> List[PromptSummary]:
        with self._lock:
            summaries = []
            for template_id, versions in sorted(self._registry.items()):
                ordered = sorted(versions, key=parse_version, reverse=True)
                latest = next(
                    (version for version in ordered if versions[version].is_latest),
                    ordered[0] if ordered else None,
                )
                summaries.append(PromptSummary(template_id, ordered, latest))
            return summaries

    def has(self, template_id: str, version: Optional[str] = None) -> bool:
        with self._lock:
            versions = self._registry.get(template_id)
            if not versions:
                return False
            return version is None or version in versions

    def remove(self, template_id: str, version: Optional[str] = None) -> bool:
        """Remove one version, or every version when ``version`` is omitted."""
        with self._lock:
            versions = self._registry.get(template_id)
            if not versions:
                return False

            if version is None:
                del self._registry[template_id]
            else:
                entry = versions.pop(version, None)
                if entry is None:
                    return False
                if not versions:
                    del self._registry[template_id]
                elif entry.is_latest:
                    newest = max(versions, key=parse_version)
                    versions[newest].is_latest = True

            self._invalidate(template_id)

        logger.info(f"Removed prompt template {template_id}@{version or '*'}")
        return True

    def deprecate(self, template_id: str, version: str, when: Optional[datetime] = None) -> PromptTemplate:
        """Mark a stored version deprecated; templates are frozen, so the entry is replaced."""
        with self._lock:
            entry = self.get_entry(template_id, version)
            entry.template = replace(entry.template, deprecated_at=when or datetime.utcnow())
            self._invalidate(template_id)
            return entry.template

    def get_stats(self) -> PromptRegistryStats:
        with self._lock:
            lookups = self._cache_hits + self._cache_misses
            return PromptRegistryStats(
                total_templates=len(self._registry),
                total_versions=sum(len(versions) for versions in self._registry.values()),
                cache_size=len(self._cache),
                cache_hits=self._cache_hits,
                cache_misses=self._cache_misses,
                cache_hit_rate=self._cache_hits / lookups if lookups else 0.0,
            )

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
