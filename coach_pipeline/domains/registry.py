from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Tuple

from ..models import GENERAL_DOMAIN, DomainDefinition

logger = logging.getLogger("coach_pipeline.domains")

VALID_DOMAINS: Tuple[str, ...] = (
    "life",
    "career",
    "relationships",
    "mindset",
    "creativity",
    "fitness",
    "leadership",
    "general",
)

_Signature = Tuple[Tuple[str, int, int], ...]


class DomainRegistry:
    """Domain definitions read from a directory of JSON files.

    The directory is re-scanned on access and definitions are reloaded whenever a file
    is added, removed or modified, so edits apply between requests without a restart.
    A missing or malformed file never raises: lookups fall back to the neutral domain.
    """

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = Path(config_dir)
        self._lock = threading.Lock()
        self._signature: _Signature | None = None
        self._definitions: Dict[str, DomainDefinition] = {}

    def _current_signature(self) -> _Signature:
        if not self.config_dir.is_dir():
            return ()
        entries = []
        for path in sorted(self.config_dir.glob("*.json")):
            try:
                stat = path.stat()
            except OSError:
                continue
            entries.append((path.name, stat.st_mtime_ns, stat.st_size))
        return tuple(entries)

    def _load(self) -> Dict[str, DomainDefinition]:
        definitions: Dict[str, DomainDefinition] = {}
        if not self.config_dir.is_dir():
            logger.warning("Domain config directory not found: %s (using neutral domain)", self.config_dir)
        else:
            for path in sorted(self.config_dir.glob("*.json")):
                try:
                    payload = json.loads(path.read_text(encoding="utf-8"))
                    if not isinstance(payload, dict):
                        raise ValueError("root must be an object")
                    definition = DomainDefinition.from_dict(payload)
                except (OSError, ValueError) as exc:
                    logger.warning("Skipping malformed domain config %s: %s", path.name, exc)
                    continue
                if definition.id not in VALID_DOMAINS:
                    logger.warning("Skipping unknown domain id %r in %s", definition.id, path.name)
                    continue
                definitions[definition.id] = definition

        if GENERAL_DOMAIN not in definitions:
            definitions[GENERAL_DOMAIN] = DomainDefinition.neutral()
        logger.info("Loaded %d domain definitions from %s", len(definitions), self.config_dir)
        return definitions

    def _ensure_fresh(self) -> Dict[str, DomainDefinition]:
        signature = self._current_signature()
        with self._lock:
            if signature != self._signature:
                self._definitions = self._load()
                self._signature = signature
            return self._definitions

    def all(self) -> Dict[str, DomainDefinition]:
        return {key: value for key, value in self._ensure_fresh().items() if value.enabled}

    def get(self, domain_id: str | None) -> DomainDefinition:
        definitions = self._ensure_fresh()
        key = (domain_id or GENERAL_DOMAIN).strip().lower()
        definition = definitions.get(key)
        if definition is None or not definition.enabled:
            if key != GENERAL_DOMAIN:
                logger.warning("Domain definition %r unavailable; using neutral domain", key)
            return definitions.get(GENERAL_DOMAIN) or DomainDefinition.neutral()
        return definition

    def is_available(self, domain_id: str | None) -> bool:
        key = (domain_id or "").strip().lower()
        definition = self._ensure_fresh().get(key)
        return definition is not None and definition.enabled

    def keywords(self, domain_id: str | None) -> Tuple[str, ...]:
        key = (domain_id or "").strip().lower()
        definition = self._ensure_fresh().get(key)
        if definition is None or not definition.enabled:
            return ()
        return definition.keywords
