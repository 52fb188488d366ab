"""Source registry -- the configurable list of endpoints the pipeline polls."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import orjson
import structlog
from pydantic import TypeAdapter, ValidationError

from config.sources import DEFAULT_SOURCES
from src.models.source import SourceDescriptor
from src.services.errors import UnknownSourceError

logger = structlog.get_logger(__name__)

_SOURCE_LIST = TypeAdapter(list[SourceDescriptor])


def _url_key(url: str) -> str:
    return url.strip().rstrip("/").lower()


class SourceRegistry:
    """Keyed collection of :class:`SourceDescriptor` objects.

    Keys must be unique; registering a duplicate key replaces the entry.
    """

    def __init__(self, sources: Iterable[SourceDescriptor] = ()) -> None:
        self._sources: dict[str, SourceDescriptor] = {}
        for source in sources:
            self.register(source)

    @classmethod
    def from_file(cls, path: str | Path) -> SourceRegistry:
        """Load descriptors from a JSON array file.

        Raises
        ------
        ValueError
            If the file is not a valid list of source descriptors.
        """
        raw = Path(path).read_bytes()
        try:
            sources = _SOURCE_LIST.validate_python(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"Invalid sources file {path}: {exc}") from exc
        logger.info("registry.loaded_from_file", path=str(path), count=len(sources))
        return cls(sources)

    @classmethod
    def from_settings(cls, settings: object) -> SourceRegistry:
        path = getattr(settings, "sources_path", None)
        if path:
            return cls.from_file(path)
        return cls(DEFAULT_SOURCES)

    def register(self, source: SourceDescriptor) -> None:
        if source.key in self._sources:
            logger.warning("registry.source_replaced", key=source.key)
        self._sources[source.key] = source

    def get(self, key: str) -> SourceDescriptor:
        try:
            return self._sources[key]
        except KeyError:
            raise UnknownSourceError(f"No source registered under key {key!r}") from None

    def find_by_url(self, url: str) -> SourceDescriptor:
        """Return the source polling *url* (trailing slash and case insensitive)."""
        wanted = _url_key(url)
        for source in self._sources.values():
            if _url_key(source.url) == wanted:
                return source
        raise UnknownSourceError(f"No source registered for URL {url!r}")

    def enabled(self) -> list[SourceDescriptor]:
        return [s for s in self._sources.values() if s.enabled]

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self):
        return iter(self._sources.values())
