"""Tests for the source registry."""

from __future__ import annotations

from types import SimpleNamespace

import orjson
import pytest

from config.sources import DEFAULT_SOURCES
from src.models.enums import ParserKind
from src.models.source import SourceDescriptor
from src.services.errors import UnknownSourceError
from src.services.ingestion.registry import SourceRegistry


def _source(key: str, url: str, *, enabled: bool = True) -> SourceDescriptor:
    return SourceDescriptor(key=key, url=url, parser=ParserKind.JSON_FEED, enabled=enabled)


class TestSourceRegistry:
    def test_get_by_key(self):
        registry = SourceRegistry([_source("a", "https://gov.example/a")])
        assert registry.get("a").url == "https://gov.example/a"

    def test_get_unknown_key_raises(self):
        with pytest.raises(UnknownSourceError):
            SourceRegistry().get("missing")

    def test_register_replaces_duplicate_key(self):
        registry = SourceRegistry([_source("a", "https://gov.example/a")])
        registry.register(_source("a", "https://gov.example/a2"))
        assert len(registry) == 1
        assert registry.get("a").url == "https://gov.example/a2"

    def test_enabled_filters_disabled_sources(self):
        registry = SourceRegistry(
            [_source("a", "https://gov.example/a"), _source("b", "https://gov.example/b", enabled=False)]
        )
        assert [s.key for s in registry.enabled()] == ["a"]
        assert len(list(registry)) == 2

    def test_find_by_url_ignores_case_and_trailing_slash(self):
        registry = SourceRegistry([_source("a", "https://Gov.example/feed/")])
        assert registry.find_by_url("https://gov.example/feed").key == "a"

    def test_find_by_url_unknown_raises(self):
        registry = SourceRegistry([_source("a", "https://gov.example/a")])
        with pytest.raises(UnknownSourceError):
            registry.find_by_url("https://gov.example/other")


class TestRegistryLoading:
    def test_from_settings_uses_bundled_sources(self):
        registry = SourceRegistry.from_settings(SimpleNamespace(sources_path=None))
        assert len(registry) == len(DEFAULT_SOURCES)

    def test_bundled_keys_are_unique(self):
        keys = [s.key for s in DEFAULT_SOURCES]
        assert len(keys) == len(set(keys))

    def test_from_file(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_bytes(
            orjson.dumps(
                [
                    {"key": "state_feed", "url": "https://state.example/feed.xml", "parser": "rss"},
                    {
                        "key": "portal",
                        "url": "https://portal.example/api",
                        "parser": "json_feed",
                        "params": {"api-key": "secret"},
                        "government_level": "state",
                    },
                ]
            )
        )
        registry = SourceRegistry.from_settings(SimpleNamespace(sources_path=str(path)))
        assert len(registry) == 2
        assert registry.get("state_feed").parser is ParserKind.RSS
        assert registry.get("portal").params == {"api-key": "secret"}

    def test_from_file_rejects_unknown_parser(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_bytes(orjson.dumps([{"key": "x", "url": "https://x.example", "parser": "soap"}]))
        with pytest.raises(ValueError, match="Invalid sources file"):
            SourceRegistry.from_file(path)

    def test_from_file_rejects_bad_json(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            SourceRegistry.from_file(path)
