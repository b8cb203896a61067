"""
Unit tests for catalog entities and identifier helpers.
"""
from datetime import datetime

import pytest

from catalog import (
    MAIN_STREAM,
    MOVIES,
    TVSHOWS,
    Category,
    Provider,
    ProviderTitle,
    Title,
    TitleStream,
    category_key,
    episode_stream_id,
    is_valid_stream_id,
    normalize_tmdb_id,
    parse_stream_id,
    provider_title_key,
    stream_compound_key,
    title_key,
)


class TestKeys:
    def test_key_formats(self):
        assert title_key(MOVIES, 603) == "movies-603"
        assert provider_title_key(TVSHOWS, "P1", "20") == "tvshows-P1-20"
        assert category_key(MOVIES, 5) == "movies-5"

    @pytest.mark.parametrize("value,expected", [
        (603, 603),
        ("603", 603),
        (" 42 ", 42),
        (0, None),
        ("0", None),
        ("", None),
        (None, None),
        ("abc", None),
        (True, None),
    ])
    def test_normalize_tmdb_id(self, value, expected):
        assert normalize_tmdb_id(value) == expected


class TestStreamIds:
    def test_episode_format(self):
        assert episode_stream_id(1, 2) == "S01-E02"
        assert episode_stream_id(12, 104) == "S12-E104"

    def test_season_zero_rejected(self):
        with pytest.raises(ValueError):
            episode_stream_id(0, 1)

    def test_parse(self):
        assert parse_stream_id("S02-E10") == (2, 10)
        assert parse_stream_id(MAIN_STREAM) is None

    @pytest.mark.parametrize("value", ["S00-E01", "S01-E00", "S1-E1", "s01-e01", "episode", ""])
    def test_invalid_stream_ids(self, value):
        assert is_valid_stream_id(value) is False
        with pytest.raises(ValueError):
            parse_stream_id(value)


class TestProvider:
    def test_active(self):
        assert Provider(id="P1", type="xtream").is_active is True
        assert Provider(id="P1", type="xtream", enabled=False).is_active is False
        assert Provider(id="P1", type="xtream", deleted=True).is_active is False

    def test_category_enabled_by_key_or_raw_id(self):
        provider = Provider(id="P1", type="xtream", enabled_categories={"movies": ["movies-1", "7"]})
        assert provider.is_category_enabled(MOVIES, "1") is True
        assert provider.is_category_enabled(MOVIES, 7) is True
        assert provider.is_category_enabled(MOVIES, "2") is False
        assert provider.is_category_enabled(TVSHOWS, "1") is False
        assert provider.is_category_enabled(MOVIES, None) is False

    def test_stream_url(self):
        provider = Provider(id="P1", type="xtream", base_url="http://p1.example/")
        assert provider.stream_url("/movie/u/p/1.mp4") == "http://p1.example/movie/u/p/1.mp4"
        assert provider.stream_url("https://cdn.example/1.mp4") == "https://cdn.example/1.mp4"

    def test_defaults_for_missing_documents_fields(self):
        provider = Provider.from_doc({"id": "P1", "type": "agtv", "priority": None, "api_rate": None, "extra": 1})
        assert provider.priority == 100
        assert provider.api_rate == {}


class TestProviderTitle:
    def test_derived_keys(self):
        title = ProviderTitle(provider_id="P1", type=MOVIES, provider_item_id=10, name="Dune", tmdb_id="0")
        assert title.provider_title_key == "movies-P1-10"
        assert title.tmdb_id is None
        assert title.title_key is None

        title.tmdb_id = 438631
        doc = title.to_doc()
        assert doc["title_key"] == "movies-438631"
        assert doc["provider_title_key"] == "movies-P1-10"

    def test_ignored_requires_reason(self):
        with pytest.raises(ValueError):
            ProviderTitle(provider_id="P1", type=MOVIES, provider_item_id="1", name="x", ignored=True)

    def test_change_detection(self):
        base = ProviderTitle(provider_id="P1", type=MOVIES, provider_item_id="1", name="Dune", year=2021,
                             streams={MAIN_STREAM: "/a.mp4"})
        moved = ProviderTitle(provider_id="P1", type=MOVIES, provider_item_id="1", name="Dune", year=2021,
                              streams={MAIN_STREAM: "/b.mp4"})
        renamed = ProviderTitle(provider_id="P1", type=MOVIES, provider_item_id="1", name="Dune 2", year=2021,
                                streams={MAIN_STREAM: "/a.mp4"})

        assert moved.content_changed(base) is True
        assert moved.identity_changed(base) is False
        assert renamed.identity_changed(base) is True


class TestTitle:
    def test_content_ignores_timestamps(self):
        first = Title(title_key="movies-1", type=MOVIES, tmdb_id=1, name="A", created_at=datetime(2024, 1, 1))
        second = Title(title_key="movies-1", type=MOVIES, tmdb_id=1, name="A", last_updated=datetime(2025, 1, 1))
        assert first.content() == second.content()


class TestCategory:
    def test_category_key_in_document(self):
        category = Category(provider_id="P1", type=TVSHOWS, category_id=3, category_name="Drama")
        assert category.category_id == "3"
        assert category.to_doc()["category_key"] == "tvshows-3"


class TestTitleStream:
    def test_keys(self):
        stream = TitleStream(title_key="tvshows-1396", stream_id="S01-E02", provider_id="P3", proxy_url="http://x/1.mp4")
        assert stream.key == ("tvshows-1396", "S01-E02", "P3")
        assert stream.compound_key == "tvshows-1396-S01-E02-P3"
        assert stream_compound_key(MOVIES, 603, MAIN_STREAM, "P1") == "movies-603-main-P1"
