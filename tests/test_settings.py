"""Configuration settings behaviour tests."""

from __future__ import annotations

from mediamesh.config import DEFAULT_SOURCE_PRIORITY, Settings


def test_source_priority_is_parsed_case_insensitively() -> None:
    """Comma separated sources should be lowercased and deduplicated."""

    settings = Settings(_env_file=None, IDENTITY_SOURCE_PRIORITY="TMDB, imdb,tmdb")

    assert settings.identity_source_priority == ("tmdb", "imdb")
    assert settings.source_rank("IMDB") == 1
    assert settings.source_rank("spotify") == 2


def test_source_priority_blank_defaults() -> None:
    settings = Settings(_env_file=None, IDENTITY_SOURCE_PRIORITY="")

    assert settings.identity_source_priority == DEFAULT_SOURCE_PRIORITY
    assert settings.source_rank("imdb") == 0


def test_source_priority_reads_environment(monkeypatch) -> None:
    """Plain comma separated environment values are accepted."""

    monkeypatch.setenv("IDENTITY_SOURCE_PRIORITY", "musicbrainz,trakt")
    monkeypatch.setenv("ADMIN_USER_IDS", "4, 2,4")

    settings = Settings(_env_file=None)

    assert settings.identity_source_priority == ("musicbrainz", "trakt")
    assert settings.admin_user_ids == (4, 2)


def test_admin_ids_accept_iterables() -> None:
    settings = Settings(_env_file=None, ADMIN_USER_IDS=[10, "11"])

    assert settings.admin_user_ids == (10, 11)
    assert Settings(_env_file=None, ADMIN_USER_IDS="").admin_user_ids == ()
