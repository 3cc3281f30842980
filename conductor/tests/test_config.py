# Gridstream - Configuration Tests
# SPDX-License-Identifier: Apache-2.0

import pytest


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("GRIDSTREAM_CACHE_DIR", "GRIDSTREAM_MAX_ENTRY_MB",
                 "GRIDSTREAM_STORAGE_CHUNK_MB", "GRIDSTREAM_COMPRESSION_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestCacheSettings:
    """Test settings from the environment"""

    def test_defaults(self):
        from gridstream.config import (
            COMPRESSION_LEVEL_DEFAULT, MAX_ENTRY_SIZE, STORAGE_CHUNK_SIZE, CacheSettings,
        )

        settings = CacheSettings.from_env()
        assert settings.cache_dir.name == "gridstream_cache"
        assert settings.max_entry_size == MAX_ENTRY_SIZE
        assert settings.storage_chunk_size == STORAGE_CHUNK_SIZE
        assert settings.compression_level == COMPRESSION_LEVEL_DEFAULT

    def test_from_env(self, monkeypatch, tmp_path):
        from gridstream.config import MIB, CacheSettings

        monkeypatch.setenv("GRIDSTREAM_CACHE_DIR", str(tmp_path))
        monkeypatch.setenv("GRIDSTREAM_MAX_ENTRY_MB", "0.5")
        monkeypatch.setenv("GRIDSTREAM_STORAGE_CHUNK_MB", "2")
        monkeypatch.setenv("GRIDSTREAM_COMPRESSION_LEVEL", "3")

        settings = CacheSettings.from_env()
        assert settings.cache_dir == tmp_path
        assert settings.max_entry_size == MIB // 2
        assert settings.storage_chunk_size == 2 * MIB
        assert settings.compression_level == 3

    def test_explicit_dir_wins(self, monkeypatch, tmp_path):
        from gridstream.config import CacheSettings

        monkeypatch.setenv("GRIDSTREAM_CACHE_DIR", "/nowhere")
        assert CacheSettings.from_env(tmp_path).cache_dir == tmp_path

    @pytest.mark.parametrize("name,value", [
        ("GRIDSTREAM_MAX_ENTRY_MB", "0"),
        ("GRIDSTREAM_STORAGE_CHUNK_MB", "-1"),
        ("GRIDSTREAM_COMPRESSION_LEVEL", "30"),
    ])
    def test_invalid(self, monkeypatch, name, value):
        from gridstream.config import CacheSettings

        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError):
            CacheSettings.from_env()
