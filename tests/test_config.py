import asyncio
from unittest.mock import MagicMock

import pytest

from spinstudio.pipeline.config import (
    ApiKeyRepository,
    ApiKeys,
    PipelineConfig,
    env_defaults,
    resolve_config,
)
from spinstudio.pipeline.errors import PersistenceError

DEFAULTS = PipelineConfig(
    google_api_key="env-google",
    fal_key="env-fal",
    supabase_url="https://env.supabase.co",
    supabase_key="env-service-key",
)


class TestResolveConfig:
    def test_no_overrides_returns_defaults(self):
        assert resolve_config(DEFAULTS) == DEFAULTS

    def test_non_empty_overrides_win(self):
        config = resolve_config(DEFAULTS, ApiKeys(google_api_key="mine", fal_key=""))
        assert config.google_api_key == "mine"
        assert config.fal_key == "env-fal"
        assert config.supabase_url == "https://env.supabase.co"

    def test_supabase_overrides(self):
        config = resolve_config(
            DEFAULTS,
            ApiKeys(supabase_url="https://own.supabase.co", supabase_anon_key="anon"),
        )
        assert config.supabase_url == "https://own.supabase.co"
        assert config.supabase_key == "anon"

    def test_defaults_are_not_mutated(self):
        resolve_config(DEFAULTS, ApiKeys(google_api_key="mine"))
        assert DEFAULTS.google_api_key == "env-google"

    def test_missing_credentials(self):
        assert PipelineConfig().missing_credentials() == [
            "Google API key",
            "FAL.ai key",
            "Supabase URL and key",
        ]
        assert DEFAULTS.missing_credentials() == []


def test_env_defaults(monkeypatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("SPIN_STORAGE_BUCKET", raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "gem")
    monkeypatch.setenv("FAL_KEY", "fal")
    monkeypatch.setenv("SPIN_CLIENT_MODE", "subscribe")

    config = env_defaults()

    assert config.google_api_key == "gem"
    assert config.fal_key == "fal"
    assert config.spin_mode == "subscribe"
    assert config.storage_bucket == "product-spins"


def test_masked_keys():
    masked = ApiKeys(google_api_key="AIzaSy123", fal_key="").masked()
    assert masked.google_api_key == "AIza..."
    assert masked.fal_key == ""


class TestApiKeyRepository:
    def test_load_missing_row(self):
        client = MagicMock()
        chain = client.table.return_value.select.return_value.eq.return_value.limit
        chain.return_value.execute.return_value = MagicMock(data=[])

        assert asyncio.run(ApiKeyRepository(client).load("user-1")) is None

    def test_load_row(self):
        client = MagicMock()
        chain = client.table.return_value.select.return_value.eq.return_value.limit
        chain.return_value.execute.return_value = MagicMock(
            data=[{"google_api_key": "g", "fal_key": None, "supabase_url": "u"}]
        )

        keys = asyncio.run(ApiKeyRepository(client).load("user-1"))

        assert keys == ApiKeys(google_api_key="g", fal_key="", supabase_url="u")
        client.table.assert_called_with("user_api_keys")

    def test_save_upserts_on_user_id(self):
        client = MagicMock()
        upsert = client.table.return_value.upsert

        asyncio.run(ApiKeyRepository(client).save("user-1", ApiKeys(fal_key="f")))

        row = upsert.call_args.args[0]
        assert row["user_id"] == "user-1"
        assert row["fal_key"] == "f"
        assert "updated_at" in row
        assert upsert.call_args.kwargs == {"on_conflict": "user_id"}

    def test_load_failure(self):
        client = MagicMock()
        client.table.side_effect = Exception("connection refused")

        with pytest.raises(PersistenceError):
            asyncio.run(ApiKeyRepository(client).load("user-1"))
