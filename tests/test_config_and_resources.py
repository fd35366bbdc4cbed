import json
from pathlib import Path

import pytest

from wrap_concierge.config import load_settings
from wrap_concierge.resource_loader import ResourceLoader


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        for name in ("GEMINI_API_KEY", "DATABASE_PATH", "RESOURCES_DIR", "HISTORY_LIMIT", "CHAT_CHANNEL"):
            monkeypatch.delenv(name, raising=False)

        settings = load_settings()

        assert settings.gemini_api_key == ""
        assert settings.history_limit == 10
        assert settings.channel == "website"
        assert settings.database_path.name == "concierge.db"
        assert (settings.resources_dir / "pricing.json").exists()

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "other.db"))
        monkeypatch.setenv("WOO_STORE_URL", "https://shop.example.com/")
        monkeypatch.setenv("HISTORY_LIMIT", "4")

        settings = load_settings()

        assert settings.database_path == tmp_path / "other.db"
        assert settings.woo_store_url == "https://shop.example.com"
        assert settings.history_limit == 4

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("MAX_PROMPT_CHARS", "lots")

        with pytest.raises(ValueError):
            load_settings()


class TestResourceLoader:
    def test_packaged_resources(self, resources):
        assert resources.pricing.unit_rate == 5.27
        assert resources.pricing.vehicle_sqft["f150"] == 250
        assert resources.brand.escalation_routes["design"].email == "grant@weprintwraps.com"
        assert [meta.file_name for meta in resources.meta] == ["extraction.json", "pricing.json", "brand_profile.json"]

    def test_missing_file_fails_at_load(self, tmp_path):
        (tmp_path / "extraction.json").write_text(json.dumps({"makes": [], "models": []}))

        with pytest.raises(FileNotFoundError):
            ResourceLoader(Path(tmp_path)).load()

    def test_non_object_json_is_rejected(self, tmp_path, settings):
        for name in ("extraction.json", "pricing.json", "brand_profile.json"):
            source = settings.resources_dir / name
            (tmp_path / name).write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
        (tmp_path / "pricing.json").write_text("[]")

        with pytest.raises(ValueError):
            ResourceLoader(tmp_path).load()
