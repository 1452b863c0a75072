from pathlib import Path

import pytest

from xset_listener.config import BridgeConfig, load_config


@pytest.fixture
def config_factory(tmp_path: Path):
    """Build a BridgeConfig from INI text without touching the user's config."""

    def factory(text: str = "") -> BridgeConfig:
        config_path = tmp_path / "xset-listener.cfg"
        config_path.write_text(text, encoding="utf-8")
        return load_config(config_path)

    return factory
