from pathlib import Path

import pytest

from sentio.core.config import Settings, load_settings
from sentio.services.prompts import PromptCatalog

PROMPTS_FILE = Path(__file__).resolve().parent.parent / "config" / "prompts.yaml"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return load_settings(
        generation={
            "api_key": "test-key",
            "base_url": "https://llm.test/v1",
            "model": "test-model",
            "max_attempts": 3,
            "backoff_base_seconds": 1.0,
            "backoff_max_seconds": 8.0,
            "jitter_seconds": 0.0,
            "prompt_price_per_1k_tokens": 0.5,
            "completion_price_per_1k_tokens": 1.5,
        },
        store={"backend": "file", "directory": tmp_path / "memory"},
        workflow={"deadline_seconds": 30.0, "sender_address": "sentio@sentio.test"},
        prompts_path=PROMPTS_FILE,
    )


@pytest.fixture
def catalog() -> PromptCatalog:
    return PromptCatalog.load(PROMPTS_FILE, required=["personal_reply"])
