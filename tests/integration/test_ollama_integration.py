"""Integration tests against a running Ollama instance.

Set ``NEURAL_MAIL_TEST_OLLAMA=1`` (and optionally ``NEURAL_MAIL_OLLAMA_HOST``
and ``NEURAL_MAIL_OLLAMA_MODEL``) to run them.
"""

from __future__ import annotations

import os

import pytest

from neural_mail.config import Settings
from neural_mail.ollama import OllamaClient
from neural_mail.summarize import SummarizationEngine

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not os.environ.get("NEURAL_MAIL_TEST_OLLAMA"),
        reason="NEURAL_MAIL_TEST_OLLAMA not set",
    ),
]


@pytest.fixture
def live_settings(tmp_path) -> Settings:
    return Settings(cache_db_path=tmp_path / "cache.sqlite3", ollama_timeout=120.0)


class TestOllamaIntegration:
    """Integration tests for the local model."""

    @pytest.mark.asyncio
    async def test_model_is_installed(self, live_settings) -> None:
        client = OllamaClient(live_settings)
        try:
            assert await client.has_model(), f"run: ollama pull {live_settings.ollama_model}"
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_summarize_text(self, live_settings) -> None:
        engine = SummarizationEngine(live_settings)
        try:
            result = await engine.summarize(
                None,
                "Hi team, the quarterly review moved from Tuesday to Thursday at 10am "
                "in room 4B. Please bring the updated sales figures. Thanks, Dana",
            )
        finally:
            await engine.close()

        assert result.text.strip()
        assert result.model_name == live_settings.ollama_model
