"""
Shared fixtures.

tiktoken downloads its BPE tables on first use, so tests swap in a
whitespace encoder to stay offline and deterministic.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ema_agent.config import Settings


class WordEncoder:
    """One token per whitespace-separated word."""

    def encode(self, text, **kwargs):
        return text.split()


@pytest.fixture(autouse=True)
def word_encoder():
    encoder = WordEncoder()
    with patch("ema_agent.agent.context.get_encoder", return_value=encoder), \
         patch("ema_agent.tokens.get_encoder", return_value=encoder):
        yield encoder


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        agent={"workspace_dir": str(tmp_path / "workspace")},
    )


@pytest.fixture
def mock_llm():
    llm = MagicMock()
    llm.model = "test-model"
    llm.generate = AsyncMock()
    return llm
