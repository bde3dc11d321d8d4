"""Tests for configuration."""

from pathlib import Path

import pytest

from cc_recall.config import ARCHIVE_DIR_ENV, CONFIG_DIR_ENV, Config
from cc_recall.errors import ConfigError


def test_defaults():
    config = Config()

    assert config.root_dir == Path.home() / ".config" / "cc-recall"
    assert config.concurrency == 1
    assert config.summaries is True
    assert config.similarity_metric == "cosine"
    assert config.text_only_score == -2.0


def test_paths(temp_dir):
    config = Config(root_dir=temp_dir)

    assert config.archive_dir == temp_dir / "conversation-archive"
    assert config.db_path == temp_dir / "conversation-index" / "db.sqlite"
    assert config.log_dir == temp_dir / "logs"


def test_archive_override(temp_dir):
    config = Config(root_dir=temp_dir, archive_override=temp_dir / "elsewhere")
    assert config.archive_dir == temp_dir / "elsewhere"


def test_from_env(temp_dir):
    env = {CONFIG_DIR_ENV: str(temp_dir), ARCHIVE_DIR_ENV: str(temp_dir / "archive")}

    config = Config.from_env(env, concurrency=4, summaries=None)

    assert config.root_dir == temp_dir
    assert config.archive_dir == temp_dir / "archive"
    assert config.concurrency == 4
    assert config.summaries is True


def test_from_env_empty():
    assert Config.from_env({}).root_dir == Config().root_dir


@pytest.mark.parametrize("concurrency", [0, 17, -1])
def test_concurrency_bounds(concurrency):
    with pytest.raises(ConfigError, match="concurrency"):
        Config(concurrency=concurrency)


def test_unknown_metric():
    with pytest.raises(ConfigError, match="similarity metric"):
        Config(similarity_metric="dot")
