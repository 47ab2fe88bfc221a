import json
from pathlib import Path

import pytest

from baitbreaker.__main__ import main
from baitbreaker.config import clamp_sensitivity, load_config


RULES_DIR = Path(__file__).resolve().parent.parent / "rules"

ENV_NAMES = [
    "MESSAGE_TIMEOUT_SECONDS",
    "MAX_RETRIES",
    "IDLE_TIMEOUT_SECONDS",
    "KEEPALIVE_INTERVAL_SECONDS",
    "SENSITIVITY",
    "DETECTION_MODE",
    "CACHE_TTL_DAYS",
    "AI_API_KEY",
    "METRICS_ENABLED",
    "PREFETCH_SUMMARIES",
]


@pytest.fixture()
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    config = load_config()

    assert config.message_timeout_seconds == 45.0
    assert config.max_retries == 2
    assert config.idle_timeout_seconds == 30.0
    assert config.keepalive_interval_seconds == 5.0
    assert config.sensitivity == 5
    assert config.detection_mode == "heuristic"
    assert config.cache_ttl_seconds == 7 * 24 * 60 * 60
    assert config.metrics_enabled is False
    assert config.classification_base_timeout_seconds == 30.0
    assert config.classification_per_item_timeout_seconds == 5.0


def test_environment_overrides(clean_env):
    clean_env.setenv("IDLE_TIMEOUT_SECONDS", "12")
    clean_env.setenv("SENSITIVITY", "42")
    clean_env.setenv("PREFETCH_SUMMARIES", "off")
    clean_env.setenv("MAX_RETRIES", "0")

    config = load_config()

    assert config.keepalive_interval_seconds == 2.0
    assert config.sensitivity == 10
    assert config.prefetch_summaries is False
    assert config.max_retries == 0


def test_clamp_sensitivity():
    assert clamp_sensitivity(0) == 1
    assert clamp_sensitivity("7") == 7
    assert clamp_sensitivity(None) == 5


def test_cli_classifies_titles(clean_env, tmp_path, capsys):
    clean_env.setenv("SQLITE_PATH", str(tmp_path / "cli.db"))
    clean_env.setenv("RULES_PATH", str(RULES_DIR / "patterns.yaml"))
    clean_env.setenv("RULES_OVERRIDES_PATH", str(tmp_path / "none.yaml"))

    main(
        [
            "--env",
            str(tmp_path / "missing.env"),
            "classify",
            "You Won't Believe What Happened Next",
            "Council approves new budget",
            "--href",
            "https://news.example/a",
        ]
    )
    rows = json.loads(capsys.readouterr().out)

    assert [row["status"] for row in rows] == ["classified_flagged", "classified_clean"]
    assert rows[0]["result"]["reason"] == "curiosity gap"

    main(["--env", str(tmp_path / "missing.env"), "stats"])
    assert json.loads(capsys.readouterr().out) == {"classification": 0, "summary": 0, "total": 0}
