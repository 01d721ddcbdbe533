import json

import pytest

from gdbcopilot.config import load_config
from gdbcopilot.errors import ConfigError


def write(tmp_path, data):
    p = tmp_path / "cfg.json"
    p.write_text(json.dumps(data))
    return p


def test_defaults(tmp_path):
    cfg = load_config(write(tmp_path, {}), env={})
    assert cfg.server.port == 8080
    assert cfg.gdb.capture_timeout == 2.0
    assert cfg.chat.retry.max_attempts == 3
    assert cfg.chat.circuit_breaker.failure_threshold == 5
    assert cfg.chat.cache.enabled is False
    assert cfg.chat.context.max_tokens == 4000
    assert cfg.providers["anthropic"].base_url == "https://api.anthropic.com"
    assert cfg.providers["openai"].json_mode is True


def test_file_values_and_nested_sections(tmp_path):
    cfg = load_config(
        write(
            tmp_path,
            {
                "gdb": {"capture_timeout": 3},
                "chat": {"cache": {"enabled": True, "ttl": 60}, "retry": {"max_attempts": 5}},
                "providers": {"openrouter": {"referer": "https://example.test"}},
            },
        ),
        env={},
    )
    assert cfg.gdb.capture_timeout == 3.0
    assert cfg.chat.cache.enabled is True
    assert cfg.chat.cache.ttl == 60.0
    assert cfg.chat.retry.max_attempts == 5
    assert cfg.providers["openrouter"].referer == "https://example.test"


def test_env_overrides_file(tmp_path):
    path = write(tmp_path, {"server": {"port": 9000}})
    cfg = load_config(
        path,
        env={"GDBCOPILOT_PORT": "9100", "GDBCOPILOT_GDB_PATH": "/usr/bin/gdb", "GDBCOPILOT_LLM_API_KEY": "k"},
    )
    assert cfg.server.port == 9100
    assert cfg.gdb.path == "/usr/bin/gdb"
    assert cfg.api_key == "k"


@pytest.mark.parametrize(
    "data",
    [
        {"server": {"port": "eighty"}},
        {"server": {"nope": 1}},
        {"chat": {"retry": {"max_attempts": 0}}},
        {"providers": {"gemini": {}}},
        {"logs": {"level": "chatty"}},
    ],
)
def test_invalid_values_are_rejected(tmp_path, data):
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, data), env={})


def test_shipped_config_loads():
    from pathlib import Path

    shipped = Path(__file__).resolve().parents[1] / "configs" / "gdbcopilot.json"
    cfg = load_config(shipped, env={})
    assert cfg.providers["anthropic"].default_model == "claude-3-sonnet-20240229"
