"""Tests for main.py: argument parsing, config validation, logging setup."""

import json
import logging

import pytest

from core.errors import ConfigurationError
from main import main, parse_cli_args, print_runtime_summary, setup_audit_logger, validate_config


def _config(**executor):
    return {
        "channels": {"telegram": {"token": "123:abc", "allowed_users": [1, 2]}},
        "executor": executor,
    }


def test_parse_cli_args_defaults():
    args = parse_cli_args([])
    assert args.config == "config.yaml"
    assert args.validate_only is False
    assert args.health_port is None


def test_validate_config_accepts_valid():
    validate_config(_config(configs=[{"defaultRegion": "us-east-1"}]))


def test_validate_config_rejects_bad_executor_config():
    with pytest.raises(ConfigurationError):
        validate_config(_config(configs=[{"bogus": 1}]))


def test_validate_config_requires_token():
    with pytest.raises(ValueError, match="token"):
        validate_config({"channels": {"telegram": {}}})


def test_print_runtime_summary(capsys):
    print_runtime_summary(_config(deps_dir="/opt/aws_deps"))
    out = capsys.readouterr().out
    assert "executor.deps_dir: /opt/aws_deps" in out
    assert "channels.telegram.allowed_users: 2" in out


def test_setup_audit_logger_disabled():
    assert setup_audit_logger({}) is None


def test_setup_audit_logger_writes_jsonl(tmp_path):
    audit_file = tmp_path / "logs" / "audit.log"
    logger = setup_audit_logger({"logging": {"audit": {"enabled": True, "file": str(audit_file)}}})
    logger.info(json.dumps({"k": "v"}))
    for handler in logger.handlers:
        handler.flush()
    assert json.loads(audit_file.read_text().strip()) == {"k": "v"}
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


@pytest.mark.asyncio
async def test_main_validate_only(tmp_path, capsys):
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        "channels:\n  telegram:\n    token: '123:abc'\n    allowed_users: [1]\n"
        "executor:\n  configs:\n    - defaultRegion: ap-northeast-2\n",
        encoding="utf-8",
    )
    await main(["--config", str(cfg), "--validate-only"])
    assert "executor.configs: 1" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_main_exits_on_invalid_config(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("executor:\n  configs:\n    - nope: 1\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        await main(["--config", str(cfg), "--validate-only"])
