"""Tests for core/executor.py: the full command cycle against a fake AWS CLI."""

import pytest

from core.executor import AwsExecutor, ExecutionState
from core.formatter import OutputFormatter
from core.resolver import BundleStrategy, DependencyResolver
from tests.conftest import FakeDownloader, write_executable

BUNDLE_URL = "https://example.invalid/bundle.tar.gz"


def _executor(deps_dir, downloader=None, **kwargs):
    strategy = BundleStrategy(
        deps_dir,
        downloader=downloader or FakeDownloader(),
        environ={},
        default_urls={"amd64": BUNDLE_URL, "arm64": BUNDLE_URL},
    )
    return AwsExecutor(DependencyResolver([strategy]), **kwargs)


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_sts_get_caller_identity_with_cached_bundle(self, populated_bundle):
        downloader = FakeDownloader()
        executor = _executor(populated_bundle, downloader)

        out = await executor.execute("aws sts get-caller-identity", [b"defaultRegion: ap-northeast-2\n"])

        assert out.state == ExecutionState.FORMATTED
        assert not out.is_error
        assert out.exit_code == 0
        assert out.message.startswith("<pre><code>")
        assert "region=ap-northeast-2" in out.message
        assert "args=sts get-caller-identity" in out.message
        assert "home=/tmp pager=[]" in out.message
        assert downloader.calls == []

    @pytest.mark.asyncio
    async def test_prepend_args_and_quoting(self, populated_bundle):
        executor = _executor(populated_bundle)
        out = await executor.execute(
            "ec2 describe-tags --filters 'Name=key,Values=a b'",
            [{"prependArgs": ["--output", "json"]}],
        )
        assert "args=--output json ec2 describe-tags --filters Name=key,Values=a b" in out.message

    @pytest.mark.asyncio
    async def test_no_output_placeholder(self, populated_bundle):
        write_executable(populated_bundle / "bundle" / "awscli" / "dist" / "aws", "#!/bin/sh\nexit 0\n")
        out = await _executor(populated_bundle).execute("s3 ls")
        assert not out.is_error
        assert "(no output)" in out.message

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_error_message(self, populated_bundle):
        write_executable(
            populated_bundle / "bundle" / "awscli" / "dist" / "aws",
            "#!/bin/sh\necho 'An error occurred (AccessDenied)' >&2\nexit 254\n",
        )
        out = await _executor(populated_bundle).execute("s3 ls")

        assert out.is_error
        assert out.state == ExecutionState.FORMATTED
        assert out.exit_code == 254
        lines = out.message.splitlines()
        assert lines[0].startswith("DBG useLoader=false")
        assert "An error occurred (AccessDenied)" in out.message
        assert lines[-1] == "ERROR: exit status 254"

    @pytest.mark.asyncio
    async def test_base_configs_layered_under_request_configs(self, populated_bundle):
        executor = _executor(populated_bundle, base_configs=[{"defaultRegion": "us-east-1", "env": {"X": "1"}}])
        out = await executor.execute("sts get-caller-identity", [{"defaultRegion": "eu-west-1"}])
        assert "region=eu-west-1" in out.message


class TestShortCircuits:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["", "aws", "help", "aws help"])
    async def test_help(self, deps_dir, command):
        downloader = FakeDownloader()
        out = await _executor(deps_dir, downloader).execute(command)
        assert out.state == ExecutionState.HELP
        assert "aws sts get-caller-identity" in out.message
        assert downloader.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["aws help full", "help full", "AWS help examples", "help examples"])
    async def test_full_help(self, deps_dir, command):
        downloader = FakeDownloader()
        out = await _executor(deps_dir, downloader).execute(command)
        assert out.state == ExecutionState.HELP
        assert out.message.startswith("<pre><code>")
        assert "Database" in out.message
        assert "aws elasticache describe-cache-clusters" in out.message
        assert "&lt;i-xxxxxxxxxxxxxxxxx&gt;" in out.message
        assert downloader.calls == []

    @pytest.mark.asyncio
    async def test_not_allowed(self, deps_dir):
        downloader = FakeDownloader()
        out = await _executor(deps_dir, downloader).execute(
            "aws ec2 delete-instance i-1", [{"allowed": ["ec2 describe", "sts get-caller-identity"]}]
        )
        assert out.is_error
        assert out.state == ExecutionState.REJECTED
        assert out.message == "Command not allowed: 'ec2 delete-instance i-1'"
        assert downloader.calls == []

    @pytest.mark.asyncio
    async def test_allowlist_checked_before_prepend(self, populated_bundle):
        out = await _executor(populated_bundle).execute(
            "sts get-caller-identity",
            [{"allowed": ["sts"], "prependArgs": ["--output", "json"]}],
        )
        assert out.state == ExecutionState.FORMATTED
        assert not out.is_error

    @pytest.mark.asyncio
    async def test_word_match_mode(self, populated_bundle):
        executor = _executor(populated_bundle)
        configs = [{"allowed": ["ec2 desc"], "allowedMatch": "word"}]
        out = await executor.execute("ec2 describe-instances", configs)
        assert out.state == ExecutionState.REJECTED

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, populated_bundle):
        out = await _executor(populated_bundle).execute('s3 ls "unterminated')
        assert out.is_error
        assert out.state == ExecutionState.INVALID_ARGUMENTS
        assert out.message.startswith("invalid arguments: ")

    @pytest.mark.asyncio
    async def test_invalid_config(self, populated_bundle):
        out = await _executor(populated_bundle).execute("s3 ls", [{"unknown": True}])
        assert out.is_error
        assert out.state == ExecutionState.CONFIG_INVALID

    @pytest.mark.asyncio
    async def test_provisioning_failure(self, deps_dir):
        out = await _executor(deps_dir).execute("s3 ls")
        assert out.is_error
        assert out.state == ExecutionState.PROVISIONING_FAILED
        assert out.message.startswith("failed to prepare aws cli: download bundle: ")
        assert "bad status: 404" in out.message


class TestMetadata:

    def test_metadata(self, deps_dir):
        meta = _executor(deps_dir).metadata()
        assert meta["name"] == "aws"
        assert meta["version"] == "0.1.1"
        assert meta["description"] == "Run AWS CLI from chat."
        assert meta["config_schema"]["additionalProperties"] is False

    def test_from_config(self, tmp_path):
        executor = AwsExecutor.from_config(
            {"deps_dir": str(tmp_path), "timeout_seconds": 30, "configs": [{"defaultRegion": "us-east-1"}]},
            OutputFormatter({"parse_mode": "Markdown"}),
        )
        assert executor.timeout_seconds == 30
        assert executor.base_configs == [{"defaultRegion": "us-east-1"}]
        assert [s.name for s in executor.resolver.strategies] == ["bundle", "official_zip"]
