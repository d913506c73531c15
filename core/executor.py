"""
AWS CLI executor: one chat command in, one reply message out
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from core import process_runner
from core.command_filter import authorize, is_full_help_request, is_help_request, normalize_command
from core.config import (
    ALLOWED_MATCH_WORD,
    CONFIG_JSON_SCHEMA,
    ExecutorConfig,
    RawConfig,
    merge_configs,
)
from core.environment import build_env
from core.errors import AuthorizationDenied, ConfigurationError, ExecutionError, ProvisioningError
from core.formatter import OutputFormatter
from core.resolver import DependencyResolver, RuntimeBundle
from utils.constants import (
    DEFAULT_EXEC_TIMEOUT_SECONDS,
    PLUGIN_DESCRIPTION,
    PLUGIN_NAME,
    PLUGIN_VERSION,
)

logger = logging.getLogger(__name__)

HELP_EXAMPLES = (
    ("Who am I?", "aws sts get-caller-identity"),
    ("Version", "aws --version"),
    ("EC2 instances (5)", "aws ec2 describe-instances --max-results 5"),
    ("EKS clusters", "aws eks list-clusters"),
    ("Lambda functions (10)", "aws lambda list-functions --max-items 10"),
    ("S3 buckets", "aws s3api list-buckets"),
    ("RDS instances (20)", "aws rds describe-db-instances --max-records 20"),
    ("DynamoDB tables (20)", "aws dynamodb list-tables --max-items 20"),
)

FULL_HELP_SECTIONS = (
    ("Identity", ("aws sts get-caller-identity", "aws --version")),
    ("Compute", (
        "aws ec2 describe-instances",
        "aws eks list-clusters",
        "aws ecs list-clusters",
        "aws lambda list-functions",
    )),
    ("Storage", ("aws s3api list-buckets",)),
    ("Database", (
        "aws rds describe-db-instances",
        "aws dynamodb list-tables",
        "aws elasticache describe-cache-clusters",
    )),
    ("Networking", ("aws ec2 describe-vpcs", "aws ec2 describe-subnets")),
    ("Limited update operations", ("aws ec2 reboot-instances --instance-ids <i-xxxxxxxxxxxxxxxxx>",)),
)


class ExecutionState(str, Enum):
    RECEIVED = "received"
    AUTHORIZED = "authorized"
    PROVISIONED = "provisioned"
    ENVIRONMENT_BUILT = "environment_built"
    EXECUTED = "executed"
    FORMATTED = "formatted"
    REJECTED = "rejected"
    PROVISIONING_FAILED = "provisioning_failed"
    CONFIG_INVALID = "config_invalid"
    INVALID_ARGUMENTS = "invalid_arguments"
    HELP = "help"


@dataclass
class ExecuteOutput:
    message: str
    is_error: bool = False
    state: ExecutionState = ExecutionState.FORMATTED
    exit_code: Optional[int] = None


class AwsExecutor:
    """Authorize, provision, run and format a single AWS CLI command."""

    def __init__(
        self,
        resolver: DependencyResolver,
        formatter: Optional[OutputFormatter] = None,
        *,
        plugin_name: str = PLUGIN_NAME,
        timeout_seconds: float = DEFAULT_EXEC_TIMEOUT_SECONDS,
        base_configs: Optional[Iterable[RawConfig]] = None,
    ):
        self.resolver = resolver
        self.formatter = formatter or OutputFormatter({})
        self.plugin_name = plugin_name
        self.timeout_seconds = float(timeout_seconds)
        self.base_configs = list(base_configs or [])

    @classmethod
    def from_config(cls, config: Dict[str, Any], formatter: Optional[OutputFormatter] = None) -> "AwsExecutor":
        cfg = config if isinstance(config, dict) else {}
        return cls(
            DependencyResolver.from_config(cfg),
            formatter,
            plugin_name=str(cfg.get("plugin_name") or PLUGIN_NAME),
            timeout_seconds=float(cfg.get("timeout_seconds", DEFAULT_EXEC_TIMEOUT_SECONDS)),
            base_configs=cfg.get("configs") or [],
        )

    def metadata(self) -> Dict[str, Any]:
        return {
            "name": self.plugin_name,
            "version": PLUGIN_VERSION,
            "description": PLUGIN_DESCRIPTION,
            "config_schema": CONFIG_JSON_SCHEMA,
        }

    def help_text(self) -> str:
        lines = [f"{self.plugin_name} {PLUGIN_VERSION}: {PLUGIN_DESCRIPTION}", "", "Examples:"]
        width = max(len(label) for label, _ in HELP_EXAMPLES)
        for label, command in HELP_EXAMPLES:
            lines.append(f"  {label.ljust(width)}  {command}")
        return "\n".join(lines)

    def full_help_text(self) -> str:
        lines = [
            "Run AWS CLI",
            "ex) aws --version, aws sts get-caller-identity, aws ec2 describe-instances --max-results 5",
        ]
        for title, commands in FULL_HELP_SECTIONS:
            lines.append("")
            lines.append(title)
            lines.extend(f"  {command}" for command in commands)
        return "\n".join(lines)

    async def execute(self, command: str, raw_configs: Optional[Iterable[RawConfig]] = None) -> ExecuteOutput:
        """
        Run *command* and return the reply

        Expected failures (bad config, denied command, provisioning errors,
        non-zero exit) come back as error-style output, never as exceptions.
        """
        state = ExecutionState.RECEIVED
        logger.info("Command received: %r", command)

        try:
            config = merge_configs([*self.base_configs, *(raw_configs or [])])
        except ConfigurationError as e:
            logger.warning("Rejected invalid executor config: %s", e)
            return ExecuteOutput(str(e), is_error=True, state=ExecutionState.CONFIG_INVALID)

        if is_help_request(command, self.plugin_name):
            return ExecuteOutput(self.help_text(), state=ExecutionState.HELP)
        if is_full_help_request(command, self.plugin_name):
            return ExecuteOutput(
                self.formatter.format_code_block(self.full_help_text()),
                state=ExecutionState.HELP,
            )

        cmd_line = normalize_command(command, self.plugin_name)
        word_boundary = config.allowed_match == ALLOWED_MATCH_WORD
        try:
            authorize(cmd_line, config.allowed, word_boundary=word_boundary)
        except AuthorizationDenied as e:
            logger.warning("%s", e)
            return ExecuteOutput(str(e), is_error=True, state=ExecutionState.REJECTED)
        state = ExecutionState.AUTHORIZED
        logger.debug("State -> %s", state.value)

        if config.prepend_args:
            cmd_line = " ".join([*config.prepend_args, cmd_line])
        try:
            args = shlex.split(cmd_line)
        except ValueError as e:
            return ExecuteOutput(
                f"invalid arguments: {e}",
                is_error=True,
                state=ExecutionState.INVALID_ARGUMENTS,
            )

        try:
            bundle = await self.resolver.ensure()
        except ProvisioningError as e:
            logger.error("Provisioning failed: %s", e)
            return ExecuteOutput(
                f"failed to prepare aws cli: {e}",
                is_error=True,
                state=ExecutionState.PROVISIONING_FAILED,
            )
        state = ExecutionState.PROVISIONED
        logger.debug("State -> %s (%s)", state.value, bundle.binary_path)

        env = build_env(config, bundle.library_path or None)
        state = ExecutionState.ENVIRONMENT_BUILT
        logger.debug("State -> %s", state.value)

        result = await process_runner.run(bundle, args, env, timeout=self.timeout_seconds)
        state = ExecutionState.EXECUTED
        logger.debug("State -> %s (exit=%s)", state.value, result.exit_code)

        return self._format(bundle, config, result)

    def _format(
        self,
        bundle: RuntimeBundle,
        config: ExecutorConfig,
        result: process_runner.ExecutionResult,
    ) -> ExecuteOutput:
        try:
            result.raise_for_status()
        except ExecutionError as e:
            message = self.formatter.render_error(
                str(e),
                result.text,
                diagnostic=self._diagnostic(bundle, config),
            )
            return ExecuteOutput(message, is_error=True, exit_code=result.exit_code)
        return ExecuteOutput(self.formatter.render_result(result.text), exit_code=result.exit_code)

    @staticmethod
    def _diagnostic(bundle: RuntimeBundle, config: ExecutorConfig) -> str:
        return (
            f"DBG useLoader={str(bundle.uses_loader).lower()} "
            f"ld={str(bundle.loader_path or '')!r} aws={str(bundle.binary_path)!r} "
            f"libraryPath={bundle.library_path!r} region={config.default_region or '-'}"
        )
