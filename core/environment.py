"""Child-process environment construction."""

from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from core.config import ExecutorConfig
from utils.constants import SAFE_HOME


def build_env(
    config: ExecutorConfig,
    library_path: Optional[str] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Build the AWS CLI environment.

    Precedence, lowest first: inherited environment, safety defaults
    (``HOME``, ``AWS_PAGER``), ``LD_LIBRARY_PATH`` from the runtime bundle,
    ``AWS_DEFAULT_REGION``, explicit ``env`` overrides from configuration.
    """
    env: Dict[str, str] = dict(os.environ if base_env is None else base_env)
    env["HOME"] = SAFE_HOME
    env["AWS_PAGER"] = ""
    if library_path:
        env["LD_LIBRARY_PATH"] = library_path
    if config.default_region:
        env["AWS_DEFAULT_REGION"] = config.default_region
    for key, value in config.env.items():
        env[str(key)] = str(value)
    return env
