"""
Centralized constants for the AWS CLI gateway.

Collects limits, download locations and loader names used by the
provisioning and execution layers.
"""

# ── Plugin identity ──
PLUGIN_NAME = "aws"
PLUGIN_VERSION = "0.1.1"
PLUGIN_DESCRIPTION = "Run AWS CLI from chat."

# ── Extraction limits ──
MAX_ENTRY_BYTES = 128 << 20  # 128 MiB per archive entry
MAX_EXTRACT_BYTES = 512 << 20  # 512 MiB per archive

# ── Download ──
DOWNLOAD_CHUNK_BYTES = 64 * 1024
DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 300.0

# Prebuilt bundle (awscli/dist + glibc). Override with AWSCLI_TARBALL_URL_<ARCH>.
BUNDLE_URL_ENV_PREFIX = "AWSCLI_TARBALL_URL_"
DEFAULT_BUNDLE_URLS = {
    "amd64": "https://github.com/hskoon0722/botkube-awscli/releases/download/v0.0.0-rc.3/aws_linux_amd64.tar.gz",
    "arm64": "",
}

# Official AWS installer zip. Override with AWSCLI_ZIP_URL_<ARCH>.
OFFICIAL_ZIP_URL_ENV_PREFIX = "AWSCLI_ZIP_URL_"
DEFAULT_OFFICIAL_ZIP_URLS = {
    "amd64": "https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip",
    "arm64": "https://awscli.amazonaws.com/awscli-exe-linux-aarch64.zip",
}

# platform.machine() -> release arch name
MACHINE_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

# ── Dynamic loader ──
LOADER_CANDIDATES = (
    "ld-linux-x86-64.so.2",
    "ld-linux-aarch64.so.1",
)
LOADER_GLOB = "ld-linux-*.so.*"

# ── Child process environment ──
SAFE_HOME = "/tmp"
DEFAULT_EXEC_TIMEOUT_SECONDS = 300

# ── Chat output ──
NO_OUTPUT_PLACEHOLDER = "(no output)"
