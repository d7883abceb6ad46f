import os
import sys
import logging
import tempfile
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_AUTH_PREFIX = "a/"
DEFAULT_AGENT_BINARY = "cursor"
DEFAULT_AGENT_TIMEOUT = 5 * 60.0

_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised when required configuration is missing or malformed"""


# Cross-platform temp directory helper
def get_temp_path(filename: str) -> str:
    """Get cross-platform temporary file path"""
    # Use /tmp/ for macOS and Linux, system temp for Windows
    if os.name == 'nt':  # Windows
        temp_dir = tempfile.gettempdir()
    else:  # macOS and Linux
        temp_dir = '/tmp'
    return os.path.join(temp_dir, filename)


def setup_logging():
    log_file_path = get_temp_path('gerrit_review_mcp.log')
    level_name = os.environ.get("GERRIT_REVIEW_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # Create handlers separately to handle Windows file issues
    handlers = []
    try:
        # File handler - may fail on Windows if file is locked
        file_handler = logging.FileHandler(log_file_path, mode='a', encoding='utf-8')
        file_handler.setLevel(level)
        handlers.append(file_handler)
    except Exception as e:
        # If file logging fails, just use stderr
        print(f"Warning: Could not create log file: {e}", file=sys.stderr)

    # stdout belongs to the JSON-RPC transport, so the console handler is stderr only
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    handlers.append(stderr_handler)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    logger = logging.getLogger("gerrit_review_mcp")
    logger.debug(f"🔧 Log file path: {log_file_path}")

    return logger

logger = setup_logging()


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Credentials:
    """Gerrit connection settings, fixed for the lifetime of one process."""

    base_url: str
    username: str = ""
    password: str = ""
    session_cookie: Optional[str] = None
    auth_prefix: str = DEFAULT_AUTH_PREFIX
    insecure_tls: bool = False

    @property
    def has_basic_auth(self) -> bool:
        return bool(self.username and self.password)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Credentials":
        """Read GERRIT_* variables. GERRIT_URL is the only mandatory one."""
        env = os.environ if env is None else env
        base_url = env.get("GERRIT_URL", "").strip()
        if not base_url:
            raise ConfigError("GERRIT_URL env var is required")

        return cls(
            base_url=base_url,
            username=env.get("GERRIT_USERNAME", ""),
            password=env.get("GERRIT_PASSWORD", ""),
            session_cookie=env.get("GERRIT_AUTH_COOKIE") or None,
            auth_prefix=env.get("GERRIT_AUTH_PREFIX", DEFAULT_AUTH_PREFIX),
            insecure_tls=_env_flag(env, "GERRIT_INSECURE_TLS"),
        )

    def to_env(self) -> dict:
        """Inverse of from_env, used to hand the credentials to a child process."""
        env = {
            "GERRIT_URL": self.base_url,
            "GERRIT_USERNAME": self.username,
            "GERRIT_PASSWORD": self.password,
        }
        if self.session_cookie:
            env["GERRIT_AUTH_COOKIE"] = self.session_cookie
        if self.auth_prefix != DEFAULT_AUTH_PREFIX:
            env["GERRIT_AUTH_PREFIX"] = self.auth_prefix
        if self.insecure_tls:
            env["GERRIT_INSECURE_TLS"] = "1"
        return env


@dataclass(frozen=True)
class AgentSettings:
    """How the external review agent is launched."""

    binary: str = DEFAULT_AGENT_BINARY
    model: str = ""
    timeout: float = DEFAULT_AGENT_TIMEOUT

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AgentSettings":
        env = os.environ if env is None else env
        raw_timeout = env.get("GERRIT_AI_REVIEW_TIMEOUT", "").strip()
        timeout = DEFAULT_AGENT_TIMEOUT
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise ConfigError(f"GERRIT_AI_REVIEW_TIMEOUT must be a number of seconds, got {raw_timeout!r}")
            if timeout <= 0:
                raise ConfigError("GERRIT_AI_REVIEW_TIMEOUT must be positive")

        return cls(
            binary=env.get("GERRIT_AI_AGENT_BINARY", "").strip() or DEFAULT_AGENT_BINARY,
            model=env.get("GERRIT_AI_REVIEW_MODEL", "").strip(),
            timeout=timeout,
        )
