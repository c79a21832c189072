"""
Central Configuration Module for Echo Paths

Holds every setting the narration pipeline needs:
- SSL/TLS and proxy settings for the chat-completion endpoint
- LLM endpoint, credentials and sampling parameters
- Story pacing (segment duration, speaking rate, context window)
- Failure policy and retry budgets
- Audio placeholder parameters

Configuration is built once at startup (from the environment or a YAML
dictionary), validated, and passed explicitly into the pipeline.
"""

import logging
import os
import ssl
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import certifi


logger = logging.getLogger(__name__)


DEFAULT_API_URL = "https://ai.hackclub.com/proxy/v1/chat/completions"
DEFAULT_MODEL = "qwen/qwen3-32b"


class ConfigError(ValueError):
    """Exception raised when the configuration is invalid."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


class FailurePolicy(str, Enum):
    """What the orchestrator does once a segment has exhausted its retries."""
    SUBSTITUTE = "substitute"
    ABORT = "abort"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("true", "1", "yes")


def sanitize_api_key(raw: str | None) -> str:
    """Strip quotes and surrounding whitespace pasted along with a key."""
    if not raw:
        return ""
    return raw.replace('"', "").replace("'", "").strip()


@dataclass
class SSLConfig:
    """SSL/TLS configuration for HTTPS requests."""

    # Allow insecure SSL (ONLY for development)
    insecure_ssl: bool = False

    # Custom CA bundle path
    ca_bundle_path: str | None = None

    @classmethod
    def from_env(cls) -> "SSLConfig":
        """Create SSL config from environment variables."""
        insecure = _env_flag("ECHO_PATHS_INSECURE_SSL")
        ca_bundle = os.getenv("ECHO_PATHS_CA_BUNDLE")

        if insecure:
            logger.warning(
                "⚠️  INSECURE SSL MODE ENABLED - Certificate verification disabled. "
                "Use only for development!"
            )
        elif ca_bundle:
            logger.info(f"Using custom CA bundle: {ca_bundle}")

        return cls(insecure_ssl=insecure, ca_bundle_path=ca_bundle)

    @property
    def ca_file(self) -> str:
        """CA bundle in use: the custom one if it exists, else certifi's."""
        if self.ca_bundle_path and Path(self.ca_bundle_path).exists():
            return self.ca_bundle_path
        return certifi.where()

    def get_ssl_context(self) -> ssl.SSLContext | bool:
        """Get SSL context for httpx."""
        if self.insecure_ssl:
            return False

        return ssl.create_default_context(cafile=self.ca_file)


@dataclass
class ProxyConfig:
    """Proxy configuration for corporate networks."""

    http_proxy: str | None = None
    https_proxy: str | None = None

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        """Create proxy config from environment variables."""
        config = cls(
            http_proxy=os.getenv("HTTP_PROXY") or os.getenv("http_proxy"),
            https_proxy=os.getenv("HTTPS_PROXY") or os.getenv("https_proxy"),
        )

        if config.is_configured:
            logger.info(f"🔗 Using proxy: HTTP={config.http_proxy}, HTTPS={config.https_proxy}")

        return config

    def get_proxy_dict(self) -> dict[str, str] | None:
        """Get proxy dict for httpx mounts."""
        proxies = {}

        if self.http_proxy:
            proxies["http://"] = self.http_proxy
        if self.https_proxy:
            proxies["https://"] = self.https_proxy

        return proxies if proxies else None

    @property
    def is_configured(self) -> bool:
        """Check if any proxy is configured."""
        return bool(self.http_proxy or self.https_proxy)


@dataclass
class RetryConfig:
    """Retry configuration with exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt (0-indexed)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class LLMConfig:
    """Chat-completion endpoint configuration."""

    api_url: str = DEFAULT_API_URL
    api_key: str = ""

    # Model parameters
    model: str = DEFAULT_MODEL
    temperature: float = 1.0
    max_tokens: int = 2000

    # Connection settings
    timeout: float = 90.0
    connect_timeout: float = 10.0

    retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_attempts=3, base_delay=2.0))

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create LLM config from environment variables."""
        api_url = os.getenv("LLM_API_URL", DEFAULT_API_URL)
        api_key = sanitize_api_key(os.getenv("LLM_API_KEY") or os.getenv("HACKCLUB_API_KEY"))

        if not api_key:
            logger.warning("LLM_API_KEY is missing from environment.")
        logger.info(f"🤖 LLM endpoint configured: {api_url}")

        return cls(
            api_url=api_url,
            api_key=api_key,
            model=os.getenv("LLM_MODEL", DEFAULT_MODEL),
            temperature=float(os.getenv("LLM_TEMPERATURE", "1.0")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "2000")),
            timeout=float(os.getenv("LLM_TIMEOUT", "90.0")),
        )


@dataclass
class NarrationConfig:
    """Story pacing and orchestration policy."""

    # Pacing
    segment_duration_seconds: int = 60
    words_per_minute: int = 145
    context_window_chars: int = 1500

    # Failure handling
    failure_policy: FailurePolicy = FailurePolicy.SUBSTITUTE
    segment_retries: int = 1
    synthesis_retries: int = 1

    # Concurrency
    max_concurrent_synthesis: int = 2


@dataclass
class AudioConfig:
    """Placeholder synthesis parameters."""

    sample_rate: int = 24000
    channels: int = 1
    seconds_per_character: float = 0.08
    timeout: float = 60.0


@dataclass
class AppConfig:
    """Main application configuration."""

    ssl: SSLConfig = field(default_factory=SSLConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    narration: NarrationConfig = field(default_factory=NarrationConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        Create application config from environment variables.

        Environment variables:
            LLM_API_URL / LLM_API_KEY / LLM_MODEL: Chat-completion endpoint
            LLM_TEMPERATURE / LLM_MAX_TOKENS / LLM_TIMEOUT: Request parameters
            ECHO_PATHS_INSECURE_SSL: Disable SSL verification (dev only)
            ECHO_PATHS_CA_BUNDLE: Custom CA bundle path
            HTTP_PROXY / HTTPS_PROXY: Proxy settings
            LOG_LEVEL: Logging level
        """
        return cls(
            ssl=SSLConfig.from_env(),
            proxy=ProxyConfig.from_env(),
            llm=LLMConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: "AppConfig | None" = None) -> "AppConfig":
        """
        Overlay a configuration dictionary (usually loaded from YAML).

        Args:
            data: Dict with optional 'llm', 'narration', 'audio' and
                'logging' sections
            base: Config to start from (defaults to built-in defaults)

        Returns:
            New AppConfig
        """
        config = base or cls()

        llm_data = dict(data.get("llm") or {})
        retry_data = llm_data.pop("retry", None) or {}
        if "api_key" in llm_data:
            llm_data["api_key"] = sanitize_api_key(llm_data["api_key"])
        llm = LLMConfig(**{**config.llm.__dict__, **llm_data})
        llm.retry = RetryConfig(**{**config.llm.retry.__dict__, **retry_data})

        narration_data = dict(data.get("narration") or {})
        if "failure_policy" in narration_data:
            narration_data["failure_policy"] = FailurePolicy(narration_data["failure_policy"])
        narration = NarrationConfig(**{**config.narration.__dict__, **narration_data})

        audio = AudioConfig(**{**config.audio.__dict__, **(data.get("audio") or {})})

        log_level = (data.get("logging") or {}).get("level", config.log_level)

        return cls(
            ssl=config.ssl,
            proxy=config.proxy,
            llm=llm,
            narration=narration,
            audio=audio,
            log_level=log_level,
        )

    def validate(self, require_api_key: bool = True) -> "AppConfig":
        """
        Check the configuration once at startup.

        Raises:
            ConfigError: Listing every problem found
        """
        problems: list[str] = []

        if require_api_key and not self.llm.api_key:
            problems.append("LLM API key is not set (LLM_API_KEY)")
        if not self.llm.api_url.startswith(("http://", "https://")):
            problems.append(f"LLM API URL must be http(s): {self.llm.api_url!r}")
        if self.llm.max_tokens <= 0:
            problems.append("llm.max_tokens must be positive")
        if self.llm.timeout <= 0:
            problems.append("llm.timeout must be positive")
        if self.llm.retry.max_attempts < 1:
            problems.append("llm.retry.max_attempts must be at least 1")

        narration = self.narration
        if narration.segment_duration_seconds <= 0:
            problems.append("narration.segment_duration_seconds must be positive")
        if narration.words_per_minute <= 0:
            problems.append("narration.words_per_minute must be positive")
        if narration.context_window_chars < 0:
            problems.append("narration.context_window_chars must not be negative")
        if narration.segment_retries < 0 or narration.synthesis_retries < 0:
            problems.append("narration retries must not be negative")
        if narration.max_concurrent_synthesis < 1:
            problems.append("narration.max_concurrent_synthesis must be at least 1")

        if self.audio.sample_rate <= 0 or self.audio.channels <= 0:
            problems.append("audio.sample_rate and audio.channels must be positive")
        if self.audio.seconds_per_character <= 0:
            problems.append("audio.seconds_per_character must be positive")

        if problems:
            raise ConfigError(problems)
        return self

    def log_configuration(self) -> None:
        """Log current configuration summary."""
        logger.info("=" * 60)
        logger.info("Echo Paths Configuration")
        logger.info("=" * 60)

        if self.ssl.insecure_ssl:
            logger.warning("SSL: ⚠️  INSECURE (verification disabled)")
        else:
            logger.info(f"SSL: ✅ Secure (using {self.ssl.ca_file})")

        logger.info(f"Proxy: {'✅ Configured' if self.proxy.is_configured else '❌ Not configured'}")
        logger.info(f"LLM: {self.llm.model} @ {self.llm.api_url}")
        logger.info(
            f"Pacing: {self.narration.segment_duration_seconds}s segments, "
            f"{self.narration.words_per_minute} wpm"
        )
        logger.info(f"Failure policy: {self.narration.failure_policy.value}")
        logger.info("=" * 60)
