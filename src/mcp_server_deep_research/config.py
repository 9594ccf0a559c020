"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "mcp-server-deep-research"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/mcp-server-deep-research)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_results_dir() -> Path:
    """Get the default directory for saved research reports."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()
    return base / "deep-research-reports"


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except (OSError, json.JSONDecodeError):
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


# Standard environment variable names for API keys.
# Where a provider has several common names, the first match wins.
STANDARD_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],
    "azure_openai": "AZURE_OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Providers that don't require an API key
NO_KEY_PROVIDERS = frozenset({"ollama", "bedrock"})

ProviderType = Literal[
    "openai",
    "anthropic",
    "google",
    "azure_openai",
    "groq",
    "deepseek",
    "openrouter",
    "ollama",
    "bedrock",
]

SearchEngineName = Literal["google", "bing", "baidu"]
ResearchDepthName = Literal["shallow", "medium", "deep"]
LanguagePreference = Literal["zh", "en", "auto"]


class LLMSettings(BaseSettings):
    """LLM provider configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_LLM_")

    provider: ProviderType = Field(default="anthropic")
    model_name: str = Field(default="claude-sonnet-4-20250514")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic API key override (highest priority)")
    base_url: Optional[str] = Field(default=None, description="Custom base URL for OpenAI-compatible APIs")

    azure_endpoint: Optional[str] = Field(default=None, description="Azure OpenAI endpoint URL")
    azure_api_version: Optional[str] = Field(default="2024-02-01", description="Azure OpenAI API version")
    aws_region: Optional[str] = Field(default=None, description="AWS region for Bedrock")

    def get_api_key_for_provider(self) -> Optional[str]:
        """Resolve the API key for the configured provider.

        Priority order:
        1. MCP_LLM_API_KEY (generic override)
        2. <PROVIDER>_API_KEY (standard name, e.g. OPENAI_API_KEY)
        3. MCP_LLM_<PROVIDER>_API_KEY (prefixed fallback)
        """
        if self.api_key:
            return self.api_key.get_secret_value()

        standard_vars = STANDARD_ENV_VAR_NAMES.get(self.provider)
        if standard_vars:
            if isinstance(standard_vars, str):
                standard_vars = [standard_vars]
            for var_name in standard_vars:
                key = os.environ.get(var_name)
                if key:
                    return key

        return os.environ.get(f"MCP_LLM_{self.provider.upper()}_API_KEY")

    def requires_api_key(self) -> bool:
        """Check if the current provider requires an API key."""
        return self.provider not in NO_KEY_PROVIDERS


class BrowserSettings(BaseSettings):
    """Browser configuration used for search and page retrieval."""

    model_config = SettingsConfigDict(env_prefix="MCP_BROWSER_")

    headless: bool = Field(default=True)
    proxy_server: Optional[str] = Field(default=None, description="Proxy server URL (e.g., http://host:8080)")
    proxy_bypass: Optional[str] = Field(default=None, description="Comma-separated hosts to bypass proxy")
    cdp_url: Optional[str] = Field(default=None, description="Attach to an already running browser via CDP")


class ResearchSettings(BaseSettings):
    """Deep research configuration.

    One instance configures one research run; per-run overrides are applied with
    ``model_copy(update=...)`` so the process-wide settings are never mutated.
    """

    model_config = SettingsConfigDict(env_prefix="MCP_RESEARCH_")

    # Iteration
    max_iterations: int = Field(default=3, ge=1, description="Maximum research iterations per run")
    max_pages_per_iteration: int = Field(default=3, ge=0, description="Maximum pages visited per iteration")

    # Search
    max_search_results: int = Field(default=10, ge=1, description="Maximum results requested per engine")
    search_depth: ResearchDepthName = Field(default="medium")
    preferred_engines: list[SearchEngineName] = Field(default_factory=lambda: ["google", "bing"])

    # Interaction gates
    interactive_mode: bool = Field(default=False, description="Ask whether to continue after each iteration")
    require_plan_approval: bool = Field(default=False)
    require_search_approval: bool = Field(default=False)
    require_page_approval: bool = Field(default=False)

    language: LanguagePreference = Field(default="auto", description="Preferred language of search queries")

    # Adapter time budgets (seconds)
    search_timeout: float = Field(default=30.0, gt=0)
    fetch_timeout: float = Field(default=15.0, gt=0)
    generation_timeout: float = Field(default=120.0, gt=0)

    # Content limits
    min_content_length: int = Field(default=100, ge=0, description="Pages shorter than this are not analyzed")
    max_content_chars: int = Field(default=8000, ge=1, description="Page excerpt cap sent for analysis")

    save_directory: Optional[str] = Field(default=None, description="Directory to save research reports")


TransportType = Literal["stdio", "streamable-http", "sse"]


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_SERVER_")

    logging_level: str = Field(default="INFO")
    transport: TransportType = Field(default="streamable-http", description="MCP transport: stdio, streamable-http, or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=8384, description="Port for HTTP transports")
    results_dir: Optional[str] = Field(default=None, description="Directory to save research results")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="MCP_", extra="ignore")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    research: ResearchSettings = Field(default_factory=ResearchSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file (excluding secrets)."""
        data = self.model_dump(mode="json", exclude_none=True)
        if "llm" in data and "api_key" in data["llm"]:
            del data["llm"]["api_key"]
        save_config_file(data)
        return CONFIG_FILE

    def get_results_dir(self) -> Path:
        """Get the results directory, creating if needed."""
        if self.server.results_dir:
            path = Path(self.server.results_dir).expanduser()
        else:
            path = get_default_results_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    return AppSettings(**file_data)


settings = _load_settings()
