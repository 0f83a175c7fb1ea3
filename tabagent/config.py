"""Settings via pydantic-settings with TABAGENT_ env prefix.

The Anthropic key uses the unprefixed ANTHROPIC_API_KEY variable so the
same .env works for every tool that talks to the API.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HIGH_RISK_TOOLS = [
    "click_element",
    "type_text",
    "navigate",
    "execute_script",
    "fill_form",
    "press_key",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TABAGENT_", env_file=".env")

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8420
    log_level: str = "info"
    debug_mode: bool = False  # Log full request payloads

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    model: str = "claude-haiku-4-5"
    max_tokens: int = Field(8192, ge=256, le=8192)
    temperature: float = Field(0.0, ge=0.0, le=1.0)

    # Tool governance
    default_autonomy_mode: Literal["ask", "auto"] = "ask"
    max_tool_iterations: int = Field(15, ge=1)
    high_risk_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_HIGH_RISK_TOOLS))

    # Prompts
    system_prompt_path: str = "prompts/system-prompt.txt"

    # SSE
    sse_keepalive_interval: float = 15.0  # seconds between keepalive comments

    @field_validator("anthropic_api_key")
    @classmethod
    def _strip_key(cls, value: str) -> str:
        return value.strip()

    @property
    def api_configured(self) -> bool:
        return self.anthropic_api_key.startswith("sk-ant-")
