"""
LLM Adapter for the suggestion planner.

Provides a unified interface for the providers used by memo enrichment.
Supports: OpenAI-compatible APIs, Ollama (local), and a rule-based
placeholder used when no model is configured.
"""
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import yaml

from engine.exceptions import (
    ConfigError,
    LLMAuthError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMTimeoutError,
)
from engine.logger import get_logger

logger = get_logger("llm_adapter")

CONFIG_DIR = Path(__file__).parent.parent / "config"
MODEL_CONFIG_PATH = CONFIG_DIR / "model.yaml"
LOCAL_MODEL_CONFIG_PATH = CONFIG_DIR / "local_model.yaml"

RULE_BASED_MODEL = "rule_based"


@dataclass
class LLMResponse:
    """Structured response from LLM."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class BaseLLMAdapter(ABC):
    """Base class for LLM adapters."""

    provider = "unknown"

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.model_name = config.get("model_name", "unknown")
        self.timeout = float(config.get("timeout", 30.0))

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        """Generate text completion."""

    def get_model_name(self) -> str:
        return self.model_name

    @property
    def is_rule_based(self) -> bool:
        return False

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """POST JSON and translate transport failures into LLMError subclasses."""
        context = {"provider": self.provider, "model_name": self.model_name, "endpoint": url}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise LLMAuthError(**context) from e
            if status == 429:
                retry_after = e.response.headers.get("retry-after")
                raise LLMRateLimitError(
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                    **context,
                ) from e
            raise LLMError(f"HTTP 错误: {status} - {e.response.text[:200]}", **context) from e
        except httpx.ConnectError as e:
            raise LLMConnectionError(**context) from e
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(timeout_seconds=self.timeout, **context) from e
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise LLMError(f"请求失败: {e}", **context) from e

        if not isinstance(data, dict):
            raise LLMError(f"响应不是 JSON 对象: {type(data).__name__}", **context)
        return data


class OpenAIAdapter(BaseLLMAdapter):
    """Adapter for OpenAI API (also compatible with other OpenAI-compatible APIs)."""

    provider = "openai"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.api_key = config.get("api_key") or os.environ.get("OPENAI_API_KEY")
        self.base_url = config.get("base_url", "https://api.openai.com/v1").rstrip("/")
        self.model_name = config.get("model_name", "gpt-4o-mini")

        if not self.api_key:
            raise LLMAuthError(provider=self.provider, model_name=self.model_name, endpoint=self.base_url)

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = self._post(
            f"{self.base_url}/chat/completions",
            payload={
                "model": self.model_name,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("响应格式异常", self.provider, self.model_name, self.base_url) from e

        return LLMResponse(
            content=content or "",
            model=data.get("model", self.model_name),
            usage=data.get("usage"),
        )


class OllamaAdapter(BaseLLMAdapter):
    """Adapter for local Ollama models."""

    provider = "ollama"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = config.get("base_url", "http://localhost:11434").rstrip("/")
        self.model_name = config.get("model_name", "qwen2.5:7b")

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt

        data = self._post(
            f"{self.base_url}/api/generate",
            payload={
                "model": self.model_name,
                "prompt": full_prompt,
                "stream": False,
                "format": "json",
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
        )

        return LLMResponse(
            content=data.get("response", ""),
            model=data.get("model", self.model_name),
            usage={
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
            },
        )


class RuleBasedAdapter(BaseLLMAdapter):
    """
    Placeholder used when no LLM is configured.
    Enrichment skips the call entirely and uses rule-based defaults.
    """

    provider = RULE_BASED_MODEL

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.model_name = RULE_BASED_MODEL

    @property
    def is_rule_based(self) -> bool:
        return True

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        return LLMResponse(
            content="",
            model=self.model_name,
            usage={"prompt_tokens": 0, "completion_tokens": 0},
            error="rule-based mode: no model configured",
        )


def _expand_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
    """Expand ${VAR} placeholders with environment variables."""
    result = {}
    pattern = re.compile(r"^\$\{([^}]+)\}$")

    for key, value in config.items():
        if isinstance(value, str):
            match = pattern.match(value)
            if match:
                env_value = os.environ.get(match.group(1))
                if not env_value:
                    raise ConfigError(
                        f"环境变量 {match.group(1)} 未设置 (字段 '{key}')",
                        config_path=str(LOCAL_MODEL_CONFIG_PATH),
                    )
                result[key] = env_value
            else:
                result[key] = value
        elif isinstance(value, dict):
            result[key] = _expand_env_vars(value)
        else:
            result[key] = value

    return result


def load_model_config(profile_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Load model configuration from YAML.
    Priority: local_model.yaml > model.yaml > rule-based.
    """
    raw_config: Dict[str, Any] = {}
    for path in (LOCAL_MODEL_CONFIG_PATH, MODEL_CONFIG_PATH):
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"模型配置解析失败: {e}", config_path=str(path))
            break

    if "profiles" in raw_config:
        profiles = raw_config["profiles"] or {}
        active = profile_name or raw_config.get("active_profile", RULE_BASED_MODEL)
        if active not in profiles:
            logger.warning(f"Profile '{active}' 不存在，使用规则模式")
            return {"provider": RULE_BASED_MODEL}
        return _expand_env_vars(profiles[active])

    if raw_config:
        return _expand_env_vars(raw_config)

    return {"provider": RULE_BASED_MODEL}


def create_llm_adapter(
    config: Optional[Dict[str, Any]] = None,
    profile_name: Optional[str] = None,
) -> BaseLLMAdapter:
    """Factory: build the adapter named by `provider` in the profile."""
    if config is None:
        config = load_model_config(profile_name)

    provider = str(config.get("provider", RULE_BASED_MODEL)).lower()

    if provider == "openai":
        return OpenAIAdapter(config)
    if provider == "ollama":
        return OllamaAdapter(config)
    if provider == RULE_BASED_MODEL:
        return RuleBasedAdapter(config)
    raise ConfigError(f"未知的 LLM provider: '{provider}' (Profile: {profile_name})")


# 全局 LLM 实例注册表 (Profile Name -> Instance)
_llm_registry: Dict[str, BaseLLMAdapter] = {}


def get_llm(profile_name: Optional[str] = None) -> BaseLLMAdapter:
    """
    Get or create the adapter for `profile_name` (None = active profile).

    Missing credentials or a broken profile degrade to the rule-based
    adapter so enrichment can still fall back.
    """
    key = profile_name or "__active__"
    if key not in _llm_registry:
        try:
            _llm_registry[key] = create_llm_adapter(profile_name=profile_name)
        except (ConfigError, LLMError) as e:
            logger.warning(f"LLM 初始化失败，使用规则模式: {e.message}")
            _llm_registry[key] = RuleBasedAdapter()
        logger.info(f"LLM profile '{key}' -> {_llm_registry[key].get_model_name()}")
    return _llm_registry[key]


def reset_llm() -> None:
    """Reset the registry (tests / config changes)."""
    _llm_registry.clear()
