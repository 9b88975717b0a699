"""
Planner 异常定义。

- PlannerError: 基类，调用方捕获它即可处理所有预期错误
- ConfigError: 配置文件缺失或格式错误
- InputValidationError: 调用方传入的数据不合法（空档、事件、任务）
- LLMError 及子类: 模型调用失败，只在补全步骤内部出现并被降级处理

排不进的必做任务、搜索被截断都不是异常，通过 ScheduleResult 字段返回。
"""
from typing import Optional


class PlannerError(Exception):
    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def get_user_message(self) -> str:
        if self.hint:
            return f"{self.message}\n💡 建议: {self.hint}"
        return self.message


class ConfigError(PlannerError):
    def __init__(self, message: str, config_path: Optional[str] = None):
        hint = f"请检查配置文件: {config_path}" if config_path else "请检查配置文件格式"
        super().__init__(message, hint)
        self.config_path = config_path


class InputValidationError(PlannerError):
    """输入契约被破坏，例如空档结束早于开始。在公共入口处抛出，不会进入搜索内部。"""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message, f"字段 '{field_name}' 不合法" if field_name else None)
        self.field_name = field_name


class LLMError(PlannerError):
    """
    模型调用错误。

    子类通过 default_message / default_hint 声明默认文案，
    调用上下文 (provider / model / endpoint) 统一由基类保存。
    """

    default_message = "模型调用失败"
    default_hint: Optional[str] = None

    def __init__(
        self,
        message: Optional[str] = None,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
    ):
        self.provider = provider or "unknown"
        self.model_name = model_name or "unknown"
        self.endpoint = endpoint
        super().__init__(
            f"[{self.provider}/{self.model_name}] {message or self.default_message}",
            self.default_hint,
        )

    def get_user_message(self) -> str:
        base = f"模型调用失败 ({self.provider}/{self.model_name}): {self.message}"
        if self.hint:
            return f"{base}\n💡 建议: {self.hint}"
        return base


class LLMConnectionError(LLMError):
    default_message = "无法连接到模型服务"

    def __init__(self, provider: Optional[str] = None, model_name: Optional[str] = None, endpoint: Optional[str] = None):
        super().__init__(None, provider, model_name, endpoint)
        if provider == "ollama":
            self.hint = "请确保 Ollama 正在运行 (ollama serve)"
        else:
            self.hint = "请检查网络连接或 API 端点配置"


class LLMAuthError(LLMError):
    default_message = "模型鉴权失败或缺少凭证"
    default_hint = "请检查 API Key 是否正确配置"

    def __init__(self, provider: Optional[str] = None, model_name: Optional[str] = None, endpoint: Optional[str] = None):
        super().__init__(None, provider, model_name, endpoint)


class LLMTimeoutError(LLMError):
    default_hint = "补全将使用规则默认值"

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        message = f"模型调用超时 ({timeout_seconds}秒)" if timeout_seconds else "模型调用超时"
        super().__init__(message, provider, model_name, endpoint)
        self.timeout_seconds = timeout_seconds


class LLMRateLimitError(LLMError):
    default_message = "请求频率超限"

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(None, provider, model_name, endpoint)
        self.retry_after = retry_after
        self.hint = f"请在 {retry_after} 秒后重试" if retry_after else "请稍后重试"
