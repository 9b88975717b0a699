"""
Configuration Manager for the suggestion planner.

集中管理评分、时长协商与搜索的常量。
所有经验值必须显式声明并可配置。

使用方式:
    from engine.config_manager import config
    threshold = config.MANDATORY_THRESHOLD
"""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import yaml

from engine.exceptions import ConfigError
from engine.logger import get_logger

logger = get_logger("config")

CONFIG_DIR = Path(__file__).parent.parent / "config"
RUNTIME_CONFIG_PATH = CONFIG_DIR / "suggestion.yaml"


@dataclass
class SuggestionConfig:
    """
    建议引擎运行时常量配置。

    所有值均为经验值，可根据用户实际情况调整。
    调整建议已在注释中说明。
    """

    # === 评分阈值 ===

    # 展示阈值：need 低于此值的建议被隐藏
    # 经验值依据：0.5 以下表示"今天不必做"
    DISPLAY_THRESHOLD: float = 0.5

    # 必做阈值：need >= 此值视为必做
    MANDATORY_THRESHOLD: float = 1.0

    # 浮点比较容差
    TOLERANCE: float = 1e-6

    # 重要度 -> 数值 (low / medium / high)
    # 调整建议：若希望重要度压过紧迫度，可改为 0.3 / 0.6 / 0.9
    IMPORTANCE_LOW: float = 0.0
    IMPORTANCE_MEDIUM: float = 0.2
    IMPORTANCE_HIGH: float = 0.4

    # === Need 取值范围 ===

    DEADLINE_NEED_MIN: float = 0.1
    DEADLINE_NEED_MAX: float = 1.0
    # 无截止日的期限任务
    DEADLINE_NEED_DEFAULT: float = 0.5

    ROUTINE_NEED_MAX: float = 0.9
    # 本周期目标已达成后的显示上限（可见但低于展示阈值）
    ROUTINE_GOAL_MET_CAP: float = 0.49

    BACKLOG_NEED_MIN: float = 0.5
    BACKLOG_NEED_MAX: float = 0.7
    # 经验值依据：10 天未处理即达到上限
    BACKLOG_DAILY_GROWTH: float = 0.02

    # 已在别处接受的建议降权
    ACCEPTED_NEED_FACTOR: float = 0.5
    ACCEPTED_NEED_CAP: float = 0.85
    ACCEPTED_IMPORTANCE_FACTOR: float = 0.5

    # === 时长 ===

    DEFAULT_SESSION_MINUTES: int = 30
    MIN_SESSION_MINUTES: int = 10
    MAX_SESSION_MINUTES: int = 120
    # 未设定单次时长时：总时长拆成几次
    SESSIONS_PER_TOTAL: int = 4
    # 期限任务理想时长曲线上限 (倍数)
    DEADLINE_DURATION_MAX_FACTOR: float = 5.0
    # 实际时长拟合的平滑系数 (≤ 0.3)
    DEADLINE_DURATION_SMOOTHING: float = 0.3
    # 未设定总时长时的默认值
    DEFAULT_TOTAL_MINUTES: int = 60

    # === 延长 / 压缩 ===

    EXTENSION_ENABLED: bool = True
    # 富余时间少于此值不延长
    EXTENSION_MIN_EXTRA_MINUTES: int = 10
    EXTENSION_MAX_FACTOR: float = 2.0
    # 时长对齐粒度 (分钟)
    STEP_MINUTES: int = 10

    # 允许压缩到 base 的任务类型
    SHRINKABLE_TYPES: List[str] = field(default_factory=lambda: ["deadline"])

    # 多任务分配的分层阈值：必做 / 高 / 普通
    TIER_THRESHOLDS: List[float] = field(default_factory=lambda: [1.0, 0.75, 0.5])

    # === 状态空间搜索 ===

    # 候选上限：总空闲分钟 / 此值
    MINUTES_PER_CANDIDATE: int = 30
    BEAM_WIDTH: int = 16
    EXPANSION_LEVELS: List[float] = field(default_factory=lambda: [0.2, 0.4, 0.6, 0.8, 1.0])
    MAX_ANCHOR_COMBINATIONS: int = 64
    MAX_FILL_DEPTH: int = 10
    # 每个空档填充分支上限，超过即降级
    MAX_FILL_BRANCHES: int = 2000

    # 效用函数参数
    UTILITY_ALPHA: float = 2.0
    FINISH_BONUS: float = 0.1
    MAX_PRIORITY: float = 2.0
    DURATION_NEED_BONUS: float = 0.1
    SWITCH_COST: float = 0.05
    UNUSED_COST: float = 0.002

    # === LLM 补全 ===

    ENRICHMENT_CACHE_TTL_SECONDS: float = 3600.0
    # 批量补全时两次调用的间隔
    ENRICHMENT_REQUEST_DELAY_SECONDS: float = 0.1
    ENRICHMENT_TEMPERATURE: float = 0.2

    def importance_value(self, level: Optional[str]) -> float:
        """Map an importance level (or None = medium) onto the numeric scale."""
        value = getattr(level, "value", level) or "medium"
        return {
            "low": self.IMPORTANCE_LOW,
            "medium": self.IMPORTANCE_MEDIUM,
            "high": self.IMPORTANCE_HIGH,
        }.get(value, self.IMPORTANCE_MEDIUM)

    def is_mandatory(self, need: float) -> bool:
        return need >= self.MANDATORY_THRESHOLD - self.TOLERANCE


def _load_runtime_config(path: Path) -> dict:
    """加载运行时配置覆盖（如果存在）。"""
    if not path.exists():
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"配置文件解析失败: {e}", config_path=str(path))
    except OSError as e:
        logger.warning(f"无法读取配置文件 {path}: {e}")
        return {}

    if not isinstance(data, dict):
        raise ConfigError("配置文件顶层必须是映射", config_path=str(path))
    return data


def get_config(path: Optional[Path] = None) -> SuggestionConfig:
    """
    获取配置实例。

    优先级：suggestion.yaml > 默认值
    """
    base = SuggestionConfig()
    overrides = _load_runtime_config(path or RUNTIME_CONFIG_PATH)
    known = {f.name for f in fields(base)}

    for key, value in overrides.items():
        if key in known:
            setattr(base, key, value)
        else:
            logger.warning(f"忽略未知配置项: {key}")

    return base


# 全局配置实例（单例模式）
config = get_config()
