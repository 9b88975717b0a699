import json
import re
from typing import Any, Dict, Optional

from engine.exceptions import InputValidationError

MINUTES_PER_DAY = 24 * 60

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def time_to_minutes(value: str) -> int:
    """
    "HH:MM" -> 当天分钟数。

    "24:00" 允许作为一天的结束边界。
    """
    match = _TIME_PATTERN.match(str(value or "").strip())
    if not match:
        raise InputValidationError(f"时间格式错误: {value!r} (应为 HH:MM)", field_name="time")

    hours, minutes = int(match.group(1)), int(match.group(2))
    total = hours * 60 + minutes
    if minutes >= 60 or total > MINUTES_PER_DAY:
        raise InputValidationError(f"时间超出范围: {value!r}", field_name="time")
    return total


def minutes_to_time(minutes: int) -> str:
    """当天分钟数 -> "HH:MM"。"""
    minutes = int(minutes)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def add_minutes_to_time(value: str, minutes_to_add: int) -> str:
    return minutes_to_time(time_to_minutes(value) + minutes_to_add)


def snap_down(minutes: float, step: int) -> int:
    """Floor `minutes` onto the `step` grid."""
    if step <= 0:
        return int(minutes)
    return int(minutes // step) * step


def parse_llm_json(content: str) -> Optional[Dict[str, Any]]:
    """
    解析 LLM 返回的 JSON 内容。

    LLM 经常将 JSON 包裹在 Markdown 代码块中，此函数自动处理这些情况。

    Returns:
        解析后的字典，解析失败或不是对象时返回 None

    示例:
        >>> parse_llm_json('```json\\n{"key": "value"}\\n```')
        {'key': 'value'}
    """
    if not content:
        return None

    if "```json" in content:
        content = content.split("```json")[1].split("```")[0]
    elif "```" in content:
        content = content.split("```")[1].split("```")[0]

    try:
        data = json.loads(content.strip())
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
