"""
Planner 日志配置。

- logs/system.log: 常规运行日志 (INFO+)，包括每次排程摘要
- logs/error.log: 仅 ERROR 及以上
- 控制台: WARNING+，例如必做任务被丢弃、搜索被截断

模块通过 get_logger("scheduler") 取得 planner.scheduler，未调用
setup_logging 时日志按 logging 默认行为处理（测试环境即如此）。
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "planner"

# 可用 PLANNER_LOG_DIR 覆盖
LOGS_DIR = Path(os.getenv("PLANNER_LOG_DIR", Path(__file__).parent.parent / "logs"))

MAX_BYTES = 5 * 1024 * 1024  # 5MB
BACKUP_COUNT = 3

FILE_FORMAT = logging.Formatter(
    "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
CONSOLE_FORMAT = logging.Formatter("[%(levelname)s] %(name)s: %(message)s")


def _rotating_handler(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(FILE_FORMAT)
    return handler


def setup_logging(
    log_level: int = logging.INFO,
    console_level: int = logging.WARNING,
    logs_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    初始化 planner 日志。可重复调用，旧 handler 会被关闭替换。

    Args:
        log_level: system.log 级别
        console_level: 控制台级别
        logs_dir: 日志目录，默认 LOGS_DIR
    """
    target_dir = Path(logs_dir or LOGS_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(CONSOLE_FORMAT)

    root.addHandler(_rotating_handler(target_dir / "system.log", log_level))
    root.addHandler(_rotating_handler(target_dir / "error.log", logging.ERROR))
    root.addHandler(console)
    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}" if name else ROOT_LOGGER_NAME)
