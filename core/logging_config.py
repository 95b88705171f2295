"""
Structlog 日志配置模块
"""
import json
import logging
from typing import Any, List

import structlog
from structlog.contextvars import merge_contextvars
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer, TimeStamper, add_log_level
from structlog.stdlib import ProcessorFormatter, add_logger_name

from core.config import settings


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# SDK 的 DEBUG 日志过于冗长，只保留 WARNING 及以上
_SDK_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3")


def _json_dumps(obj: Any, default: Any = None, **kwargs: Any) -> str:
    # structlog 会传入 default/sort_keys 等参数
    return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)


def get_renderer() -> Any:
    """DEBUG 下使用彩色控制台输出，其余环境输出 JSON。"""
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)
    return JSONRenderer(serializer=_json_dumps)


def get_log_level() -> int:
    """DEBUG 开关优先，其次使用 LOG_LEVEL。"""
    if settings.DEBUG:
        return logging.DEBUG
    return _LEVELS.get(settings.LOG_LEVEL, logging.INFO)


def _shared_processors() -> List[Any]:
    """structlog 与标准库 logging 共用的预处理链。"""
    return [
        merge_contextvars,
        add_log_level,
        add_logger_name,
        TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging() -> None:
    """配置 structlog，并把 boto3/botocore 等标准库日志桥接到同一渲染链。"""
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[ProcessorFormatter.remove_processors_meta, get_renderer()],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(get_log_level())

    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, get_log_level()))


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取 structlog logger 实例。"""
    return structlog.get_logger(name)


# 初始化配置
configure_logging()
