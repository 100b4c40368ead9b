"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出（调度器以后台任务运行时使用）

分发引擎的日志统一带 service 字段；引擎以 target="模板/规则" 记录的事件
会拆出 template_id / rule_key 两个字段，便于按模板检索。
"""

import logging
import os

import structlog
from structlog.types import EventDict, WrappedLogger

SERVICE_NAME = "intelhub-dispatch"


def add_service_name(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def split_target_label(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    """target="tpl-daily/r1" -> template_id="tpl-daily", rule_key="r1"（"-" 表示模板自身）"""
    target = event_dict.get("target")
    if isinstance(target, str) and "/" in target:
        template_id, _, rule_key = target.partition("/")
        event_dict.setdefault("template_id", template_id)
        event_dict.setdefault("rule_key", "" if rule_key == "-" else rule_key)
    return event_dict


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 配置

    参数缺省时读取环境变量：
    - INTELHUB_LOG_FORMAT: "json" 结构化输出，"dev"（默认）可读输出
    - INTELHUB_LOG_LEVEL: 日志级别（默认 INFO）
    """
    log_format = log_format or os.environ.get("INTELHUB_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("INTELHUB_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service_name,
        split_target_label,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer(
            ensure_ascii=False
        )
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
