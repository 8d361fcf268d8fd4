"""structlog 配置

TASKRELAY_LOG_FORMAT=json 输出结构化 JSON，其余取值使用 ConsoleRenderer。
structlog 与标准库 logging（uvicorn、httpx、aiosqlite）共用同一条处理器链，
每条日志都带 service 字段与请求上下文（request_id / project_id / task_id）。
"""

import logging
import os

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SERVICE_NAME = "taskrelay"

# 这些库在 INFO 级别逐条记录 SQL / HTTP 调用
_CHATTY_LOGGERS = ("aiosqlite", "httpx", "httpcore")


def add_service_name(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _render_chain(log_format: str) -> list[Processor]:
    if log_format == "json":
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    # ConsoleRenderer 自己渲染 exc_info
    return [structlog.dev.ConsoleRenderer()]


def setup_logging() -> None:
    """初始化 structlog 与标准库 logging

    日志级别由 TASKRELAY_LOG_LEVEL 控制（默认 INFO），非法值按 INFO 处理。
    """
    log_format = os.environ.get("TASKRELAY_LOG_FORMAT", "dev")
    level = getattr(logging, os.environ.get("TASKRELAY_LOG_LEVEL", "INFO").upper(), None)
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_name,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *_render_chain(log_format),
            ],
            foreign_pre_chain=pre_chain,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
