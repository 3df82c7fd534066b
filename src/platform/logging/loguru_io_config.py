"""
Loguru sink configuration shared by every saga service.

Standard `logging` records (uvicorn, SQLAlchemy, confluent_kafka) are routed
into loguru so a single format covers framework and application output. Each
line carries the service context and, while an envelope is being handled, the
saga correlation id, so one booking can be followed across services with grep.
"""

from contextvars import ContextVar
from datetime import datetime, timezone
from enum import StrEnum
import logging
import os
from pathlib import Path
import sys
from typing import TYPE_CHECKING

from loguru import logger as loguru_logger


if TYPE_CHECKING:
    from loguru import Logger as LoguruLogger, Record

from src.platform.config.core_setting import settings
from src.platform.logging.service_context import get_service_context


# Repository root /logs unless the test suite redirects it
LOG_DIR = os.environ.get('TEST_LOG_DIR') or str(Path(__file__).resolve().parents[3] / 'logs')

SENSITIVE_KEYWORDS = {
    'password',
    'token',
    'authorization',
    'secret',
    'card',
}

chain_start_time_var: ContextVar[float] = ContextVar('chain_start_time_var', default=0)
call_depth_var: ContextVar[int] = ContextVar('call_depth_var', default=0)
correlation_id_var: ContextVar[str] = ContextVar('correlation_id_var', default='-')


class ExtraField(StrEnum):
    SERVICE_CONTEXT = 'service_context'
    CORRELATION_ID = 'correlation_id'
    CHAIN_START_TIME = 'chain_start_time'
    CALL_TARGET = 'call_target'


def _attach_correlation_id(record: 'Record') -> None:
    record['extra'][ExtraField.CORRELATION_ID] = correlation_id_var.get()


def _access_log_level(message: str) -> str | None:
    """
    Map a uvicorn access line to a level by its status code.

    '127.0.0.1:52144 - "POST /api/reservation HTTP/1.1" 409' -> 'ERROR'
    """
    if ' HTTP/' not in message:
        return None
    parts = message.split('"')
    if len(parts) < 3:
        return None
    try:
        status_code = int(parts[2].split()[0])
    except (ValueError, IndexError):
        return None

    if status_code >= 500:
        return 'CRITICAL'
    if status_code >= 400:
        return 'ERROR'
    if status_code >= 300:
        return 'WARNING'
    return 'SUCCESS'


def _bound(base: 'LoguruLogger') -> 'LoguruLogger':
    return base.patch(_attach_correlation_id).bind(
        **{
            ExtraField.SERVICE_CONTEXT: get_service_context(),
            ExtraField.CHAIN_START_TIME: '',
            ExtraField.CALL_TARGET: '',
        }
    )


_QUIET_DEBUG_LOGGERS = ('confluent_kafka', 'aiosqlite', 'asyncio', 'httpcore')


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno <= logging.DEBUG and record.name.startswith(_QUIET_DEBUG_LOGGERS):
            return

        message = record.getMessage()
        level: str | int | None = _access_log_level(message)
        if level is None:
            try:
                level = loguru_logger.level(record.levelname).name
            except ValueError:
                level = record.levelno

        # Walk out of the logging module so file:line points at the real caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore
            depth += 1

        custom_logger.opt(depth=depth, exception=record.exc_info).log(level, message)


io_log_format = ' | '.join(
    (
        f'<c>{{extra[{ExtraField.SERVICE_CONTEXT}]}}</>',
        f'<m>{{extra[{ExtraField.CORRELATION_ID}]}}</>',
        '<lvl>{level:<8}</>',
        f'<c>{{file}}::{{function}}:{{line}}</>=><y>{{extra[{ExtraField.CALL_TARGET}]}}</>',
        '{message}',
        '<lk>{elapsed}</>',
        f'<lk>{{extra[{ExtraField.CHAIN_START_TIME}]:<18}}</>',
    )
)


loguru_logger.remove()
custom_logger = _bound(loguru_logger)

min_log_level = 'DEBUG' if settings.DEBUG else 'INFO'
custom_logger.add(sys.stdout, format=io_log_format, level=min_log_level, enqueue=True)

# Hourly files in DEBUG only; deployments collect stdout
if settings.DEBUG:
    prefix = 'test_' if os.environ.get('TEST_LOG_DIR') else ''
    custom_logger.add(
        f'{LOG_DIR}/{prefix}{datetime.now(timezone.utc):%Y-%m-%d_%H}.log',
        format=io_log_format,
        rotation='1 hour',
        retention='7 days',
        compression='gz',
        enqueue=True,
        level=min_log_level,
    )

logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
