"""
Service context for log lines.

Every saga participant (reservation, payment, notification, gateway) runs as
its own process, so each line is tagged with `service@env:pid`.
"""

from functools import lru_cache
import os


@lru_cache(maxsize=1)
def get_service_context() -> str:
    service_name = os.getenv('SERVICE_NAME', 'booking-saga')
    deploy_env = os.getenv('DEPLOY_ENV', 'local_dev')
    return f'{service_name}@{deploy_env}:{os.getpid()}'
