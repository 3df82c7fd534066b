"""
Standalone Notification Consumer - one notification per terminal reservation

Usage:
    EMBEDDED_WORKERS=false EVENT_BUS_BACKEND=kafka \
    PYTHONPATH=$PWD python -m src.service.notification.driving_adapter.start_notification_consumer
"""

import anyio

from src.platform.config.core_setting import settings
from src.platform.config.di import container
from src.platform.message_queue.i_event_bus import IEventBus
from src.platform.message_queue.worker_runner import run_consumer_worker


def _register(event_bus: IEventBus) -> None:
    container.notification_mq_consumer().register(
        event_bus=event_bus, partitions=settings.NOTIFICATION_CONSUMER_PARTITIONS
    )


def main() -> None:
    anyio.run(
        lambda: run_consumer_worker(service_name='notification-consumer', register=_register)
    )


if __name__ == '__main__':
    main()
