"""
Standalone Payment Consumer - charges on reservation.created, refunds on reservation.cancelled

Runs independently from the reservation service so the payment consumer group
scales on its own (PAYMENT_CONSUMER_PARTITIONS, PAYMENT_MAX_CONCURRENCY).
Outcome events go to the outbox; the reservation service's relay publishes them.

Usage:
    EMBEDDED_WORKERS=false EVENT_BUS_BACKEND=kafka \
    PYTHONPATH=$PWD python -m src.service.payment.driving_adapter.start_payment_consumer
"""

import anyio

from src.platform.config.core_setting import settings
from src.platform.config.di import container
from src.platform.message_queue.i_event_bus import IEventBus
from src.platform.message_queue.worker_runner import run_consumer_worker


def _register(event_bus: IEventBus) -> None:
    container.payment_mq_consumer().register(
        event_bus=event_bus, partitions=settings.PAYMENT_CONSUMER_PARTITIONS
    )


async def _close_gateway() -> None:
    if settings.PAYMENT_GATEWAY_URL:
        await container.payment_gateway().aclose()


def main() -> None:
    anyio.run(
        lambda: run_consumer_worker(
            service_name='payment-consumer', register=_register, on_shutdown=_close_gateway
        )
    )


if __name__ == '__main__':
    main()
