"""
Unit of Work Pattern - one database transaction shared by several repositories

Architecture:
- UoW owns the session lifecycle and commit/rollback
- Repositories receive the shared session from the UoW
- State change, outbox record and ledger record commit together or not at all
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.platform.database.db_setting import Database


if TYPE_CHECKING:
    from src.platform.outbox.outbox_repo import OutboxRepo
    from src.service.payment.app.interface.i_payment_repo import IPaymentRepo
    from src.service.reservation.app.interface.i_reservation_repo import IReservationRepo


class AbstractUnitOfWork(abc.ABC):
    """
    Usage:
        async with uow:
            await uow.reservation_repo.update(...)
            await uow.outbox.add(...)
            await uow.commit()
    """

    session: AsyncSession
    reservation_repo: IReservationRepo
    payment_repo: IPaymentRepo
    outbox: OutboxRepo

    async def __aenter__(self) -> AbstractUnitOfWork:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.rollback()

    async def commit(self) -> None:
        await self._commit()

    @abc.abstractmethod
    async def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def rollback(self) -> None:
        raise NotImplementedError


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, database: Database) -> None:
        self.database = database

    async def __aenter__(self) -> SqlAlchemyUnitOfWork:
        from src.platform.outbox.outbox_repo import OutboxRepo
        from src.service.payment.driven_adapter.repo.payment_repo_impl import PaymentRepoImpl
        from src.service.reservation.driven_adapter.repo.reservation_repo_impl import (
            ReservationRepoImpl,
        )

        self.session = self.database.session_maker()
        self.reservation_repo = ReservationRepoImpl(session=self.session)
        self.payment_repo = PaymentRepoImpl(session=self.session)
        self.outbox = OutboxRepo(session=self.session)
        await super().__aenter__()
        return self

    async def __aexit__(self, *args: Any) -> None:
        try:
            await super().__aexit__(*args)
        finally:
            await self.session.close()

    async def _commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
