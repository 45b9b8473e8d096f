"""SQLModel-backed storage for botcloud."""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlmodel import func, select

from .database import get_db
from .db_models import BotInstance, CertificateAuthorityRecord, NatGateway, utcnow

logger = logging.getLogger(__name__)


class BotStore:
    """Storage for bot instances."""

    def create(self, bot: BotInstance) -> BotInstance:
        with get_db() as session:
            session.add(bot)
        return bot

    def get(self, bot_id: str) -> BotInstance | None:
        with get_db() as session:
            return session.get(BotInstance, bot_id)

    def list(self, user_id: str | None = None, status: str | None = None) -> list[BotInstance]:
        with get_db() as session:
            query = select(BotInstance)
            if user_id:
                query = query.where(BotInstance.user_id == user_id)
            if status:
                query = query.where(BotInstance.status == status)
            return list(session.exec(query.order_by(BotInstance.created_at)).all())

    def update(self, bot_id: str, **updates) -> BotInstance | None:
        with get_db() as session:
            bot = session.get(BotInstance, bot_id)
            if not bot:
                return None
            for key, value in updates.items():
                if hasattr(bot, key):
                    setattr(bot, key, value)
            bot.updated_at = utcnow()
            session.add(bot)
            session.commit()
            session.refresh(bot)
            return bot

    def transition_status(self, bot_id: str, expected: str | tuple[str, ...], new: str, **updates) -> bool:
        """Atomically move a bot from *expected* to *new*.

        Single conditional UPDATE, so of two concurrent callers only one sees
        True. Extra column values in *updates* are written in the same statement.
        """
        allowed = (expected,) if isinstance(expected, str) else tuple(expected)
        values = {"status": new, "updated_at": utcnow(), **updates}
        with get_db() as session:
            result = session.exec(
                update(BotInstance)
                .where(BotInstance.id == bot_id, BotInstance.status.in_(allowed))
                .values(**values)
            )
            return result.rowcount == 1

    def claim_for_provisioning(self, bot_id: str) -> bool:
        """Mark a ``starting`` bot with no server and no running claim as claimed.

        Only one caller can flip ``provisioning_started_at`` from NULL, so only
        one provisioning run proceeds per bot.
        """
        now = utcnow()
        with get_db() as session:
            result = session.exec(
                update(BotInstance)
                .where(
                    BotInstance.id == bot_id,
                    BotInstance.status == "starting",
                    BotInstance.cloud_server_id.is_(None),
                    BotInstance.provisioning_started_at.is_(None),
                )
                .values(provisioning_started_at=now, error=None, updated_at=now)
            )
            return result.rowcount == 1

    def clear(self) -> None:
        with get_db() as session:
            for bot in session.exec(select(BotInstance)).all():
                session.delete(bot)


class NatGatewayStore:
    """Storage for NAT gateways and their bot counters."""

    def create(self, gateway: NatGateway) -> NatGateway:
        with get_db() as session:
            session.add(gateway)
        return gateway

    def get(self, gateway_id: str) -> NatGateway | None:
        with get_db() as session:
            return session.get(NatGateway, gateway_id)

    def list(self, status: str | None = None) -> list[NatGateway]:
        with get_db() as session:
            query = select(NatGateway)
            if status:
                query = query.where(NatGateway.status == status)
            return list(session.exec(query.order_by(NatGateway.created_at)).all())

    def count(self) -> int:
        with get_db() as session:
            return session.exec(select(func.count()).select_from(NatGateway)).one()

    def least_loaded_available(self) -> NatGateway | None:
        """Active gateway with spare capacity and the fewest bots."""
        with get_db() as session:
            return session.exec(
                select(NatGateway)
                .where(NatGateway.status == "active", NatGateway.bot_count < NatGateway.max_bots)
                .order_by(NatGateway.bot_count, NatGateway.created_at)
            ).first()

    def update(self, gateway_id: str, **updates) -> NatGateway | None:
        with get_db() as session:
            gateway = session.get(NatGateway, gateway_id)
            if not gateway:
                return None
            for key, value in updates.items():
                if hasattr(gateway, key):
                    setattr(gateway, key, value)
            session.add(gateway)
            session.commit()
            session.refresh(gateway)
            return gateway

    def increment_bot_count(self, gateway_id: str) -> bool:
        """bot_count += 1 unless the gateway is full. Returns True if a row changed."""
        with get_db() as session:
            result = session.exec(
                update(NatGateway)
                .where(NatGateway.id == gateway_id, NatGateway.bot_count < NatGateway.max_bots)
                .values(bot_count=NatGateway.bot_count + 1)
            )
            return result.rowcount == 1

    def decrement_bot_count(self, gateway_id: str) -> bool:
        """bot_count -= 1 unless already zero. Returns True if a row changed."""
        with get_db() as session:
            result = session.exec(
                update(NatGateway)
                .where(NatGateway.id == gateway_id, NatGateway.bot_count > 0)
                .values(bot_count=NatGateway.bot_count - 1)
            )
            return result.rowcount == 1

    def delete_unusable(self) -> list[NatGateway]:
        """Delete failed, half-provisioned and placeholder rows. Returns what was removed."""
        with get_db() as session:
            rows = list(
                session.exec(
                    select(NatGateway).where(
                        NatGateway.status.in_(("failed", "provisioning"))
                        | (NatGateway.cloud_server_id == "pending")
                    )
                ).all()
            )
            for row in rows:
                session.delete(row)
            return rows

    def clear(self) -> None:
        with get_db() as session:
            for gateway in session.exec(select(NatGateway)).all():
                session.delete(gateway)


class CertificateAuthorityStore:
    """Storage for CA generations. At most one row is active."""

    def get_active(self) -> CertificateAuthorityRecord | None:
        with get_db() as session:
            return session.exec(
                select(CertificateAuthorityRecord)
                .where(CertificateAuthorityRecord.is_active == True)  # noqa: E712
                .order_by(CertificateAuthorityRecord.created_at.desc())
            ).first()

    def rotate(self, record: CertificateAuthorityRecord) -> CertificateAuthorityRecord:
        """Deactivate every active row and insert *record* as the active one."""
        with get_db() as session:
            session.exec(
                update(CertificateAuthorityRecord)
                .where(CertificateAuthorityRecord.is_active == True)  # noqa: E712
                .values(is_active=False)
            )
            record.is_active = True
            session.add(record)
        return record

    def list(self) -> list[CertificateAuthorityRecord]:
        with get_db() as session:
            return list(
                session.exec(
                    select(CertificateAuthorityRecord).order_by(
                        CertificateAuthorityRecord.created_at
                    )
                ).all()
            )

    def clear(self) -> None:
        with get_db() as session:
            for row in session.exec(select(CertificateAuthorityRecord)).all():
                session.delete(row)


bot_store = BotStore()
nat_gateway_store = NatGatewayStore()
ca_store = CertificateAuthorityStore()
