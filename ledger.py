from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload, sessionmaker

from access import can_access_admin_page, can_modify
from database import session_scope
from errors import DataError
from models import Category, Profile, Role, Transaction, TransactionType, UserStatus
from schemas import CategoryIn, CategoryOut, TransactionIn, TransactionOut

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[str] = None
    query: Optional[str] = None
    user_id: Optional[str] = None

    def matches(self, txn: TransactionOut) -> bool:
        if self.type is not None and txn.type != self.type:
            return False
        if self.category_id and txn.category_id != self.category_id:
            return False
        if self.user_id and txn.user_id != self.user_id:
            return False
        if self.query:
            needle = self.query.strip().lower()
            haystack = f"{txn.description} {txn.employee_name or ''}".lower()
            if needle not in haystack:
                return False
        return True


class LedgerAdapter(Protocol):
    async def list_transactions(self) -> list[TransactionOut]: ...

    async def upsert_transaction(
        self, data: TransactionIn, transaction_id: Optional[str] = None
    ) -> TransactionOut: ...

    async def delete_transaction(self, transaction_id: str) -> None: ...

    async def list_categories(self) -> list[CategoryOut]: ...

    async def upsert_category(
        self, data: CategoryIn, category_id: Optional[str] = None
    ) -> CategoryOut: ...

    async def delete_category(self, category_id: str) -> None: ...


def _to_out(txn: Transaction) -> TransactionOut:
    return TransactionOut(
        id=txn.id,
        description=txn.description,
        amount_cents=txn.amount_cents,
        type=txn.type,
        date=txn.date,
        category_id=txn.category_id,
        user_id=txn.user_id,
        employee_name=txn.owner.name if txn.owner else None,
        created_at=txn.created_at,
    )


class SqlLedger:
    """Transactions and categories, with the store's row rules applied.

    Reads are open to every active profile. Transaction writes go through
    ``can_modify`` and category writes are admin-only; violations raise
    ``DataError`` with kind ``permission_denied``. The role used for those
    checks is the one stored on the actor's profile row, not ``actor.role``,
    so a demotion takes effect on the next call. Database work runs in the
    threadpool.
    """

    def __init__(self, session_factory: sessionmaker, actor: Actor) -> None:
        self.session_factory = session_factory
        self.actor = actor

    def _stored_profile(self, session: Session) -> Profile:
        profile = session.get(Profile, self.actor.id)
        if profile is None or profile.status != UserStatus.active:
            raise DataError.permission_denied("Inactive or unknown account")
        return profile

    def _require_admin(self, session: Session) -> Profile:
        profile = self._stored_profile(session)
        if not can_access_admin_page(profile.role):
            raise DataError.permission_denied("Only administrators manage categories")
        return profile

    def _category_for(
        self, session: Session, category_id: str, txn_type: TransactionType
    ) -> Category:
        category = session.get(Category, category_id)
        if category is None:
            raise DataError.not_found("Category")
        if category.type != txn_type:
            raise DataError.constraint("Category type mismatch")
        return category

    async def list_transactions(self) -> list[TransactionOut]:
        return await asyncio.to_thread(self._list_transactions)

    def _list_transactions(self) -> list[TransactionOut]:
        with session_scope(self.session_factory) as session:
            self._stored_profile(session)
            stmt = (
                select(Transaction)
                .options(joinedload(Transaction.owner))
                .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            )
            return [_to_out(txn) for txn in session.scalars(stmt).all()]

    async def upsert_transaction(
        self, data: TransactionIn, transaction_id: Optional[str] = None
    ) -> TransactionOut:
        out = await asyncio.to_thread(self._upsert_transaction, data, transaction_id)
        action = "created" if transaction_id is None else "updated"
        logger.info(f"transaction_{action}: id={out.id} actor={self.actor.id}")
        return out

    def _upsert_transaction(
        self, data: TransactionIn, transaction_id: Optional[str]
    ) -> TransactionOut:
        with session_scope(self.session_factory) as session:
            profile = self._stored_profile(session)
            self._category_for(session, data.category_id, data.type)
            if transaction_id is None:
                txn = Transaction(user_id=profile.id)
                session.add(txn)
            else:
                txn = session.get(Transaction, transaction_id)
                if txn is None:
                    raise DataError.not_found("Transaction")
                if not can_modify(profile.role, profile.id, txn.user_id):
                    raise DataError.permission_denied(
                        "You can only change your own transactions"
                    )
            txn.date = data.date
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.category_id = data.category_id
            txn.description = data.description.strip()
            session.flush()
            session.refresh(txn)
            return _to_out(txn)

    async def delete_transaction(self, transaction_id: str) -> None:
        await asyncio.to_thread(self._delete_transaction, transaction_id)
        logger.info(f"transaction_deleted: id={transaction_id} actor={self.actor.id}")

    def _delete_transaction(self, transaction_id: str) -> None:
        with session_scope(self.session_factory) as session:
            profile = self._stored_profile(session)
            txn = session.get(Transaction, transaction_id)
            if txn is None:
                raise DataError.not_found("Transaction")
            if not can_modify(profile.role, profile.id, txn.user_id):
                raise DataError.permission_denied(
                    "You can only delete your own transactions"
                )
            session.delete(txn)

    async def list_categories(self) -> list[CategoryOut]:
        return await asyncio.to_thread(self._list_categories)

    def _list_categories(self) -> list[CategoryOut]:
        with session_scope(self.session_factory) as session:
            self._stored_profile(session)
            stmt = select(Category).order_by(Category.type, Category.name)
            return [CategoryOut.model_validate(c) for c in session.scalars(stmt).all()]

    async def upsert_category(
        self, data: CategoryIn, category_id: Optional[str] = None
    ) -> CategoryOut:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        out = await asyncio.to_thread(self._upsert_category, name, data.type, category_id)
        logger.info(f"category_saved: id={out.id} actor={self.actor.id}")
        return out

    def _upsert_category(
        self, name: str, txn_type: TransactionType, category_id: Optional[str]
    ) -> CategoryOut:
        with session_scope(self.session_factory) as session:
            self._require_admin(session)
            duplicate = select(Category).where(
                Category.type == txn_type,
                func.lower(Category.name) == name.lower(),
            )
            if category_id is not None:
                duplicate = duplicate.where(Category.id != category_id)
            if session.scalar(duplicate):
                raise DataError.constraint("Category with this name already exists")
            if category_id is None:
                category = Category(name=name, type=txn_type)
                session.add(category)
            else:
                category = session.get(Category, category_id)
                if category is None:
                    raise DataError.not_found("Category")
                if category.type != txn_type and category.transactions:
                    raise DataError.constraint(
                        "Cannot change the type of a category that is in use"
                    )
                category.name = name
                category.type = txn_type
                category.updated_at = datetime.utcnow()
            session.flush()
            return CategoryOut.model_validate(category)

    async def delete_category(self, category_id: str) -> None:
        await asyncio.to_thread(self._delete_category, category_id)
        logger.info(f"category_deleted: id={category_id} actor={self.actor.id}")

    def _delete_category(self, category_id: str) -> None:
        with session_scope(self.session_factory) as session:
            self._require_admin(session)
            category = session.get(Category, category_id)
            if category is None:
                raise DataError.not_found("Category")
            in_use = session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            )
            if in_use:
                raise DataError.constraint("Category is used by existing transactions")
            session.delete(category)
