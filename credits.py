"""
Credit ledger.

All balance changes go through conditional UPDATE statements so a balance can
never go negative, even when two requests debit the same account at once.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from errors import InsufficientCreditsError, InvalidAmountError, NotFoundError
from models import User

logger = logging.getLogger(__name__)


class CreditLedger:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # In-transaction primitives. The caller owns the session and commits.

    def credit(self, db: Session, user_id: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError()
        result = db.execute(
            update(User).where(User.id == user_id).values(credits=User.credits + amount)
        )
        if result.rowcount == 0:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")

    def debit(self, db: Session, user_id: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError()
        result = db.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount)
        )
        if result.rowcount == 0:
            exists = db.execute(select(User.id).where(User.id == user_id)).first()
            if exists is None:
                raise NotFoundError("User not found", code="USER_NOT_FOUND")
            raise InsufficientCreditsError(credits_needed=amount)

    def balance(self, db: Session, user_id: str) -> int:
        value = db.execute(select(User.credits).where(User.id == user_id)).scalar_one_or_none()
        if value is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return value

    # Committing wrappers

    def add_credits(self, user_id: str, amount: int) -> int:
        with self.session_factory.begin() as db:
            self.credit(db, user_id, amount)
            new_balance = self.balance(db, user_id)
        logger.info("Credits added", extra={"user_id": user_id, "amount": amount, "balance": new_balance})
        return new_balance

    def deduct_credits(self, user_id: str, amount: int) -> int:
        with self.session_factory.begin() as db:
            self.debit(db, user_id, amount)
            new_balance = self.balance(db, user_id)
        logger.info("Credits deducted", extra={"user_id": user_id, "amount": amount, "balance": new_balance})
        return new_balance
