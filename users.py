import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from config import Settings
from credits import CreditLedger
from errors import ConflictError, NotFoundError
from models import Summary, SummaryStatus, User, UserPlan
from schemas import UpdateProfileRequest, UserOut, UserStats
from summaries import start_of_month

logger = logging.getLogger(__name__)


def to_user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        name=user.name,
        avatar=user.avatar,
        plan=user.plan,
        credits=user.credits,
        email_verified=user.email_verified,
        supabase_id=user.supabase_id,
        created_at=user.created_at,
        updated_at=user.updated_at,
        last_login_at=user.last_login_at,
    )


class UserService:
    def __init__(self, session_factory: sessionmaker, ledger: CreditLedger, settings: Settings):
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings

    def _get(self, db, user_id: str) -> User:
        user = db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    def get_profile(self, user_id: str) -> UserOut:
        with self.session_factory() as db:
            return to_user_out(self._get(db, user_id))

    def get_by_email(self, email: str) -> Optional[UserOut]:
        with self.session_factory() as db:
            user = db.scalars(select(User).where(User.email == email.lower())).first()
            return to_user_out(user) if user is not None else None

    def update_profile(self, user_id: str, request: UpdateProfileRequest) -> UserOut:
        changes = request.model_dump(exclude_unset=True)
        with self.session_factory() as db:
            user = self._get(db, user_id)
            for field, value in changes.items():
                setattr(user, field, value)
            db.commit()
            db.refresh(user)
            logger.info("Profile updated", extra={"user_id": user_id, "fields": sorted(changes)})
            return to_user_out(user)

    def get_stats(self, user_id: str) -> UserStats:
        with self.session_factory() as db:
            user = self._get(db, user_id)
            total = db.scalar(select(func.count(Summary.id)).where(Summary.user_id == user_id))
            this_month = db.scalar(
                select(func.count(Summary.id)).where(
                    Summary.user_id == user_id,
                    Summary.status == SummaryStatus.COMPLETED,
                    Summary.created_at >= start_of_month(),
                )
            )

        allotment = self.settings.monthly_credits_for(user.plan)
        return UserStats(
            total_summaries=total,
            summaries_this_month=this_month,
            credits_used=max(0, allotment - user.credits),
            credits_remaining=user.credits,
            plan_status=user.plan,
            joined_date=user.created_at,
        )

    def add_credits(self, user_id: str, amount: int) -> int:
        return self.ledger.add_credits(user_id, amount)

    def deduct_credits(self, user_id: str, amount: int) -> int:
        return self.ledger.deduct_credits(user_id, amount)

    def upgrade_plan(self, user_id: str, plan: UserPlan) -> UserOut:
        with self.session_factory() as db:
            user = self._get(db, user_id)
            old_plan = user.plan
            if old_plan == plan:
                raise ConflictError(f"User is already on {plan.value} plan", code="PLAN_UNCHANGED")

            credits_added = 0
            if old_plan == UserPlan.FREE and plan == UserPlan.PREMIUM:
                credits_added = (
                    self.settings.premium_plan_monthly_credits - self.settings.free_plan_monthly_credits
                )

            user.plan = plan
            db.flush()
            if credits_added > 0:
                self.ledger.credit(db, user_id, credits_added)
            db.commit()
            db.refresh(user)

            logger.info(
                "User plan changed",
                extra={
                    "user_id": user_id,
                    "old_plan": old_plan.value,
                    "new_plan": plan.value,
                    "credits_added": credits_added,
                },
            )
            return to_user_out(user)

    def reset_monthly_credits(self) -> int:
        """Set every user's balance back to their plan's monthly allotment."""
        updated = 0
        with self.session_factory.begin() as db:
            for plan in UserPlan:
                result = db.execute(
                    update(User)
                    .where(User.plan == plan)
                    .values(credits=self.settings.monthly_credits_for(plan))
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount
        logger.info("Monthly credits reset", extra={"users_updated": updated})
        return updated

    def verify_email(self, user_id: str) -> UserOut:
        with self.session_factory() as db:
            user = self._get(db, user_id)
            user.email_verified = True
            db.commit()
            db.refresh(user)
            return to_user_out(user)

    def delete_user(self, user_id: str) -> None:
        with self.session_factory() as db:
            user = self._get(db, user_id)
            db.delete(user)
            db.commit()
        logger.info("User account deleted", extra={"user_id": user_id})
