import calendar
import datetime
import logging
import uuid

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from auth_utils import (
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    get_password_hash,
    verify_password,
)
from config import Settings
from errors import AuthError, ConflictError, NotFoundError
from identity import FederatedIdentity, SupabaseIdentityProvider
from models import RefreshToken, User, UserPlan
from schemas import LoginRequest, LoginResponse, RegisterRequest, UserOut
from users import to_user_out

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"


class AuthService:
    """
    Local email/password accounts with JWT sessions, plus Supabase tokens.

    Refresh tokens are single use: presenting one revokes it and issues a
    replacement in the same transaction.
    """

    def __init__(self, session_factory: sessionmaker, settings: Settings, identity_provider: SupabaseIdentityProvider):
        self.session_factory = session_factory
        self.settings = settings
        self.identity = identity_provider

    def _issue_tokens(self, db: Session, user: User) -> LoginResponse:
        access_token, access_expires = create_access_token(
            {"sub": user.id, "email": user.email, "plan": user.plan.value}, self.settings
        )
        token_id = str(uuid.uuid4())
        refresh_token, refresh_expires = create_refresh_token(user.id, token_id, self.settings)
        db.add(RefreshToken(id=token_id, token=refresh_token, user_id=user.id, expires_at=refresh_expires))
        return LoginResponse(
            user=to_user_out(user),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=calendar.timegm(access_expires.timetuple()) * 1000,
        )

    def register(self, request: RegisterRequest) -> LoginResponse:
        email = request.email.lower()
        with self.session_factory() as db:
            if db.scalars(select(User).where(User.email == email)).first() is not None:
                raise ConflictError("User already exists with this email", code="USER_EXISTS")

            supabase_id = self.identity.create_user(email, request.password)

            user = User(
                email=email,
                hashed_password=get_password_hash(request.password),
                name=request.name,
                plan=UserPlan.FREE,
                credits=self.settings.free_plan_monthly_credits,
                supabase_id=supabase_id,
                email_verified=False,
                last_login_at=datetime.datetime.utcnow(),
            )
            db.add(user)
            try:
                db.flush()
                response = self._issue_tokens(db, user)
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError("User already exists with this email", code="USER_EXISTS")

        logger.info("User registered", extra={"user_id": response.user.id})
        return response

    def login(self, request: LoginRequest) -> LoginResponse:
        email = request.email.lower()
        with self.session_factory() as db:
            user = db.scalars(select(User).where(User.email == email)).first()
            if user is None:
                raise AuthError(INVALID_CREDENTIALS, code="INVALID_CREDENTIALS")

            if user.hashed_password:
                valid = verify_password(request.password, user.hashed_password)
            elif user.supabase_id:
                # Federated-only account, Supabase holds the password
                valid = self.identity.sign_in(email, request.password)
            else:
                valid = False

            if not valid:
                logger.warning("Login rejected", extra={"user_id": user.id})
                raise AuthError(INVALID_CREDENTIALS, code="INVALID_CREDENTIALS")

            user.last_login_at = datetime.datetime.utcnow()
            response = self._issue_tokens(db, user)
            db.commit()

        logger.info("User logged in", extra={"user_id": response.user.id})
        return response

    def refresh(self, refresh_token: str) -> LoginResponse:
        payload = decode_refresh_token(refresh_token, self.settings)
        if payload is None:
            raise AuthError(INVALID_REFRESH_TOKEN, code="INVALID_REFRESH_TOKEN")

        with self.session_factory() as db:
            revoked = db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.id == payload["jti"],
                    RefreshToken.token == refresh_token,
                    RefreshToken.revoked.is_(False),
                    RefreshToken.expires_at > datetime.datetime.utcnow(),
                )
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            if revoked.rowcount != 1:
                db.rollback()
                logger.warning("Refresh token rejected", extra={"token_id": payload["jti"]})
                raise AuthError(INVALID_REFRESH_TOKEN, code="INVALID_REFRESH_TOKEN")

            user = db.get(User, payload["sub"])
            if user is None:
                db.rollback()
                raise AuthError(INVALID_REFRESH_TOKEN, code="INVALID_REFRESH_TOKEN")

            response = self._issue_tokens(db, user)
            db.commit()
        return response

    def logout(self, user_id: str, refresh_token: str) -> None:
        with self.session_factory.begin() as db:
            db.execute(
                update(RefreshToken)
                .where(RefreshToken.token == refresh_token, RefreshToken.user_id == user_id)
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
        logger.info("User logged out", extra={"user_id": user_id})

    def revoke_all_tokens(self, user_id: str) -> int:
        with self.session_factory.begin() as db:
            result = db.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
        logger.info("All tokens revoked", extra={"user_id": user_id, "count": result.rowcount})
        return result.rowcount

    def get_current_user(self, user_id: str) -> UserOut:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", code="USER_NOT_FOUND")
            return to_user_out(user)

    def forgot_password(self, email: str) -> None:
        """Start a password reset. The outcome is the same whether or not the account exists."""
        email = email.lower()
        with self.session_factory() as db:
            user = db.scalars(select(User).where(User.email == email)).first()
        if user is None:
            return

        if user.supabase_id and self.identity.send_password_reset(
            email, f"{self.settings.api_base_url}/auth/reset-password"
        ):
            logger.info("Password reset email sent", extra={"user_id": user.id})
            return
        logger.info("Password reset requested", extra={"user_id": user.id})

    def authenticate(self, token: str) -> User:
        """Resolve a bearer token (local JWT first, then Supabase) to a user."""
        payload = decode_access_token(token, self.settings)
        if payload is not None:
            with self.session_factory() as db:
                user = db.get(User, payload["sub"])
            if user is not None:
                return user

        identity = self.identity.verify_token(token)
        if identity is None:
            raise AuthError("Invalid or expired token", code="INVALID_TOKEN")
        return self._resolve_federated(identity)

    def _resolve_federated(self, identity: FederatedIdentity) -> User:
        with self.session_factory() as db:
            user = db.scalars(select(User).where(User.supabase_id == identity.subject_id)).first()
            if user is not None:
                return user
            if not identity.email:
                raise AuthError("Invalid or expired token", code="INVALID_TOKEN")

            email = identity.email.lower()
            user = db.scalars(select(User).where(User.email == email)).first()
            if user is not None:
                # Only a confirmed address may claim an account, and never one already linked
                if not identity.email_confirmed or user.supabase_id is not None:
                    logger.warning(
                        "Federated token rejected for existing email",
                        extra={"user_id": user.id, "email_confirmed": identity.email_confirmed},
                    )
                    raise AuthError("Invalid or expired token", code="INVALID_TOKEN")
                user.supabase_id = identity.subject_id
                user.email_verified = True
                action = "linked"
            else:
                user = User(
                    email=email,
                    name=identity.name,
                    avatar=identity.avatar_url,
                    plan=UserPlan.FREE,
                    credits=self.settings.free_plan_monthly_credits,
                    supabase_id=identity.subject_id,
                    email_verified=identity.email_confirmed,
                    last_login_at=datetime.datetime.utcnow(),
                )
                db.add(user)
                action = "provisioned"

            try:
                db.commit()
            except IntegrityError:
                # Provisioned concurrently by another request
                db.rollback()
                user = db.scalars(select(User).where(User.supabase_id == identity.subject_id)).first()
                if user is None:
                    raise AuthError("Invalid or expired token", code="INVALID_TOKEN")
                return user

            db.refresh(user)
        logger.info("Federated user " + action, extra={"user_id": user.id})
        return user

    def cleanup_expired_tokens(self) -> int:
        with self.session_factory.begin() as db:
            result = db.execute(
                delete(RefreshToken)
                .where(or_(RefreshToken.expires_at < datetime.datetime.utcnow(), RefreshToken.revoked.is_(True)))
                .execution_options(synchronize_session=False)
            )
        logger.info("Expired tokens cleaned up", extra={"count": result.rowcount})
        return result.rowcount
