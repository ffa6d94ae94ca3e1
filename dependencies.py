from typing import Optional

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth_service import AuthService
from config import Settings
from errors import AuthError
from models import User
from rate_limit import RateLimiter
from summaries import SummaryService
from users import UserService

bearer_scheme = HTTPBearer(auto_error=False)


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_summary_service(request: Request) -> SummaryService:
    return request.app.state.summary_service


def get_user_service(request: Request) -> UserService:
    return request.app.state.user_service


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthError("Authorization token required", code="AUTH_REQUIRED")
    user = auth_service.authenticate(credentials.credentials)
    request.state.user_id = user.id
    return user


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "anonymous"


def _limiter(request: Request) -> Optional[RateLimiter]:
    if not request.app.state.settings.enable_rate_limiting:
        return None
    return request.app.state.rate_limiter


def rate_limit(rule_name: str):
    """Rate limit an authenticated route per user, with plan-aware caps."""

    def dependency(request: Request, user: User = Depends(get_current_user)) -> None:
        limiter = _limiter(request)
        if limiter is not None:
            limiter.check(rule_name, f"user:{user.id}", user.plan)

    return dependency


def ip_rate_limit(rule_name: str):
    """Rate limit a public route per client IP."""

    def dependency(request: Request) -> None:
        limiter = _limiter(request)
        if limiter is not None:
            limiter.check(rule_name, f"ip:{_client_ip(request)}")

    return dependency
