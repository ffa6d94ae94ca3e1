"""
Federated identity through Supabase Auth.

Every call is best effort: failures are logged and reported as a negative
result so local authentication keeps working when Supabase is down or not
configured.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from supabase import Client, create_client

from config import Settings

logger = logging.getLogger(__name__)


@dataclass
class FederatedIdentity:
    subject_id: str
    email: Optional[str]
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_confirmed: bool = False


class SupabaseIdentityProvider:
    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.settings = settings
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None or self.settings.supabase_enabled

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(self.settings.supabase_url, self.settings.supabase_service_role_key)
        return self._client

    def verify_token(self, token: str) -> Optional[FederatedIdentity]:
        if not self.enabled:
            return None
        try:
            response = self.client.auth.get_user(token)
        except Exception as e:
            logger.warning("Supabase token verification failed", extra={"error": str(e)})
            return None
        if not response or not response.user:
            return None

        user = response.user
        metadata = user.user_metadata or {}
        return FederatedIdentity(
            subject_id=user.id,
            email=user.email,
            name=metadata.get("name"),
            avatar_url=metadata.get("avatar_url"),
            email_confirmed=bool(user.email_confirmed_at),
        )

    def create_user(self, email: str, password: str) -> Optional[str]:
        """Create the federated account; returns its subject id or None."""
        if not self.enabled:
            return None
        try:
            response = self.client.auth.admin.create_user(
                {"email": email, "password": password, "email_confirm": False}
            )
        except Exception as e:
            logger.warning(
                "Supabase user creation failed, continuing with local auth", extra={"error": str(e)}
            )
            return None
        return response.user.id if response and response.user else None

    def sign_in(self, email: str, password: str) -> bool:
        if not self.enabled:
            return False
        # Password sign-in stores a session on the client, keep it off the admin client
        key = self.settings.supabase_anon_key or self.settings.supabase_service_role_key
        try:
            response = create_client(self.settings.supabase_url, key).auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as e:
            logger.warning("Supabase sign-in failed", extra={"error": str(e)})
            return False
        return bool(response and response.user)

    def send_password_reset(self, email: str, redirect_to: str) -> bool:
        if not self.enabled:
            return False
        try:
            self.client.auth.reset_password_for_email(email, {"redirect_to": redirect_to})
        except Exception as e:
            logger.warning("Supabase password reset failed", extra={"error": str(e)})
            return False
        return True
