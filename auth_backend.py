import logging
from typing import Optional

from supabase.client import create_client

logger = logging.getLogger(__name__)


class SupabaseAuthenticator:
    """Verifies email/password credentials against Supabase auth."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    @classmethod
    def from_credentials(cls, supabase_url: str, supabase_key: str) -> "SupabaseAuthenticator":
        return cls(create_client(supabase_url, supabase_key))

    def authenticate(self, email: str, password: str) -> Optional[str]:
        """Return the user id for valid credentials, otherwise None."""
        try:
            auth_response = self.supabase.auth.sign_in_with_password({
                "email": email,
                "password": password
            })
        except Exception as e:
            logger.error(f"Login failed for {email}: {str(e)}")
            return None

        if not auth_response.user:
            logger.error("Login failed: No user in response")
            return None
        return str(auth_response.user.id)
