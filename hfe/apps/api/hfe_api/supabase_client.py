"""Supabase client configuration (authentication identity provider).

SECURITY NOTICE:
- SB_SECRET_KEY is server-only (NEVER exposed to clients)
- SB_PUBLISHABLE_KEY validates caller JWTs (respects RLS)
- The admin client (SECRET_KEY) is used only to delete an auth identity
  during account deletion

KEY NAMING TRANSITION:
- New Supabase UI (2024+): SB_PUBLISHABLE_KEY / SB_SECRET_KEY
- Legacy (pre-2024): SUPABASE_ANON_KEY / SUPABASE_SERVICE_ROLE_KEY
- Falls back to legacy names if new names not set
"""

import logging
import os
from functools import lru_cache

from supabase import Client, create_client

from hfe_api.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _first_env(primary: str, legacy: str) -> str:
    key = os.getenv(primary)
    if key:
        return key

    key = os.getenv(legacy)
    if key:
        logger.info(f"Using legacy {legacy} (consider migrating to {primary})")
        return key

    raise ConfigurationError(
        "Authentication temporarily unavailable",
        log_detail=f"Neither {primary} nor {legacy} environment variable is set",
    )


@lru_cache(maxsize=1)
def get_supabase_url() -> str:
    """Supabase project URL (https://[project_ref].supabase.co).

    Raises:
        ConfigurationError: If SUPABASE_URL not set
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise ConfigurationError(
            "Authentication temporarily unavailable",
            log_detail="SUPABASE_URL environment variable not set",
        )
    return url


@lru_cache(maxsize=1)
def get_supabase_api_key() -> str:
    """Publishable key: SB_PUBLISHABLE_KEY, then legacy SUPABASE_ANON_KEY."""
    return _first_env("SB_PUBLISHABLE_KEY", "SUPABASE_ANON_KEY")


@lru_cache(maxsize=1)
def get_supabase_secret_key() -> str:
    """Secret key: SB_SECRET_KEY, then legacy SUPABASE_SERVICE_ROLE_KEY.

    Bypasses RLS. NEVER expose this to clients.
    """
    return _first_env("SB_SECRET_KEY", "SUPABASE_SERVICE_ROLE_KEY")


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Supabase client for validating caller sessions.

    Raises:
        ConfigurationError: If environment variables not set
    """
    url = get_supabase_url()
    api_key = get_supabase_api_key()

    logger.info(
        "Initializing Supabase client",
        extra={"supabase_url": url, "key_type": "publishable"},
    )
    return create_client(url, api_key)


@lru_cache(maxsize=1)
def get_supabase_admin_client() -> Client:
    """Supabase admin client (SECRET_KEY) for deleting auth identities.

    Raises:
        ConfigurationError: If environment variables not set
    """
    url = get_supabase_url()
    secret_key = get_supabase_secret_key()

    logger.info(
        "Initializing Supabase admin client",
        extra={"supabase_url": url, "key_type": "secret"},
    )
    return create_client(url, secret_key)
