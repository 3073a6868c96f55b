"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    close_db,
    get_engine,
    get_session,
    get_session_context,
    get_session_factory,
    init_db,
)
from .logging import configure_logging
from .security import (
    TokenPayload,
    create_access_token,
    decode_token,
    hashes_match,
    sha256_hex,
    sign_value,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "configure_logging",
    # Database
    "get_engine",
    "get_session_factory",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Security
    "TokenPayload",
    "create_access_token",
    "decode_token",
    "hashes_match",
    "sha256_hex",
    "sign_value",
]
