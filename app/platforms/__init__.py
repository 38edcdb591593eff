"""Integration with the jimeng and xyq web platforms."""

from app.platforms.auth import AuthContext, normalize_session_input, resolve_auth_context
from app.platforms.browser import BrowserSessionPool, SessionKey
from app.platforms.client import PlatformClient
from app.platforms.config import PLATFORMS, PlatformConfig, PlatformKey, get_platform
from app.platforms.upload import ImageUploader

__all__ = [
    "PLATFORMS",
    "AuthContext",
    "BrowserSessionPool",
    "ImageUploader",
    "PlatformClient",
    "PlatformConfig",
    "PlatformKey",
    "SessionKey",
    "get_platform",
    "normalize_session_input",
    "resolve_auth_context",
]
