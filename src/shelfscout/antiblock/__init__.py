"""Proxy and user agent rotation."""

from .identity_rotator import DEFAULT_USER_AGENTS, IdentityRotator
from .proxy_rotator import Proxy, ProxyRotator

__all__ = ["DEFAULT_USER_AGENTS", "IdentityRotator", "Proxy", "ProxyRotator"]
