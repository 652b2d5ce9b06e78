"""Duplicate site detection.

A copy of the live site (staging, local clone) must never charge
customers automatically, so subscriptions there renew manually.
"""

from typing import Optional
from urllib.parse import urlparse

from billing_lifecycle.models.settings import StagingSettings


def _site_identity(url: str) -> str:
    # Scheme is ignored so http/https copies of the same site match
    parsed = urlparse(url if "://" in url else f"//{url}")
    return f"{parsed.netloc.lower()}{parsed.path.rstrip('/')}"


def is_duplicate_site(site_url: Optional[str], live_site_url: Optional[str]) -> bool:
    """Check whether the current site is a copy of the live site.

    Args:
        site_url: URL of the running site
        live_site_url: URL recorded for the live site

    Returns:
        True if both URLs are known and point at different sites

    Examples:
        >>> is_duplicate_site("https://staging.example.com", "https://example.com")
        True
        >>> is_duplicate_site("http://example.com/", "https://example.com")
        False
    """
    if not site_url or not live_site_url:
        return False
    return _site_identity(site_url) != _site_identity(live_site_url)


def forces_manual_renewal(settings: StagingSettings) -> bool:
    """Whether every subscription must renew manually on this site."""
    return settings.force_manual or is_duplicate_site(settings.site_url, settings.live_site_url)
