"""Configuration for a harvest run."""
import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Mapping, Optional
from urllib.parse import urlparse

from harvester.errors import ConfigurationError
from harvester.timeout_guard import GUARD_POOL_SIZE

logger = logging.getLogger(__name__)

DEFAULT_LINK_TEMPLATE = "/event_detail.php?event_id={event_id}&occur={occur}"


def to_api_url(value: str) -> str:
    """
    Normalize a hostname, site URL or API URL to the api.php endpoint.

    Args:
        value: e.g. "mychurch.ccbchurch.com" or "https://mychurch.ccbchurch.com"

    Returns:
        Full api.php URL, or empty string if the value cannot be parsed
    """
    trimmed = (value or '').strip()
    if not trimmed:
        return ''

    with_scheme = trimmed if re.match(r'^[a-z]+://', trimmed, re.I) else f"https://{trimmed}"
    parsed = urlparse(with_scheme)
    if not parsed.netloc:
        return ''

    path = parsed.path.rstrip('/')
    if not re.search(r'/api\.php$', path, re.I):
        path = f"{path}/api.php"
    return f"{parsed.scheme}://{parsed.netloc}{path}"


@dataclass(frozen=True)
class HarvestConfig:
    """Immutable settings for one harvest run."""
    base_url: str
    username: str
    password: str
    page_size: int = 200
    concurrency: int = 6
    enrich_concurrency: int = 3
    timeout: float = 20.0
    max_pages: int = 200
    link_template: str = DEFAULT_LINK_TEMPLATE

    @property
    def api_url(self) -> str:
        return to_api_url(self.base_url)

    @property
    def site_url(self) -> str:
        """Base of the upstream web UI, used for deep links."""
        return re.sub(r'/api\.php$', '', self.api_url, flags=re.I)

    def validate(self) -> 'HarvestConfig':
        """
        Check the settings before any network activity.

        Raises:
            ConfigurationError: If credentials, base URL or limits are invalid
        """
        missing = [
            name for name, value in (
                ('base_url', self.api_url),
                ('username', self.username),
                ('password', self.password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing CCB configuration: {', '.join(missing)}"
            )

        for name in ('page_size', 'concurrency', 'enrich_concurrency', 'max_pages'):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.concurrency + self.enrich_concurrency > GUARD_POOL_SIZE:
            raise ConfigurationError(
                f"concurrency + enrich_concurrency must not exceed {GUARD_POOL_SIZE}"
            )
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        return self

    def with_overrides(
        self,
        page_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> 'HarvestConfig':
        """Return a copy with per-run overrides applied."""
        changes = {
            key: value for key, value in (
                ('page_size', page_size),
                ('concurrency', concurrency),
                ('timeout', timeout),
            )
            if value is not None
        }
        return replace(self, **changes).validate() if changes else self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'HarvestConfig':
        """
        Build configuration from environment variables.

        CCB_BASE_URL wins over CCB_SUBDOMAIN; a bare subdomain ("mychurch")
        expands to https://mychurch.ccbchurch.com.

        Raises:
            ConfigurationError: If required variables are missing or malformed
        """
        env = os.environ if environ is None else environ

        base_url = env.get('CCB_BASE_URL', '').strip()
        subdomain = env.get('CCB_SUBDOMAIN', '').strip()
        if not base_url and subdomain:
            if '.' in subdomain or '/' in subdomain:
                base_url = subdomain
            else:
                base_url = f"https://{subdomain}.ccbchurch.com"

        try:
            config = cls(
                base_url=base_url,
                username=env.get('CCB_API_USERNAME', ''),
                password=env.get('CCB_API_PASSWORD', ''),
                page_size=int(env.get('CCB_PAGE_SIZE', '200')),
                concurrency=int(env.get('CCB_CONCURRENCY', '6')),
                enrich_concurrency=int(env.get('CCB_ENRICH_CONCURRENCY', '3')),
                timeout=float(env.get('CCB_TIMEOUT_SECONDS', '20')),
                max_pages=int(env.get('CCB_MAX_PAGES', '200')),
                link_template=env.get('CCB_LINK_TEMPLATE') or DEFAULT_LINK_TEMPLATE
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric CCB setting: {e}") from e

        logger.debug(f"Loaded CCB configuration for {config.api_url or '<unset>'}")
        return config.validate()
