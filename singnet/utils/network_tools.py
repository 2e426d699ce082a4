"""
Network utilities: outbound site availability checks
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional, List

import requests

from ..core.errors import NotFoundError
from ..core.types import CheckResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Site:
    name: str
    url: str


DEFAULT_SITES = [
    Site('ChatGPT', 'https://chat.openai.com'),
    Site('Gemini', 'https://gemini.google.com'),
    Site('Claude', 'https://claude.ai'),
    Site('Google', 'https://www.google.com'),
    Site('YouTube', 'https://www.youtube.com'),
    Site('Netflix', 'https://www.netflix.com'),
]

# Lowercase phrases that mark a geo-block page or a stub
BLOCK_PHRASES = (
    "isn't available",
    "not available in your",
    "not available in this",
    "service is not available",
    "service isn't available",
    "unavailable in your",
    "unavailable in this",
    "access restricted",
    "доступ ограничен",
    "недоступен",
    "не доступен",
    "в вашем регионе",
    "в этой стране",
    "georestrict",
    "blocked in your",
    "blocked in this",
    "sorry, we're having trouble",
    "content is not available",
    "video unavailable",
    "redirected you too many times",
    "connection refused",
    "check your connection",
    "something went wrong",
    "error code",
    "попробуйте позже",
    "временно недоступен",
)

MAX_BODY_CHECK = 128 * 1024
MIN_BODY_SIZE = 2000

BROWSER_HEADERS = {
    'User-Agent': (
        'Mozilla/5.0 (Windows NT 10.0; rv:131.0) Gecko/20100101 Firefox/131.0'
    ),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
}


class NetworkTools:
    """Network diagnostic and utility tools"""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: float = 10,
                 sites: Optional[List[Site]] = None):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sites = list(sites if sites is not None else DEFAULT_SITES)

    def find_site(self, name: str) -> Site:
        lower = name.strip().lower()
        for site in self.sites:
            if site.name.lower() == lower:
                return site
        raise NotFoundError(f"Unknown site: {name}")

    def check_sites(self, name: Optional[str] = None) -> List[CheckResult]:
        """
        Probe sites through the current network path

        Args:
            name: Only check the site with this name (case-insensitive)

        Raises:
            NotFoundError: name does not match a known site
        """
        sites = [self.find_site(name)] if name else self.sites
        return [self.check_site(site) for site in sites]

    def check_site(self, site: Site) -> CheckResult:
        """
        Heuristic check: a short body or a block phrase means the site
        is likely unavailable from this location
        """
        start = time.monotonic()
        try:
            with self.session.get(site.url, headers=BROWSER_HEADERS,
                                  timeout=self.timeout, allow_redirects=False,
                                  stream=True) as response:
                latency = int((time.monotonic() - start) * 1000)
                if not 200 <= response.status_code < 400:
                    return CheckResult(
                        site.name, site.url, False, latency,
                        f"HTTP {response.status_code} {response.reason or ''}".strip()
                    )
                body = self._read_limited(response)
        except requests.RequestException as e:
            latency = int((time.monotonic() - start) * 1000)
            logger.debug(f"Site check failed for {site.name}: {e}")
            return CheckResult(site.name, site.url, False, latency, str(e))

        if len(body) < MIN_BODY_SIZE:
            return CheckResult(
                site.name, site.url, False, latency,
                "unavailable (response too short, probably a stub page)"
            )

        text = body.decode('utf-8', errors='replace').lower()
        for phrase in BLOCK_PHRASES:
            if phrase in text:
                return CheckResult(
                    site.name, site.url, False, latency,
                    "unavailable (regional block or stub page)"
                )
        return CheckResult(site.name, site.url, True, latency)

    @staticmethod
    def _read_limited(response: requests.Response) -> bytes:
        chunks = []
        size = 0
        for chunk in response.iter_content(chunk_size=16 * 1024):
            chunks.append(chunk)
            size += len(chunk)
            if size >= MAX_BODY_CHECK:
                break
        return b''.join(chunks)[:MAX_BODY_CHECK]
