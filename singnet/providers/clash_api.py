"""
Traffic telemetry from the engine's Clash-compatible API
"""

from typing import Optional, Tuple

import requests

from ..core.errors import NetworkError


class ClashAPI:
    """Minimal client for the /connections endpoint"""

    def __init__(self, base_url: str, secret: str = '',
                 session: Optional[requests.Session] = None,
                 timeout: float = 2):
        self.base_url = base_url.rstrip('/')
        self.secret = secret
        self.session = session or requests.Session()
        self.timeout = timeout

    def traffic_totals(self) -> Tuple[int, int]:
        """
        Cumulative bytes moved by the running engine

        Returns:
            Tuple of (download, upload)

        Raises:
            NetworkError: API unreachable or malformed response
        """
        headers = {}
        if self.secret:
            headers['Authorization'] = f'Bearer {self.secret}'

        try:
            response = self.session.get(
                f'{self.base_url}/connections',
                headers=headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
            return int(data.get('downloadTotal', 0)), int(data.get('uploadTotal', 0))
        except (requests.RequestException, ValueError, AttributeError, TypeError) as e:
            raise NetworkError(f"Traffic telemetry unavailable: {e}") from e
