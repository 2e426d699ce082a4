"""
Client for the local HTTP API, used by the CLI
"""

from typing import Optional, Dict, Any, List

import requests


class ServiceError(Exception):
    """The service answered with an error"""

    def __init__(self, message: str, kind: str = 'error',
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code


class ServiceNotRunning(ServiceError):
    """Nothing is listening on the API address"""


class LocalAPIClient:
    """Client for sending commands to a running singnet service."""

    def __init__(self, base_url: str = 'http://127.0.0.1:8787',
                 timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        """Initialize client.

        Args:
            base_url: Address of the local API
            timeout: Request timeout in seconds; connect waits for the engine
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and return the decoded body.

        Raises:
            ServiceNotRunning: If the service is not reachable
            ServiceError: If the service reports a failure
        """
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(
                method, url, timeout=self.timeout, **kwargs
            )
        except requests.ConnectionError:
            raise ServiceNotRunning(
                f"Service not running at {self.base_url}. Start with: singnet serve"
            )
        except requests.Timeout:
            raise ServiceError("Timeout waiting for service response")
        except requests.RequestException as e:
            raise ServiceError(f"Communication error: {e}")

        try:
            data = response.json()
        except ValueError:
            raise ServiceError(
                f"Invalid response from service (HTTP {response.status_code})",
                status_code=response.status_code
            )

        if response.status_code >= 400:
            error = data.get('error', {}) if isinstance(data, dict) else {}
            raise ServiceError(
                error.get('message') or f"HTTP {response.status_code}",
                kind=error.get('kind', 'error'),
                status_code=response.status_code
            )
        return data

    def health(self) -> Dict:
        return self._request('GET', '/api/health')

    def status(self) -> Dict:
        return self._request('GET', '/api/status')

    def configs(self) -> List[Dict]:
        return self._request('GET', '/api/configs')

    def servers(self, config_id: str) -> List[str]:
        return self._request('GET', f'/api/configs/{config_id}/servers')

    def subscriptions(self) -> List[Dict]:
        return self._request('GET', '/api/subscriptions')

    def add_subscription(self, name: str, url: str) -> Dict:
        return self._request('POST', '/api/subscriptions',
                             json={'name': name, 'url': url})

    def refresh_subscription(self, subscription_id: str) -> Dict:
        return self._request('POST', f'/api/subscriptions/{subscription_id}/refresh')

    def refresh_all(self) -> Dict:
        return self._request('POST', '/api/subscriptions/refresh')

    def delete_subscription(self, subscription_id: str) -> Dict:
        return self._request('DELETE', f'/api/subscriptions/{subscription_id}')

    def settings(self) -> Dict:
        return self._request('GET', '/api/settings')

    def update_settings(self, partial: Dict[str, Any]) -> Dict:
        return self._request('PUT', '/api/settings', json=partial)

    def reset_settings(self) -> Dict:
        return self._request('POST', '/api/settings/reset')

    def connect(self, config_id: Optional[str] = None,
                server: Optional[str] = None) -> Dict:
        """Connect and wait until the engine is running or has failed."""
        return self._request('POST', '/api/connect',
                             json={'config_id': config_id, 'server': server})

    def disconnect(self) -> Dict:
        return self._request('POST', '/api/disconnect')

    def logs(self) -> List[str]:
        return self._request('GET', '/api/logs')

    def engine_status(self) -> Dict:
        return self._request('GET', '/api/singbox/status')

    def install_engine(self) -> Dict:
        return self._request('POST', '/api/singbox/install')

    def check_sites(self, name: Optional[str] = None) -> List[Dict]:
        params = {'name': name} if name else None
        return self._request('GET', '/api/sitecheck', params=params)
