"""
Subscription synchronizer: fetches remote sources into server lists
"""

import copy
import threading
import time
import uuid
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Dict, List, Callable

import requests

from .errors import (
    ValidationError, NotFoundError, NetworkError, ConflictError, VPNManagerError
)
from .subscription_parser import (
    parse_subscription, parse_userinfo_expiry, SubscriptionParseError
)
from .types import Subscription
from ..utils.persistence import read_json, write_json

logger = logging.getLogger(__name__)


class _Flight:
    """Outcome of one in-flight refresh, shared with callers that join it"""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[Subscription] = None
        self.error: Optional[BaseException] = None


class SubscriptionManager:
    """Owns subscriptions and keeps their server lists in sync"""

    def __init__(self, store_path: Path,
                 session: Optional[requests.Session] = None,
                 fetch_timeout: float = 20,
                 user_agent: str = 'singnet/1.0',
                 max_workers: int = 4):
        self.store_path = Path(store_path)
        self.session = session or requests.Session()
        self.fetch_timeout = fetch_timeout
        self.user_agent = user_agent
        self.max_workers = max(1, int(max_workers))

        self._lock = threading.RLock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._inflight: Dict[str, _Flight] = {}
        self._callbacks: Dict[str, List[Callable]] = {
            'changed': [],
            'removed': [],
        }
        self._load()

    def _load(self):
        data = read_json(self.store_path, default={}) or {}
        for item in data.get('subscriptions', []):
            try:
                subscription = Subscription.from_dict(item)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping corrupt subscription record: {e}")
                continue
            self._subscriptions[subscription.id] = subscription
        logger.debug(f"Loaded {len(self._subscriptions)} subscriptions")

    def _save(self):
        records = [
            s.to_dict(include_servers=True)
            for s in self._subscriptions.values()
        ]
        write_json(self.store_path, {'subscriptions': records})

    def register_callback(self, event: str, callback: Callable):
        """Register event callback ('changed' or 'removed')"""
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _notify_callbacks(self, event: str, *args):
        for callback in self._callbacks.get(event, []):
            callback(*args)

    def list(self) -> List[Subscription]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._subscriptions.values()]

    def get(self, subscription_id: str) -> Subscription:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise NotFoundError(
                    f"Subscription not found: {subscription_id}"
                )
            return copy.deepcopy(subscription)

    def add(self, name: str, url: str) -> Subscription:
        """
        Create a subscription and synchronize it once

        A failed initial synchronization is recorded on the subscription
        and does not undo its creation.
        """
        name = (name or '').strip()
        url = (url or '').strip()
        if not name:
            raise ValidationError("Subscription name is required")
        if not url:
            raise ValidationError("Subscription URL is required")
        if not url.lower().startswith(('http://', 'https://')):
            raise ValidationError("Subscription URL must be http(s)")

        subscription = Subscription(id=uuid.uuid4().hex, name=name, url=url)
        with self._lock:
            for existing in self._subscriptions.values():
                if existing.url == url:
                    raise ConflictError(
                        f"Subscription {existing.name} already uses this URL"
                    )
            self._subscriptions[subscription.id] = subscription
            try:
                self._save()
            except VPNManagerError:
                del self._subscriptions[subscription.id]
                raise
        logger.info(f"Subscription added: {name} ({subscription.id})")

        try:
            return self.refresh(subscription.id)
        except NetworkError as e:
            logger.warning(f"Initial sync of {name} failed: {e.message}")
            return self.get(subscription.id)

    def refresh(self, subscription_id: str) -> Subscription:
        """
        Fetch and parse the subscription source

        Concurrent calls for the same id join the in-flight fetch.

        Raises:
            NotFoundError: unknown id
            NetworkError: fetch or parse failed (recorded as last_error)
        """
        with self._lock:
            if subscription_id not in self._subscriptions:
                raise NotFoundError(
                    f"Subscription not found: {subscription_id}"
                )
            flight = self._inflight.get(subscription_id)
            owner = flight is None
            if owner:
                flight = _Flight()
                self._inflight[subscription_id] = flight
            url = self._subscriptions[subscription_id].url

        if not owner:
            logger.debug(f"Joining in-flight refresh of {subscription_id}")
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return copy.deepcopy(flight.result)

        try:
            flight.result = self._synchronize(subscription_id, url)
            return copy.deepcopy(flight.result)
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(subscription_id, None)
            flight.done.set()

    def refresh_all(self) -> Dict[str, Optional[str]]:
        """Refresh every subscription; returns id -> error message or None"""
        ids = [s.id for s in self.list()]
        results: Dict[str, Optional[str]] = {}
        if not ids:
            return results

        def run(subscription_id: str) -> Optional[str]:
            try:
                self.refresh(subscription_id)
                return None
            except VPNManagerError as e:
                return e.message

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(ids)),
            thread_name_prefix='SubRefresh'
        ) as pool:
            for subscription_id, error in zip(ids, pool.map(run, ids)):
                results[subscription_id] = error

        failed = sum(1 for error in results.values() if error)
        logger.info(f"Refreshed {len(ids)} subscriptions, {failed} failed")
        return results

    def remove(self, subscription_id: str) -> Subscription:
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            if subscription is None:
                raise NotFoundError(
                    f"Subscription not found: {subscription_id}"
                )
            try:
                self._save()
            except VPNManagerError:
                self._subscriptions[subscription_id] = subscription
                raise
        logger.info(f"Subscription removed: {subscription.name}")
        self._notify_callbacks('removed', subscription_id)
        return subscription

    def _fetch(self, url: str):
        response = self.session.get(
            url,
            timeout=self.fetch_timeout,
            headers={'User-Agent': self.user_agent},
        )
        response.raise_for_status()
        return response.text, response.headers

    def _synchronize(self, subscription_id: str, url: str) -> Subscription:
        try:
            body, headers = self._fetch(url)
        except requests.RequestException as e:
            raise self._record_error(subscription_id, f"Fetch failed: {e}") from e

        try:
            servers = parse_subscription(body)
        except SubscriptionParseError as e:
            raise self._record_error(subscription_id, f"Parse failed: {e}") from e
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            logger.exception(f"Unexpected parser failure for {subscription_id}")
            raise self._record_error(
                subscription_id, f"Parse failed: malformed subscription ({e})"
            ) from e

        expires_at = parse_userinfo_expiry(
            headers.get('subscription-userinfo')
        )

        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise NotFoundError(
                    f"Subscription removed during refresh: {subscription_id}"
                )
            updated = copy.deepcopy(subscription)
            updated.servers = servers
            updated.last_error = None
            updated.updated_at = time.time()
            if expires_at is not None:
                updated.expires_at = expires_at
            self._subscriptions[subscription_id] = updated
            try:
                self._save()
            except VPNManagerError:
                self._subscriptions[subscription_id] = subscription
                raise
            result = copy.deepcopy(updated)

        logger.info(
            f"Subscription {updated.name} synchronized: {len(servers)} servers"
        )
        self._notify_callbacks('changed', subscription_id)
        return result

    def _record_error(self, subscription_id: str, message: str) -> NetworkError:
        """Store last_error, keep the previous list"""
        logger.warning(f"Subscription {subscription_id}: {message}")
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None:
                subscription.last_error = message
                self._save()
        return NetworkError(message)
