"""
Chunk triggers.

Once a chunk completes, the scheduler asks a trigger to get the next one
going. Triggers are fire-and-forget: a failed trigger never undoes the
completed chunk, and the stale-recovery poll picks up anything left behind.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
import queue
import threading

import jwt
import requests

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
TOKEN_AUDIENCE = "recon-chunk-processor"


def issue_trigger_token(secret: str, audit_id: str, ttl_seconds: int = 300,
                        now: Optional[datetime] = None) -> str:
    """Sign a short-lived token authorizing one process-chunk call for an audit."""
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": audit_id,
        "aud": TOKEN_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def decode_trigger_token(token: str, secret: str) -> Dict[str, Any]:
    """Verify signature, audience and expiry; raises jwt.InvalidTokenError otherwise."""
    return jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM], audience=TOKEN_AUDIENCE)


class ChunkTrigger(ABC):
    """Starts processing of an audit's next pending chunk."""

    @abstractmethod
    def fire(self, audit_id: str) -> None:
        pass


class NullTrigger(ChunkTrigger):
    """Does nothing; work advances only when someone calls process_next or poll."""

    def fire(self, audit_id: str) -> None:
        logger.debug(f"[TRIGGER] Null trigger for {audit_id}")


class QueueTrigger(ChunkTrigger):
    """
    In-process channel of audit ids waiting for work.

    fire() only enqueues; drain() runs the scheduler until the channel is
    empty. Chunks fired while draining are picked up in the same drain.
    """

    def __init__(self):
        self._channel: "queue.Queue[str]" = queue.Queue()

    def fire(self, audit_id: str) -> None:
        self._channel.put(audit_id)
        logger.debug(f"[TRIGGER] Queued next chunk for {audit_id}")

    def pending(self) -> int:
        return self._channel.qsize()

    def drain(self, scheduler, max_items: Optional[int] = None) -> int:
        """
        Process queued work through the scheduler.

        Args:
            scheduler: ChunkScheduler whose process_next handles each item
            max_items: Stop after this many items; None drains everything

        Returns:
            Number of chunks processed
        """
        processed = 0
        while max_items is None or processed < max_items:
            try:
                audit_id = self._channel.get_nowait()
            except queue.Empty:
                break
            if scheduler.process_next(audit_id) is not None:
                processed += 1
            self._channel.task_done()
        return processed


class HttpTrigger(ChunkTrigger):
    """POSTs to the process-chunk endpoint on a background thread."""

    def __init__(self, endpoint_url: str, signing_secret: Optional[str] = None,
                 token_ttl_seconds: int = 300, timeout: float = 10.0, session=None):
        self.endpoint_url = endpoint_url
        self.signing_secret = signing_secret
        self.token_ttl_seconds = token_ttl_seconds
        self.timeout = timeout
        self.session = session or requests

    def _headers(self, audit_id: str) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.signing_secret:
            token = issue_trigger_token(self.signing_secret, audit_id, self.token_ttl_seconds)
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def send(self, audit_id: str) -> bool:
        """Make the request synchronously. Returns True on a 2xx response."""
        try:
            response = self.session.post(
                self.endpoint_url,
                json={'audit_id': audit_id},
                headers=self._headers(audit_id),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[TRIGGER] Network error triggering chunk for {audit_id}: {e}")
            return False

        if 200 <= response.status_code < 300:
            logger.info(f"[TRIGGER] Triggered next chunk for {audit_id}")
            return True

        logger.error(
            f"[TRIGGER] Chunk trigger for {audit_id} failed. "
            f"Status: {response.status_code}, Response: {response.text[:500]}"
        )
        return False

    def fire(self, audit_id: str) -> None:
        thread = threading.Thread(target=self.send, args=(audit_id,), daemon=True)
        thread.start()


def build_trigger(trigger_config) -> ChunkTrigger:
    """Pick the trigger described by a TriggerConfig."""
    if trigger_config.is_http():
        return HttpTrigger(
            trigger_config.endpoint_url,
            signing_secret=trigger_config.signing_secret,
            token_ttl_seconds=trigger_config.token_ttl_seconds,
            timeout=trigger_config.request_timeout_seconds,
        )
    return QueueTrigger()
