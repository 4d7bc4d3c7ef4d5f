import logging
import threading
import time
import traceback
from typing import Any, Dict, Optional

import requests

from core_config import AlertsConfig

logger = logging.getLogger(__name__)


def post_error(
    base_url: str,
    payload: Dict[str, Any],
    *,
    api_key: Optional[str] = None,
    timeout: float = 5.0,
    session: Any = None,
) -> None:
    """POST ``payload`` to ``{base_url}/internal/errors``; never raises."""
    url = base_url.rstrip("/") + "/internal/errors"
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["X-Internal-Key"] = api_key
    poster = session.post if session is not None else requests.post
    try:
        poster(url, json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        logger.debug("Error report to %s failed: %s", url, exc)


class ErrorReporter:
    """Fire-and-forget error reporting with per-location cooldown."""

    def __init__(
        self,
        base_url: str,
        *,
        service: str = "mtf-runner",
        api_key: Optional[str] = None,
        cooldown_sec: float = 0.0,
        timeout: float = 5.0,
        enabled: bool = True,
        background: bool = True,
        session: Any = None,
    ) -> None:
        self.base_url = base_url
        self.service = service
        self.api_key = api_key
        self.cooldown_sec = float(cooldown_sec)
        self.timeout = float(timeout)
        self.enabled = enabled
        self.background = background
        self.session = session
        self._last_sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: AlertsConfig) -> "ErrorReporter":
        return cls(
            cfg.base_url,
            service=cfg.service,
            api_key=cfg.api_key,
            cooldown_sec=cfg.cooldown_s,
            timeout=cfg.timeout_s,
            enabled=cfg.enabled,
        )

    def _allowed(self, location: str) -> bool:
        now = time.monotonic()
        with self._lock:
            last_time = self._last_sent.get(location)
            if last_time is not None and now - last_time < self.cooldown_sec:
                return False
            self._last_sent[location] = now
        return True

    def build_payload(self, location: str, err: Any) -> Dict[str, Any]:
        if isinstance(err, BaseException):
            message = str(err) or type(err).__name__
            stack = (
                "".join(traceback.format_exception(type(err), err, err.__traceback__))
                if err.__traceback__ is not None
                else None
            )
        else:
            message, stack = str(err), None
        return {
            "service": self.service,
            "location": location,
            "message": message,
            "stack": stack,
        }

    def report(self, location: str, err: Any) -> bool:
        """Queue a report for ``err`` at ``location``; returns ``True`` if sent."""
        if not self.enabled or not self._allowed(location):
            return False
        payload = self.build_payload(location, err)
        if self.background:
            threading.Thread(target=self._send, args=(payload,), daemon=True).start()
        else:
            self._send(payload)
        return True

    def _send(self, payload: Dict[str, Any]) -> None:
        post_error(
            self.base_url,
            payload,
            api_key=self.api_key,
            timeout=self.timeout,
            session=self.session,
        )
