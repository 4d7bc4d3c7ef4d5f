"""HTTP client for the acknowledging authority.

Submitting a :class:`core_models.RunEnvelope` returns the identifier the
authority assigned, or ``None`` when the run is unacknowledged (network
error, timeout, non-2xx status or a response without an id).  The call never
raises; the caller gates durable commit on the returned id.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from core_config import OracleConfig
from core_models import RunEnvelope
from services import monitoring

logger = logging.getLogger(__name__)


class OracleClient:
    def __init__(
        self,
        base_url: str,
        *,
        endpoint: str = "/api/mtf-runs",
        timeout_s: float = 10.0,
        api_key: Optional[str] = None,
        session: requests.Session | None = None,
    ) -> None:
        self.url = base_url.rstrip("/") + "/" + endpoint.lstrip("/")
        self.timeout_s = float(timeout_s)
        self.api_key = api_key
        self._owns_session = session is None
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg: OracleConfig, session: requests.Session | None = None) -> "OracleClient":
        return cls(
            cfg.base_url,
            endpoint=cfg.endpoint,
            timeout_s=cfg.timeout_s,
            api_key=cfg.api_key,
            session=session,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Internal-Key"] = self.api_key
        return headers

    def submit_sync(self, envelope: RunEnvelope) -> Any:
        tf = envelope.timeframe.value
        try:
            resp = self.session.post(
                self.url,
                json=envelope.to_payload(),
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            logger.error("Oracle POST failed for %s: %s", tf, exc)
            monitoring.record_ack("error")
            return None
        if not 200 <= resp.status_code < 300:
            logger.error("Oracle POST rejected for %s: HTTP %s", tf, resp.status_code)
            monitoring.record_ack("rejected")
            return None
        try:
            body = resp.json()
        except ValueError:
            body = None
        ack_id = body.get("id") if isinstance(body, dict) else None
        if ack_id is None:
            logger.error("Oracle response for %s carries no id", tf)
            monitoring.record_ack("no_id")
            return None
        monitoring.record_ack("ok")
        logger.info("Oracle POST OK for %s: id=%s", tf, ack_id)
        return ack_id

    async def submit(self, envelope: RunEnvelope) -> Any:
        return await asyncio.to_thread(self.submit_sync, envelope)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()


__all__ = ["OracleClient"]
