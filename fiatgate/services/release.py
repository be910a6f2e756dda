"""
Client for the on-chain release service.

The release service performs the actual value transfer. It deduplicates on
the Idempotency-Key header, so releasing the same settlement twice (e.g.
after a crashed sweep is reclaimed) transfers once.
"""

from typing import Any, Callable, Dict, Optional

import httpx

from fiatgate.core.logging_config import get_logger
from fiatgate.models.pending_settlement import PendingSettlement

logger = get_logger(__name__)

# Takes the claimed record, returns the release reference (e.g. tx hash)
ReleaseOperation = Callable[[PendingSettlement], Optional[str]]


def idempotency_key(record: PendingSettlement) -> str:
    return f"settlement:{record.event_id}"


class ReleaseClient:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def __call__(self, record: PendingSettlement) -> Optional[str]:
        return self.release(record)

    def release(self, record: PendingSettlement) -> Optional[str]:
        """
        Request the on-chain release for a settlement.

        Raises:
            httpx.HTTPError: non-2xx response, connection error or timeout
        """
        headers = {"Idempotency-Key": idempotency_key(record)}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = self._client.post(
            f"{self.base_url}/releases",
            json=self._payload(record),
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()

        data = response.json() if response.content else {}
        reference = data.get("reference")
        logger.info(
            "Release accepted",
            settlement_id=record.id,
            event_id=record.event_id,
            reference=reference,
        )
        return reference

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _payload(record: PendingSettlement) -> Dict[str, Any]:
        return {
            "settlement_id": record.id,
            "event_id": record.event_id,
            "amount_usd": record.amount_usd,
            "beneficiary_address": record.beneficiary_address,
            "project_id": record.project_id,
            "chain_id": record.chain_id,
            "memo": record.memo,
        }
