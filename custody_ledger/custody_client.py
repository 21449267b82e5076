"""
Custody Client Module

REST client for a remote custody service. Implements the same pull/push
contract as the in-process service; transport failures and unreadable
responses are reported as rejected transfers so the ledger can roll back.
"""

import httpx
import logging
from typing import Optional

from .custody import CustodyService, TransferResult

logger = logging.getLogger("custody_ledger.custody_client")


class HttpCustodyClient(CustodyService):
    """REST client for the custody service"""

    def __init__(
        self,
        base_url: str = "http://localhost:8081",
        timeout: float = 5.0,
        api_key: Optional[str] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout)

    def pull(self, source: str, amount: int) -> TransferResult:
        return self._transfer("pull", {"source": source, "amount": str(amount)})

    def push(self, destination: str, amount: int) -> TransferResult:
        return self._transfer("push", {"destination": destination, "amount": str(amount)})

    def _transfer(self, operation: str, payload: dict) -> TransferResult:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.post(
                f"{self.base_url}/{operation}",
                json=payload,
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Custody service {operation} failed: {e}")
            return TransferResult.rejected(f"custody service unreachable: {e}")

        if response.status_code != 200:
            logger.warning(f"Custody service returned {response.status_code}: {response.text}")
            return TransferResult.rejected(f"custody service returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Custody service {operation} returned an unreadable body: {e}")
            return TransferResult.rejected("invalid custody response")
        if not isinstance(data, dict):
            return TransferResult.rejected("invalid custody response")

        if not data.get("success", False):
            return TransferResult.rejected(data.get("reason", "rejected by custody service"))
        return TransferResult.ok(reference=data.get("reference"))

    def health_check(self) -> bool:
        """Check if the custody service is healthy"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()
