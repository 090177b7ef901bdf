"""
============================================================================
Tradegate Risk Engine
Ledger Relay Client - Proof Anchor Submission
============================================================================

Reliability Level: L5 High
Side Effects: HTTP calls to a per-chain ledger relay

Each ledger network (XRPL, STELLAR) is reached through a relay that
signs and submits a minimal self-transfer carrying the proof memo. The
relay holds the node connection; this client only speaks HTTP.

RELAY PROTOCOL:
    POST {relay}/submit
        {"chain", "account", "destination", "amount", "memo"}
        -> {"tx_hash": str}
    GET  {relay}/tx/{tx_hash}
        -> {"validated": bool}

MEMO FORMATS:
    XRPL:    {"type": "FTH_PROOF", "format": "application/json",
              "data": "{\"hash\":...,\"id\":...,\"type\":...}"}
    STELLAR: {"type": "hash", "data": <sha256 hex>}

The signing secret is sent as a bearer token and never logged.

============================================================================
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from app.infra.http_client import ResilientHttpClient
from services.gate_errors import ExternalServiceError

# Configure module logger
logger = logging.getLogger(__name__)

PROOF_MEMO_TYPE = "FTH_PROOF"
PROOF_MEMO_FORMAT = "application/json"

# Smallest transferable amount per network (self-payment)
MINIMUM_AMOUNTS = {
    "XRPL": "1",            # drops
    "STELLAR": "0.0000001",  # XLM
}


def build_memo(chain: str, object_type: str, object_id: str, digest: str) -> Dict[str, str]:
    """Memo payload embedding the digest for one chain."""
    if chain == "STELLAR":
        return {"type": "hash", "data": digest}
    return {
        "type": PROOF_MEMO_TYPE,
        "format": PROOF_MEMO_FORMAT,
        "data": json.dumps(
            {"type": object_type, "id": object_id, "hash": digest},
            sort_keys=True,
            separators=(",", ":"),
        ),
    }


class LedgerClient:
    """
    Submission and confirmation lookups for one ledger network.

    Raises ExternalServiceError (GATE-050) on every failure; the proof
    anchor service turns that into a FAILED chain status.
    """

    def __init__(
        self,
        chain: str,
        relay_url: str,
        account: str,
        signing_secret: str,
        timeout: float = 30.0,
        max_retries: int = 2,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.chain = chain.upper()
        self._account = account
        self._http = ResilientHttpClient(
            base_url=relay_url,
            name=f"ledger-{self.chain.lower()}",
            timeout=timeout,
            max_retries=max_retries,
            transport=transport,
            headers={"Authorization": f"Bearer {signing_secret}"},
        )

    def submit(
        self,
        object_type: str,
        object_id: str,
        digest: str,
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Submit a self-transfer carrying the proof memo.

        Returns:
            Transaction hash
        """
        payload: Dict[str, Any] = {
            "chain": self.chain,
            "account": self._account,
            "destination": self._account,
            "amount": MINIMUM_AMOUNTS.get(self.chain, "1"),
            "memo": build_memo(self.chain, object_type, object_id, digest),
        }
        response = self._http.request("POST", "/submit", payload, correlation_id=correlation_id)
        if not response.success:
            raise ExternalServiceError(
                f"{self.chain} submission failed: {response.error_message}",
                details={"chain": self.chain, "transport_error": response.error_code},
            )
        tx_hash = response.data.get("tx_hash") if isinstance(response.data, dict) else None
        if not tx_hash:
            raise ExternalServiceError(
                f"{self.chain} relay returned no tx_hash",
                details={"chain": self.chain},
            )
        logger.info(
            f"[LEDGER] Proof submitted | chain={self.chain} | tx_hash={tx_hash} | "
            f"object={object_type}:{object_id} | correlation_id={correlation_id}"
        )
        return str(tx_hash)

    def is_confirmed(self, tx_hash: str, correlation_id: Optional[str] = None) -> bool:
        """True once the relay reports the transaction validated."""
        response = self._http.request("GET", f"/tx/{tx_hash}", correlation_id=correlation_id)
        if not response.success:
            raise ExternalServiceError(
                f"{self.chain} confirmation lookup failed: {response.error_message}",
                details={"chain": self.chain, "tx_hash": tx_hash},
            )
        if not isinstance(response.data, dict):
            raise ExternalServiceError(
                f"{self.chain} relay returned a malformed confirmation",
                details={"chain": self.chain, "tx_hash": tx_hash},
            )
        return bool(response.data.get("validated"))


__all__ = ["LedgerClient", "build_memo", "PROOF_MEMO_TYPE", "MINIMUM_AMOUNTS"]
