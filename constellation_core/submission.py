"""
Submission gateway: hands fully-signed envelopes to the ledger.

No retries happen here; a failed submission is reported to the caller,
who decides whether to try again.  At most one submission per
transaction hash is in flight at a time.
"""

from __future__ import annotations

import logging
from typing import Any

from constellation_core.errors import ConstellationError
from constellation_core.ledger import LedgerClient
from constellation_core.transaction import TransactionEnvelope

logger = logging.getLogger("constellation.submission")


class SubmissionGateway:
    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger
        self._in_flight: set[str] = set()
        self.submitted = 0
        self.failed = 0

    def in_flight(self, tx_hash: str) -> bool:
        return tx_hash in self._in_flight

    async def submit(self, tx_hash: str, envelope: TransactionEnvelope) -> dict[str, Any]:
        self._in_flight.add(tx_hash)
        try:
            result = await self.ledger.submit_transaction(envelope)
        except ConstellationError as exc:
            self.failed += 1
            logger.warning("Submission of %s failed: %s", tx_hash, exc.message)
            raise
        finally:
            self._in_flight.discard(tx_hash)
        self.submitted += 1
        logger.info("Submitted %s with %d signature(s)", tx_hash, len(envelope.signatures))
        return result
