"""
Signing-request and progress notifications.

Both kinds are published once per stakeholder address, on the topic
named after that address:

    {"command": "request",  "hash": ..., "txenv": ..., "msg": ..., "progress": ...}
    {"command": "progress", "hash": ..., "progress": ...}

``progress`` is base64 of the JSON progress snapshot
(``{account: {"threshold": n, "weight": m}}``).
"""

from __future__ import annotations

import base64
import json
import logging

from constellation_core.pubsub import EventBus
from constellation_core.state import PendingTransaction

log = logging.getLogger("constellation.broadcast")


def encode_progress(state: PendingTransaction) -> str:
    raw = json.dumps(state.progress_snapshot(), sort_keys=True).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_progress(value: str) -> dict[str, dict[str, int]]:
    return json.loads(base64.b64decode(value))


class Broadcaster:
    def __init__(self, bus: EventBus):
        self.bus = bus

    def signing_request(self, state: PendingTransaction) -> int:
        payload = {
            "command": "request",
            "hash": state.tx_hash,
            "txenv": state.txenv,
            "progress": encode_progress(state),
        }
        if state.message:
            payload["msg"] = state.message
        return self._publish(state, payload)

    def progress(self, state: PendingTransaction) -> int:
        payload = {
            "command": "progress",
            "hash": state.tx_hash,
            "progress": encode_progress(state),
        }
        return self._publish(state, payload)

    def _publish(self, state: PendingTransaction, payload: dict) -> int:
        delivered = 0
        for address in state.recipients():
            delivered += self.bus.publish(address, payload)
        log.debug("%s for %s reached %d subscriber(s)",
                  payload["command"], state.tx_hash, delivered)
        return delivered
