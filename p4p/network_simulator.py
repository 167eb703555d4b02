"""Thread-safe in-memory network simulator for peer and server communication."""

from __future__ import annotations

import threading
import time
from queue import Empty, Queue
from typing import Dict, List, Tuple

from .data_models import AggregateResult, SubmissionResult


def server_endpoint(server_index: int) -> str:
    return f"server-{server_index}"


def peer_endpoint(peer_id: int) -> str:
    return f"peer-{peer_id}"


COORDINATOR = "coordinator"


class NetworkSimulator:
    """网络模拟器 / Mailboxes keyed by endpoint name ("server-0", "peer-3", ...).

    Challenge matrices and sealed submissions travel as bytes, the way they
    would over a real transport; results and aggregates are passed as objects.
    """

    def __init__(self) -> None:
        self.message_queues: Dict[str, Queue] = {}
        self.lock = threading.Lock()
        self.kem_public_keys: Dict[str, bytes] = {}
        self.bytes_sent = 0
        self.messages_sent = 0

    def register(self, endpoint: str, kem_public_key: bytes | None = None) -> None:
        """注册端点并记录其公钥 / Create the endpoint's mailbox and optionally publish its KEM key."""
        with self.lock:
            if endpoint not in self.message_queues:
                self.message_queues[endpoint] = Queue()
            if kem_public_key is not None:
                self.kem_public_keys[endpoint] = kem_public_key

    def is_registered(self, endpoint: str) -> bool:
        with self.lock:
            return endpoint in self.message_queues

    def get_kem_public_key(self, endpoint: str) -> bytes:
        with self.lock:
            return self.kem_public_keys[endpoint]

    def _put(self, receiver: str, msg_type: str, data: object, size: int = 0) -> None:
        # caller holds the lock
        if receiver not in self.message_queues:
            raise KeyError(f"unknown endpoint {receiver!r}")
        self.message_queues[receiver].put((msg_type, data))
        self.messages_sent += 1
        self.bytes_sent += size

    def broadcast_challenge(self, sender: str, data: bytes) -> None:
        """广播挑战矩阵 / Deliver the encoded challenge to every other endpoint."""
        with self.lock:
            for endpoint in self.message_queues:
                if endpoint != sender:
                    self._put(endpoint, 'challenge', data, len(data))

    def send_submission(self, receiver: str, data: bytes) -> None:
        """发送加密份额 / Deliver a serialized sealed submission to a server."""
        with self.lock:
            self._put(receiver, 'submission', data, len(data))

    def send_verdicts(self, receiver: str, sender: str, verdicts: Dict[int, str]) -> None:
        """Exchange the {peer id: proof fingerprint} map of locally verified peers."""
        with self.lock:
            self._put(receiver, 'verdicts', (sender, dict(verdicts)))

    def send_result(self, receiver: str, result: SubmissionResult) -> None:
        with self.lock:
            self._put(receiver, 'result', result)

    def send_aggregate(self, receiver: str, aggregate: AggregateResult) -> None:
        with self.lock:
            self._put(receiver, 'aggregate', aggregate)

    def _receive(self, endpoint: str, wanted: str, expected_count: int, timeout: float) -> List[object]:
        items: List[object] = []
        messages_to_requeue: List[Tuple[str, object]] = []
        end_time = time.time() + timeout

        while len(items) < expected_count and time.time() < end_time:
            try:
                msg_type, data = self.message_queues[endpoint].get(timeout=0.1)
            except Empty:
                continue
            if msg_type == wanted:
                items.append(data)
            else:
                # 其他类型的消息稍后放回队列
                messages_to_requeue.append((msg_type, data))

        for msg in messages_to_requeue:
            self.message_queues[endpoint].put(msg)
        return items

    def receive_challenge(self, endpoint: str, timeout: float = 30.0) -> bytes | None:
        items = self._receive(endpoint, 'challenge', 1, timeout)
        return items[0] if items else None

    def receive_submissions(self, endpoint: str, expected_count: int, timeout: float = 60.0) -> List[bytes]:
        return self._receive(endpoint, 'submission', expected_count, timeout)

    def receive_verdicts(self, endpoint: str, timeout: float = 60.0) -> Tuple[str, Dict[int, str]] | None:
        items = self._receive(endpoint, 'verdicts', 1, timeout)
        return items[0] if items else None

    def receive_results(self, endpoint: str, expected_count: int, timeout: float = 60.0) -> List[SubmissionResult]:
        return self._receive(endpoint, 'result', expected_count, timeout)

    def receive_aggregates(self, endpoint: str, expected_count: int, timeout: float = 60.0) -> List[AggregateResult]:
        return self._receive(endpoint, 'aggregate', expected_count, timeout)
