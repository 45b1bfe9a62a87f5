"""
Remote data feeding over a ``torch.distributed.TCPStore``.

The server runs the data layers of a training net and publishes each batch under
``brew/batch/<n>``. Clients (``RemoteData`` layers) claim the next batch index with an atomic
``add`` on ``brew/next``, fetch the payload, and delete the key. The server keeps at most
``prefetch`` unclaimed batches in the store.
"""

from __future__ import annotations

import io
import time
from concurrent.futures import Future
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Optional
from typing import Sequence

import torch
from torch.distributed import TCPStore

from brew.errors import ConfigurationError
from brew.logging import get_logger
from brew.runtime.signals import SolverAction


logger = get_logger(__name__)

BATCH_KEY = "brew/batch/{index}"
NEXT_KEY = "brew/next"


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port``; an empty host means all interfaces."""
    host, sep, port = (address or "").rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigurationError(f"Invalid address '{address}' (expected host:port)")
    return host or "0.0.0.0", int(port)


def serialize_batch(tensors: Sequence[torch.Tensor]) -> bytes:
    buffer = io.BytesIO()
    torch.save([tensor.detach().cpu() for tensor in tensors], buffer)
    return buffer.getvalue()


def deserialize_batch(payload: bytes) -> list[torch.Tensor]:
    return torch.load(io.BytesIO(payload), map_location="cpu", weights_only=True)


class RemoteBatchSource:
    """Client side: pulls batches published by a ``DataServer``."""

    def __init__(self, address: str, timeout: float = 300.0) -> None:
        host, port = parse_address(address)
        if host == "0.0.0.0":
            host = "127.0.0.1"
        self.store = TCPStore(
            host,
            port,
            is_master=False,
            timeout=timedelta(seconds=timeout),
        )
        logger.info("Connected to data server at %s:%d", host, port)

    def next_batch(self) -> list[torch.Tensor]:
        index = self.store.add(NEXT_KEY, 1) - 1
        key = BATCH_KEY.format(index=index)
        payload = self.store.get(key)
        self.store.delete_key(key)
        return deserialize_batch(payload)


def _reap(futures: list[Future]) -> list[Future]:
    """Drop finished publishes, re-raising their errors."""
    pending = []
    for future in futures:
        if future.done():
            future.result()
        else:
            pending.append(future)
    return pending


class DataServer:
    """Serves batches produced by the data layers of ``solver.net``."""

    def __init__(
        self,
        solver,
        listen_address: str,
        comm_threads: int = 1,
        *,
        prefetch: int = 4,
        max_batches: Optional[int] = None,
        poll_interval: float = 0.01,
        timeout: float = 300.0,
    ) -> None:
        if not listen_address:
            raise ConfigurationError("data_server requires --listen_address")
        if comm_threads < 1:
            raise ConfigurationError("comm_threads must be >= 1")
        if prefetch < 1:
            raise ConfigurationError("prefetch must be >= 1")
        self.solver = solver
        self.host, self.port = parse_address(listen_address)
        self.comm_threads = comm_threads
        self.prefetch = prefetch
        self.max_batches = max_batches
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.data_layers = [
            index for index, layer in enumerate(solver.net.layers) if layer.is_data_source
        ]
        if not self.data_layers:
            raise ConfigurationError("train net has no data layers to serve")
        self.served = 0
        # Kept open after run() so clients can drain published batches.
        self.store: Optional[TCPStore] = None

    def produce_batch(self) -> list[torch.Tensor]:
        net = self.solver.net
        tensors: list[torch.Tensor] = []
        with torch.no_grad():
            for index in self.data_layers:
                net.forward_layer(index)
                tensors.extend(blob.data for blob in net.top_vecs[index])
        return tensors

    def _publish(self, store: TCPStore, index: int, tensors: list[torch.Tensor]) -> None:
        store.set(BATCH_KEY.format(index=index), serialize_batch(tensors))

    def run(self) -> int:
        """Serve until STOP is requested (or ``max_batches`` is reached); returns batches served."""
        self.store = store = TCPStore(
            self.host,
            self.port,
            is_master=True,
            wait_for_workers=False,
            timeout=timedelta(seconds=self.timeout),
        )
        store.add(NEXT_KEY, 0)
        logger.info("Data server listening on %s:%d", self.host, self.port)

        futures: list[Future] = []
        with ThreadPoolExecutor(
            max_workers=self.comm_threads, thread_name_prefix="brew-data"
        ) as pool:
            while self.max_batches is None or self.served < self.max_batches:
                action = self.solver.get_requested_action()
                if action == SolverAction.STOP:
                    logger.info("Stop requested; data server shutting down")
                    break
                if action == SolverAction.SNAPSHOT:
                    logger.info("Snapshot requested; data server holds no solver state to save")

                claimed = store.add(NEXT_KEY, 0)
                if self.served - claimed >= self.prefetch:
                    time.sleep(self.poll_interval)
                    continue

                tensors = self.produce_batch()
                futures.append(pool.submit(self._publish, store, self.served, tensors))
                self.served += 1
                futures = _reap(futures)

            for future in futures:
                future.result()
        logger.info("Data server published %d batch(es)", self.served)
        return self.served
