import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import websockets

from api.metrics import metrics


logger = logging.getLogger(__name__)

DEFAULT_STREAM_URL = "wss://stream.binance.com:9443/stream"


@dataclass(frozen=True)
class PriceUpdate:
    symbol: str
    price: float
    timestamp: datetime


def parse_mini_ticker(raw: str) -> Optional[PriceUpdate]:
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Dropping malformed stream frame: %.80s", raw)
        return None
    if isinstance(data, dict) and "data" in data:
        data = data["data"]
    if not isinstance(data, dict) or data.get("e") != "24hrMiniTicker":
        return None
    try:
        price = float(data.get("c"))
        ts = datetime.fromtimestamp(int(data.get("E") or time.time() * 1000) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None
    return PriceUpdate(symbol=data.get("s"), price=price, timestamp=ts)


class PriceStream:
    """Combined miniTicker subscription feeding an asyncio.Queue.

    The stream never touches trading state; the control loop drains the
    queue at the start of each cycle.
    """

    def __init__(self, symbols: Iterable[str], url: str = DEFAULT_STREAM_URL,
                 reconnect_backoff: Sequence[float] = (1, 2, 5, 10, 30), stale_after_s: float = 90.0,
                 queue_size: int = 10000):
        self.symbols = sorted(symbols)
        self.base_url = url.rstrip("/")
        self.reconnect_backoff = list(reconnect_backoff) or [1]
        self.stale_after_s = stale_after_s
        self.queue: "asyncio.Queue[PriceUpdate]" = asyncio.Queue(maxsize=queue_size)
        self.running = False
        self.reconnect_count = 0
        self.dropped = 0

    @property
    def url(self) -> str:
        streams = "/".join(f"{symbol.lower()}@miniTicker" for symbol in self.symbols)
        return f"{self.base_url}?streams={streams}"

    def publish(self, update: PriceUpdate) -> None:
        if self.queue.full():
            # Keep the freshest prices
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(update)

    def drain(self) -> Dict[str, PriceUpdate]:
        """Return the latest update per symbol and empty the queue."""
        latest: Dict[str, PriceUpdate] = {}
        while True:
            try:
                update = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            latest[update.symbol] = update
        return latest

    async def _handle_reconnect(self, backoff_index: int) -> None:
        index = min(backoff_index, len(self.reconnect_backoff) - 1)
        self.reconnect_count += 1
        metrics.record_reconnect()
        delay = self.reconnect_backoff[index] + random.uniform(0, 0.5)
        logger.info("Reconnecting price stream in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)

    async def run(self) -> None:
        if not self.symbols:
            logger.info("Price stream has no symbols; not starting")
            return
        self.running = True
        backoff_index = 0
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=20) as ws:
                    logger.info("Price stream connected for %s symbols", len(self.symbols))
                    backoff_index = 0
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stale_after_s)
                        except asyncio.TimeoutError:
                            logger.warning("Price stream stale; reconnecting")
                            raise
                        update = parse_mini_ticker(raw)
                        if update is not None:
                            self.publish(update)
            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self.running:
                    break
                logger.error("Price stream error: %s", e)
                await self._handle_reconnect(backoff_index)
                backoff_index += 1
        self.running = False

    def stop(self) -> None:
        self.running = False
