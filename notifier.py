import asyncio
import inspect
from collections import deque
from typing import Callable, Deque, List, Optional

from constants import NOTIFY_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)

Sink = Callable[[str], None]


class Notifier:
    """Toast-style queue: one message visible at a time.

    ``notify`` never blocks. The next message is handed to the sink only
    after ``interval`` seconds have passed since the previous one was shown.
    Without a running event loop messages are shown immediately.
    """

    def __init__(self, sink: Optional[Sink] = None, interval: float = NOTIFY_INTERVAL_SECONDS, history_size: int = 20):
        self.sink = sink
        self.interval = interval
        self.queue: Deque[str] = deque()
        self.history: Deque[str] = deque(maxlen=history_size)
        self._showing = False
        self._timer: Optional[asyncio.TimerHandle] = None

    def notify(self, *parts) -> None:
        message = " ".join(str(p) for p in parts)
        logger.info(f"Notify: {message}")
        self.queue.append(message)
        self._process_queue()

    def _process_queue(self):
        if self._showing or not self.queue:
            return
        message = self.queue.popleft()
        self._show(message)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._process_queue()
            return
        self._showing = True
        self._timer = loop.call_later(self.interval, self._dismiss)

    def _show(self, message: str):
        self.history.append(message)
        if self.sink is None:
            return
        try:
            result = self.sink(message)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception as e:
            logger.warning(f"Notification sink failed for {message!r}: {e}")

    def _dismiss(self):
        self._showing = False
        self._timer = None
        self._process_queue()

    def recent(self) -> List[str]:
        return list(self.history)

    def close(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._showing = False
        self.queue.clear()
