"""User-facing notifications (toasts) with a bounded history."""
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

SUCCESS = "success"
ERROR = "error"
INFO = "info"


@dataclass
class Toast:
    """A single notification shown to the user."""
    level: str
    message: str
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


ToastListener = Callable[[Toast], None]


class Notifier:
    """Dispatches toasts to listeners and remembers the most recent ones."""

    MAX_HISTORY = 100

    def __init__(self):
        self._history: deque[Toast] = deque(maxlen=self.MAX_HISTORY)
        self._listeners: List[ToastListener] = []

    def subscribe(self, listener: ToastListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, level: str, message: str) -> Toast:
        """Record a toast and hand it to every listener."""
        toast = Toast(level=level, message=message, timestamp=datetime.now(timezone.utc).isoformat())
        self._history.append(toast)

        if level == ERROR:
            logger.warning(f"[toast] {message}")
        else:
            logger.info(f"[toast] {message}")

        for listener in list(self._listeners):
            try:
                listener(toast)
            except Exception:
                logger.exception("Toast listener failed")
        return toast

    def success(self, message: str) -> Toast:
        return self.notify(SUCCESS, message)

    def error(self, message: str) -> Toast:
        return self.notify(ERROR, message)

    def info(self, message: str) -> Toast:
        return self.notify(INFO, message)

    def history(self, limit: int = 20, level: Optional[str] = None) -> List[Toast]:
        """Get recent toasts, oldest first."""
        items = [t for t in self._history if level is None or t.level == level]
        return items[-limit:]

    def clear(self) -> None:
        """Clear toast history."""
        self._history.clear()


# Global notifier instance
_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """Get the global notifier instance."""
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier
