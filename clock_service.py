import threading
import time
from datetime import datetime, timezone
from typing import Optional

_FROZEN_AT_S: Optional[float] = None
_CLOCK_LOCK = threading.Lock()
_LAST_ISSUED_S = 0.0


def now_s() -> float:
    """Current ledger time in epoch seconds.

    Wall clock unless frozen.  Successive unfrozen calls never go backwards,
    so intake timestamps taken in order keep their FIFO order.
    """
    global _LAST_ISSUED_S

    with _CLOCK_LOCK:
        if _FROZEN_AT_S is not None:
            return _FROZEN_AT_S
        current = time.time()
        if current < _LAST_ISSUED_S:
            current = _LAST_ISSUED_S
        _LAST_ISSUED_S = current
        return current


def freeze_clock(at_s: float) -> None:
    global _FROZEN_AT_S
    with _CLOCK_LOCK:
        _FROZEN_AT_S = float(at_s)


def reset_clock() -> None:
    global _FROZEN_AT_S, _LAST_ISSUED_S
    with _CLOCK_LOCK:
        _FROZEN_AT_S = None
        _LAST_ISSUED_S = 0.0


def iso_utc(ts_s: Optional[float]) -> Optional[str]:
    if ts_s is None:
        return None
    return datetime.fromtimestamp(float(ts_s), tz=timezone.utc).isoformat()
