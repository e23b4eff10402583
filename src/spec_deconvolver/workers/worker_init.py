import threading
from typing import Optional

# Stop event of the current worker process, set by the pool initializer.
_stop_event_worker: Optional[threading.Event] = None


def init_worker(stop_event: Optional[threading.Event]):
    """
    Initializer for the multiprocessing.Pool, setting the stop event a
    deconvolution task checks before it starts.
    """
    global _stop_event_worker
    _stop_event_worker = stop_event


def stop_requested() -> bool:
    return _stop_event_worker is not None and _stop_event_worker.is_set()
