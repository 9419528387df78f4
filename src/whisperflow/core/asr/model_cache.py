"""
Reference-counted cache of loaded local-model handles.

Loading a local recognizer takes seconds and hundreds of megabytes, so the
cache keeps handles alive across sessions:

- ``acquire`` returns a ready context, loading it at most once per model id
  even when several threads ask concurrently; late callers wait on the
  in-flight load and share its outcome.
- ``release`` drops a reference. Unreferenced contexts stay warm until the
  capacity bound or the idle TTL reclaims them.
- Eviction never touches a context that is still borrowed.

The id -> context map is guarded by a short global lock; loading and
reference counting happen under each context's own condition, so different
models load and release independently.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable, Dict, Iterator, List, Optional

from ...utils.logger import get_logger
from ..errors import ModelLoadError, ModelLoadReason
from ..settings.config import MODEL_CACHE_CAPACITY, MODEL_IDLE_TTL
from .model_store import ModelStore

logger = get_logger(__name__)


class LoadStatus(Enum):
    LOADING = auto()
    READY = auto()
    FAILED = auto()
    RELEASED = auto()


@dataclass
class LoadedContext:
    model_id: str
    handle: Any = None
    ref_count: int = 0
    last_used: float = 0.0
    status: LoadStatus = LoadStatus.LOADING
    error: Optional[ModelLoadError] = field(default=None, repr=False)
    _cond: threading.Condition = field(
        default_factory=threading.Condition, init=False, repr=False, compare=False
    )


class ModelContextCache:
    def __init__(
        self,
        store: ModelStore,
        capacity: int = MODEL_CACHE_CAPACITY,
        idle_ttl: Optional[float] = MODEL_IDLE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            store: Model storage collaborator that performs load/unload
            capacity: Maximum resident contexts; only unreferenced ones are
                evicted to honour it (least recently used first)
            idle_ttl: Seconds an unreferenced context is kept warm. None keeps
                it until capacity pressure or shutdown, 0 unloads on release.
            clock: Monotonic time source
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._store = store
        self.capacity = capacity
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._entries: Dict[str, LoadedContext] = {}
        self._lock = threading.Lock()

    def acquire(self, model_id: str) -> LoadedContext:
        self.evict_idle()

        while True:
            with self._lock:
                context = self._entries.get(model_id)
                is_loader = context is None
                if is_loader:
                    context = LoadedContext(model_id=model_id)
                    self._entries[model_id] = context

            if is_loader:
                self._load(context)
                self._enforce_capacity()
                return context

            with context._cond:
                while context.status is LoadStatus.LOADING:
                    logger.debug(f"Waiting for in-flight load of '{model_id}'")
                    context._cond.wait()

                if context.status is LoadStatus.READY:
                    context.ref_count += 1
                    context.last_used = self._clock()
                    logger.debug(
                        f"Reusing loaded model '{model_id}' (refs={context.ref_count})"
                    )
                    return context

                if context.status is LoadStatus.FAILED and context.error is not None:
                    raise context.error

            # Evicted or abandoned between lookup and lock; start over with a fresh entry

    def _load(self, context: LoadedContext) -> None:
        model_id = context.model_id
        start_time = time.time()
        logger.info(f"Loading model context '{model_id}'")

        try:
            handle = self._store.load(model_id)
        except ModelLoadError as e:
            error = e
        except MemoryError as e:
            error = ModelLoadError(model_id, ModelLoadReason.RESOURCE_EXHAUSTED, str(e))
        except Exception as e:
            error = ModelLoadError(model_id, ModelLoadReason.CORRUPT, str(e))
        except BaseException:
            logger.warning(f"Load of model '{model_id}' interrupted")
            self._discard_failed(context, None)
            raise
        else:
            with context._cond:
                context.handle = handle
                context.ref_count = 1
                context.last_used = self._clock()
                context.status = LoadStatus.READY
                context._cond.notify_all()
            logger.info(
                f"Model '{model_id}' loaded in {time.time() - start_time:.2f}s"
            )
            return

        self._discard_failed(context, error)
        logger.error(f"Model load failed: {error}")
        raise error

    def _discard_failed(
        self, context: LoadedContext, error: Optional[ModelLoadError]
    ) -> None:
        """Drop a failed entry and wake its waiters. Without an error they reload."""
        # Drop the entry before waking waiters so later acquires retry from scratch
        with self._lock:
            if self._entries.get(context.model_id) is context:
                del self._entries[context.model_id]

        with context._cond:
            context.status = LoadStatus.FAILED
            context.error = error
            context._cond.notify_all()

    def release(self, model_id: str) -> None:
        with self._lock:
            context = self._entries.get(model_id)

        if context is None:
            logger.warning(f"Release of unknown model context '{model_id}'")
            return

        with context._cond:
            if context.ref_count <= 0:
                logger.warning(f"Release of unreferenced model context '{model_id}'")
                return
            context.ref_count -= 1
            context.last_used = self._clock()
            idle = context.ref_count == 0

        if idle:
            logger.debug(f"Model '{model_id}' is now idle")
            if self.idle_ttl == 0:
                self.evict(model_id)
            else:
                self._enforce_capacity()

    @contextmanager
    def lease(self, model_id: str) -> Iterator[LoadedContext]:
        context = self.acquire(model_id)
        try:
            yield context
        finally:
            self.release(model_id)

    def evict(self, model_id: str) -> bool:
        """Unload an unreferenced context. Returns False if absent or borrowed."""
        with self._lock:
            context = self._entries.get(model_id)
            if context is None:
                return False

            with context._cond:
                if context.status is not LoadStatus.READY or context.ref_count > 0:
                    logger.debug(
                        f"Not evicting '{model_id}' "
                        f"(status={context.status.name}, refs={context.ref_count})"
                    )
                    return False
                context.status = LoadStatus.RELEASED
                handle, context.handle = context.handle, None
                del self._entries[model_id]

        try:
            self._store.unload(handle)
        except Exception:
            logger.exception(f"Error unloading model '{model_id}'")
        logger.info(f"Evicted model context '{model_id}'")
        return True

    def evict_idle(self) -> List[str]:
        if self.idle_ttl is None:
            return []

        now = self._clock()
        with self._lock:
            expired = [
                c.model_id
                for c in self._entries.values()
                if c.status is LoadStatus.READY
                and c.ref_count == 0
                and now - c.last_used >= self.idle_ttl
            ]
        return [model_id for model_id in expired if self.evict(model_id)]

    def _enforce_capacity(self) -> None:
        with self._lock:
            ready = [
                c for c in self._entries.values() if c.status is LoadStatus.READY
            ]
            excess = len(ready) - self.capacity
            if excess <= 0:
                return
            idle = sorted(
                (c for c in ready if c.ref_count == 0), key=lambda c: c.last_used
            )
            victims = [c.model_id for c in idle[:excess]]

        for model_id in victims:
            self.evict(model_id)

    def is_loaded(self, model_id: str) -> bool:
        with self._lock:
            context = self._entries.get(model_id)
        return context is not None and context.status is LoadStatus.READY

    def snapshot(self) -> List[LoadedContext]:
        """Point-in-time copies of every context, without handles."""
        with self._lock:
            contexts = list(self._entries.values())

        copies = []
        for context in contexts:
            with context._cond:
                copies.append(replace(context, handle=None, error=None))
        return copies

    def shutdown(self) -> int:
        """Unload every unreferenced context; returns how many were unloaded."""
        with self._lock:
            model_ids = list(self._entries)

        unloaded = sum(1 for model_id in model_ids if self.evict(model_id))

        with self._lock:
            borrowed = [
                c.model_id for c in self._entries.values() if c.ref_count > 0
            ]
        if borrowed:
            logger.warning(f"Model contexts still borrowed at shutdown: {borrowed}")
        return unloaded
