from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from ..errors import PoolClosedError, PoolExhaustedError, SessionStartError
from .config import PoolSettings
from .session import Session, SessionFactory
from .types import PoolStatus, SessionInfo, SessionState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionLease:
    """Pool bookkeeping for one session.

    Example:
        ```python
        lease = SessionLease("sage-bridge-a1", 0.0, 0.0, 0)
        ```
    """

    session_id: str
    created_at: float
    last_used_at: float
    run_count: int


@dataclass(slots=True)
class _SessionEntry:
    """Internal pool entry tracking lease state.

    Example:
        ```python
        entry = _SessionEntry(session=session, lease=lease, in_use=False)
        ```
    """

    session: Session
    lease: SessionLease
    in_use: bool


def should_rotate(lease: SessionLease, settings: PoolSettings, now: float) -> bool:
    """Decide whether a pooled session should be recycled.

    A limit of 0 disables that criterion.

    Example:
        ```python
        rotate = should_rotate(lease, settings, now=time.time())
        ```
    """
    if settings.max_runs and lease.run_count >= settings.max_runs:
        return True
    if settings.ttl_seconds and (now - lease.created_at) >= settings.ttl_seconds:
        return True
    return False


class SessionPool:
    """Own a bounded set of engine sessions and hand them out one caller at a time.

    Waiting callers are served in arrival order. Failed sessions are replaced
    in a background thread instead of being returned to the pool.

    Example:
        ```python
        pool = SessionPool(factory, PoolSettings(pool_size=2, acquire_timeout=10))
        pool.start()
        with pool.lease() as session:
            session.submit("1+1", timeout=5)
        ```
    """

    def __init__(self, factory: SessionFactory, settings: PoolSettings) -> None:
        """Initialize an empty thread-safe pool.

        Example:
            ```python
            pool = SessionPool(factory, PoolSettings(pool_size=1, acquire_timeout=5))
            ```
        """
        self._factory = factory
        self._settings = settings
        self._cond = threading.Condition()
        self._entries: list[_SessionEntry] = []
        self._starting = 0
        self._waiters: deque[object] = deque()
        self._closed = False
        self._replacements: list[threading.Thread] = []

    @property
    def settings(self) -> PoolSettings:
        """Return the pool limits.

        Example:
            ```python
            size = pool.settings.pool_size
            ```
        """
        return self._settings

    def start(self) -> None:
        """Eagerly start every session slot.

        Raises SessionStartError only when no session at all could be started;
        slots that failed are filled lazily by later acquires.

        Example:
            ```python
            pool.start()
            ```
        """
        started = 0
        last_error: SessionStartError | None = None
        for _ in range(self._settings.pool_size):
            with self._cond:
                self._check_open_locked()
                if self._capacity_locked() <= 0:
                    break
                self._starting += 1
            try:
                self._start_one(in_use=False)
            except SessionStartError as exc:
                logger.warning("Engine session failed to start: %s", exc)
                last_error = exc
                continue
            started += 1
        if started == 0 and last_error is not None:
            raise SessionStartError(f"Could not start any engine session: {last_error}")
        logger.info("Session pool started with %d/%d session(s)", started, self._settings.pool_size)

    def acquire(self) -> Session:
        """Block until a session is free and hand it to the caller exclusively.

        Example:
            ```python
            session = pool.acquire()
            try:
                ...
            finally:
                pool.release(session)
            ```
        """
        deadline = time.monotonic() + self._settings.acquire_timeout
        ticket = object()
        with self._cond:
            self._check_open_locked()
            self._waiters.append(ticket)
            try:
                while True:
                    self._check_open_locked()
                    if self._waiters[0] is ticket:
                        entry = self._take_idle_locked()
                        if entry is not None:
                            return entry.session
                        if self._capacity_locked() > 0:
                            self._starting += 1
                            break
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhaustedError(
                            f"No engine session available after {self._settings.acquire_timeout:g}s"
                        )
                    self._cond.wait(remaining)
            finally:
                if ticket in self._waiters:
                    self._waiters.remove(ticket)
                    self._cond.notify_all()
        logger.debug("Starting engine session lazily for a waiting caller")
        return self._start_one(in_use=True).session

    def release(self, session: Session) -> None:
        """Return a session; failed, dead or worn-out sessions are replaced.

        Example:
            ```python
            pool.release(session)
            ```
        """
        terminate_now = False
        with self._cond:
            entry = self._find_locked(session)
            if entry is None:
                logger.warning("Release of unknown session %s; terminating it", session.id)
                terminate_now = True
            else:
                entry.in_use = False
                entry.lease.last_used_at = time.time()
                entry.lease.run_count += 1
                if self._closed:
                    self._entries.remove(entry)
                    terminate_now = True
                elif not self._reusable(entry, time.time()):
                    self._retire_locked(entry)
            self._cond.notify_all()
        if terminate_now:
            session.terminate()

    @contextmanager
    def lease(self) -> Iterator[Session]:
        """Acquire a session for the duration of a with-block.

        Example:
            ```python
            with pool.lease() as session:
                out = session.submit("x = 5", timeout=10)
            ```
        """
        session = self.acquire()
        try:
            yield session
        finally:
            self.release(session)

    def shutdown(self) -> None:
        """Cancel waiters, wait briefly for in-flight leases, then terminate everything.

        Example:
            ```python
            pool.shutdown()
            ```
        """
        with self._cond:
            if self._closed and not self._entries:
                return
            self._closed = True
            self._cond.notify_all()
            deadline = time.monotonic() + self._settings.shutdown_grace
            while any(entry.in_use for entry in self._entries):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Terminating sessions still in use after shutdown grace period")
                    break
                self._cond.wait(remaining)
            entries = list(self._entries)
            self._entries.clear()
            replacements = list(self._replacements)
        for entry in entries:
            entry.session.terminate()
        for thread in replacements:
            thread.join(timeout=self._settings.shutdown_grace)
        logger.info("Session pool shut down (%d session(s) terminated)", len(entries))

    def status(self) -> PoolStatus:
        """Return a snapshot of pool occupancy.

        Example:
            ```python
            print(pool.status().idle)
            ```
        """
        now = time.time()
        with self._cond:
            rows = [
                SessionInfo(
                    session_id=entry.lease.session_id,
                    state=entry.session.state.value,
                    in_use=entry.in_use,
                    run_count=entry.lease.run_count,
                    age_seconds=round(now - entry.lease.created_at, 3),
                )
                for entry in self._entries
            ]
            busy = sum(1 for entry in self._entries if entry.in_use)
            return PoolStatus(
                size=self._settings.pool_size,
                idle=len(self._entries) - busy,
                busy=busy,
                starting=self._starting,
                waiting=len(self._waiters),
                closed=self._closed,
                sessions=rows,
            )

    def _start_one(self, *, in_use: bool) -> _SessionEntry:
        """Start a session for a slot the caller already reserved in `_starting`.

        Example:
            ```python
            entry = pool._start_one(in_use=True)
            ```
        """
        session: Session | None = None
        registered = False
        try:
            session = self._factory()
            session.start()
            now = time.time()
            entry = _SessionEntry(
                session=session,
                lease=SessionLease(session.id, now, now, 0),
                in_use=in_use,
            )
            with self._cond:
                self._starting -= 1
                registered = True
                if self._closed:
                    self._cond.notify_all()
                    raise PoolClosedError("Session pool is shut down")
                self._entries.append(entry)
                self._cond.notify_all()
            logger.info("Engine session %s started", session.id)
            return entry
        finally:
            if not registered:
                with self._cond:
                    self._starting -= 1
                    self._cond.notify_all()
            if session is not None and (not registered or self._closed):
                if self._find(session) is None:
                    session.terminate()

    def _replace(self, old: Session) -> None:
        """Terminate a retired session and start its replacement.

        Example:
            ```python
            threading.Thread(target=pool._replace, args=(session,)).start()
            ```
        """
        old.terminate()
        try:
            self._start_one(in_use=False)
        except PoolClosedError:
            logger.debug("Pool closed before replacement for %s came up", old.id)
        except SessionStartError as exc:
            logger.error("Replacement for session %s failed to start: %s", old.id, exc)

    def _retire_locked(self, entry: _SessionEntry) -> None:
        """Drop an entry and schedule its replacement in the background.

        Example:
            ```python
            pool._retire_locked(entry)
            ```
        """
        self._entries.remove(entry)
        logger.info(
            "Retiring session %s (state=%s, runs=%d)",
            entry.lease.session_id,
            entry.session.state.value,
            entry.lease.run_count,
        )
        self._starting += 1
        thread = threading.Thread(
            target=self._replace,
            args=(entry.session,),
            name=f"replace-{entry.lease.session_id}",
            daemon=True,
        )
        self._replacements = [t for t in self._replacements if t.is_alive()]
        self._replacements.append(thread)
        thread.start()

    def _take_idle_locked(self) -> _SessionEntry | None:
        """Claim the first reusable idle entry, retiring stale ones on the way.

        Example:
            ```python
            entry = pool._take_idle_locked()
            ```
        """
        now = time.time()
        for entry in list(self._entries):
            if entry.in_use:
                continue
            if not self._reusable(entry, now):
                self._retire_locked(entry)
                continue
            entry.in_use = True
            return entry
        return None

    def _reusable(self, entry: _SessionEntry, now: float) -> bool:
        """Check whether an entry may serve another caller.

        Example:
            ```python
            ok = pool._reusable(entry, time.time())
            ```
        """
        session = entry.session
        if session.state is SessionState.BUSY:
            session.mark_failed()
        if session.state is not SessionState.IDLE:
            return False
        if not session.is_alive():
            session.mark_failed()
            return False
        return not should_rotate(entry.lease, self._settings, now)

    def _capacity_locked(self) -> int:
        """Return how many more sessions may be started.

        Example:
            ```python
            free = pool._capacity_locked()
            ```
        """
        return self._settings.pool_size - len(self._entries) - self._starting

    def _check_open_locked(self) -> None:
        """Raise PoolClosedError after shutdown.

        Example:
            ```python
            pool._check_open_locked()
            ```
        """
        if self._closed:
            raise PoolClosedError("Session pool is shut down")

    def _find_locked(self, session: Session) -> _SessionEntry | None:
        """Return the entry holding a session.

        Example:
            ```python
            entry = pool._find_locked(session)
            ```
        """
        for entry in self._entries:
            if entry.session is session:
                return entry
        return None

    def _find(self, session: Session) -> _SessionEntry | None:
        """Locked variant of `_find_locked`.

        Example:
            ```python
            entry = pool._find(session)
            ```
        """
        with self._cond:
            return self._find_locked(session)
