"""Cross-process locks backed by atomic directory creation.

A lock is a directory ``<lock_dir>/<resource>.lock.d``: ``os.mkdir`` either creates
it or fails, which makes it a test-and-set primitive shared by every process that
sees the same filesystem. The directory carries one file per owner field (pid,
timestamp, hostname, user, operation) so operators can inspect it with plain tools.

Staleness is decided by independent criteria, any one of which is enough:
the owner pid is dead on this host, the lock is older than the configured age
ceiling, or an operator forced the reclaim. Locks written by another host are
never reclaimed on liveness because a pid from another host cannot be
checked locally; only age or force applies to them.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import socket
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, TypeVar

from auto_resume_queue.common import from_iso, to_iso, utc_now
from auto_resume_queue.queue.models import LockInfo
from auto_resume_queue.queue.retrier import Retrier

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_SUFFIX = ".lock.d"
RECLAIM_GUARD_SUFFIX = ".reclaim.d"
RECLAIM_GUARD_MAX_AGE_SECONDS = 30.0
DEFAULT_LOCK_RESOURCE = "queue"
_OWNER_FIELDS = ("pid", "timestamp", "hostname", "user", "operation")
_RESOURCE_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


class LivenessChecker(Protocol):
    """Answers whether a process id is alive on the local host."""

    def is_alive(self, pid: int) -> bool: ...


class ProcessLivenessChecker:
    """Signal 0 check: existence test without delivering a signal."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user.
            return True
        return True


class StalenessReason(str, Enum):
    """Why a lock was judged abandoned."""

    DEAD_OWNER = "dead_owner"
    EXPIRED = "expired"
    FORCED = "forced"


@dataclass(slots=True)
class LockDiagnostics:
    """Operator-facing snapshot of one lock resource."""

    resource: str
    path: str
    exists: bool
    age_seconds: float | None = None
    pid: int | None = None
    pid_alive: bool | None = None
    hostname: str | None = None
    local_hostname: str = ""
    user: str | None = None
    operation: str | None = None
    staleness: StalenessReason | None = None
    listing: list[str] = field(default_factory=list)

    def render_lines(self) -> list[str]:
        if not self.exists:
            return [f"Lock {self.resource}: not held ({self.path})"]
        age = f"{self.age_seconds:.1f}s" if self.age_seconds is not None else "unknown"
        alive = "unknown" if self.pid_alive is None else ("yes" if self.pid_alive else "no")
        return [
            f"Lock {self.resource}: held ({self.path})",
            f"  pid={self.pid if self.pid is not None else 'unknown'} alive={alive}",
            f"  age={age}",
            f"  host={self.hostname or 'unknown'} local_host={self.local_hostname}",
            f"  user={self.user or 'unknown'} operation={self.operation or 'unknown'}",
            f"  stale={self.staleness.value if self.staleness else 'no'}",
            f"  contents={', '.join(self.listing) or '-'}",
        ]


class LockAcquisitionError(RuntimeError):
    """Lock could not be acquired before the timeout ran out."""

    def __init__(self, resource: str, timeout_seconds: float, diagnostics: LockDiagnostics):
        self.resource = resource
        self.timeout_seconds = timeout_seconds
        self.diagnostics = diagnostics
        details = "\n".join(diagnostics.render_lines())
        super().__init__(
            f"Failed to acquire lock {resource!r} within {timeout_seconds:g}s\n{details}",
        )


class LockManager:
    """Acquires, releases and reclaims named directory locks."""

    def __init__(  # noqa: PLR0913
        self,
        lock_dir: Path,
        *,
        max_age_seconds: float = 300.0,
        default_timeout_seconds: float = 30.0,
        retrier: Retrier | None = None,
        liveness: LivenessChecker | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
        pid: int | None = None,
        hostname: str | None = None,
    ) -> None:
        self.lock_dir = lock_dir
        self.max_age_seconds = max_age_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self._retrier = retrier or Retrier(base_delay_seconds=0.5, jitter_seconds=0.25)
        self._liveness = liveness or ProcessLivenessChecker()
        self._clock = clock
        self._now = now
        self.pid = pid if pid is not None else os.getpid()
        self.hostname = hostname or socket.gethostname()
        self._held: set[str] = set()

    def lock_path(self, resource: str) -> Path:
        if not _RESOURCE_PATTERN.fullmatch(resource):
            raise ValueError(f"Invalid lock resource name: {resource!r}")
        return self.lock_dir / f"{resource}{LOCK_SUFFIX}"

    def acquire_lock(
        self,
        resource: str = DEFAULT_LOCK_RESOURCE,
        *,
        timeout_seconds: float | None = None,
        operation: str = "unknown",
    ) -> LockInfo:
        """Block until the lock is created by this process or the timeout expires."""

        timeout = self.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        path = self.lock_path(resource)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + timeout
        attempt = 0
        while True:
            attempt += 1
            if self._try_create(path, operation=operation):
                self._held.add(resource)
                logger.debug("Acquired lock %s (attempt %d)", resource, attempt)
                info = self.get_lock_info(resource)
                if info is None:
                    raise RuntimeError(f"Lock directory vanished right after creation: {path}")
                return info
            if self.reclaim_if_stale(resource) is not None:
                continue
            remaining = deadline - self._clock()
            if remaining <= 0:
                diagnostics = self.diagnose(resource)
                logger.error(
                    "Lock %s not acquired after %d attempts (owner pid=%s host=%s)",
                    resource,
                    attempt,
                    diagnostics.pid,
                    diagnostics.hostname,
                )
                raise LockAcquisitionError(resource, timeout, diagnostics)
            self._retrier.wait(retry_number=attempt, limit_seconds=remaining)

    def release_lock(self, resource: str = DEFAULT_LOCK_RESOURCE) -> bool:
        """Remove the lock only when this process is the recorded owner."""

        path = self.lock_path(resource)
        info = self.get_lock_info(resource)
        if info is None:
            self._held.discard(resource)
            return False
        if info.pid != self.pid or (info.hostname and info.hostname != self.hostname):
            logger.warning(
                "Refusing to release lock %s owned by pid=%s host=%s (we are pid=%s host=%s)",
                resource,
                info.pid,
                info.hostname,
                self.pid,
                self.hostname,
            )
            return False
        shutil.rmtree(path, ignore_errors=True)
        self._held.discard(resource)
        logger.debug("Released lock %s", resource)
        return True

    @contextmanager
    def hold(
        self,
        resource: str = DEFAULT_LOCK_RESOURCE,
        *,
        timeout_seconds: float | None = None,
        operation: str = "unknown",
    ) -> Iterator[None]:
        """Context manager form of acquire/release; nested use in one process is a no-op."""

        if resource in self._held and self.is_held_by_current_process(resource):
            yield
            return
        self.acquire_lock(resource, timeout_seconds=timeout_seconds, operation=operation)
        try:
            yield
        finally:
            self.release_lock(resource)

    def with_lock(
        self,
        resource: str,
        fn: Callable[[], T],
        *,
        timeout_seconds: float | None = None,
        operation: str = "unknown",
    ) -> T:
        """Run `fn` under the lock, always releasing it and propagating `fn`'s outcome."""

        with self.hold(resource, timeout_seconds=timeout_seconds, operation=operation):
            return fn()

    def is_held_by_current_process(self, resource: str = DEFAULT_LOCK_RESOURCE) -> bool:
        info = self.get_lock_info(resource)
        return info is not None and info.pid == self.pid and info.hostname == self.hostname

    def get_lock_info(self, resource: str = DEFAULT_LOCK_RESOURCE) -> LockInfo | None:
        """Read owner fields; missing or unreadable fields come back as None."""

        path = self.lock_path(resource)
        if not path.is_dir():
            return None
        return _read_owner(path, resource)

    def list_locks(self) -> list[LockInfo]:
        if not self.lock_dir.is_dir():
            return []
        locks: list[LockInfo] = []
        for path in sorted(self.lock_dir.glob(f"*{LOCK_SUFFIX}")):
            info = self.get_lock_info(path.name.removesuffix(LOCK_SUFFIX))
            if info is not None:
                locks.append(info)
        return locks

    def lock_age_seconds(self, info: LockInfo) -> float | None:
        if info.timestamp is not None:
            return max(0.0, (self._now() - info.timestamp).total_seconds())
        try:
            mtime = Path(info.path).stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, (self._now() - datetime.fromtimestamp(mtime, tz=UTC)).total_seconds())

    def check_staleness(self, info: LockInfo, *, force: bool = False) -> StalenessReason | None:
        """Apply staleness criteria with OR semantics and return the first that holds."""

        if force:
            return StalenessReason.FORCED
        same_host = info.hostname is None or info.hostname == self.hostname
        if same_host and info.pid is not None and not self._liveness.is_alive(info.pid):
            return StalenessReason.DEAD_OWNER
        age = self.lock_age_seconds(info)
        if age is not None and age > self.max_age_seconds:
            return StalenessReason.EXPIRED
        return None

    def reclaim_if_stale(
        self,
        resource: str = DEFAULT_LOCK_RESOURCE,
        *,
        force: bool = False,
    ) -> StalenessReason | None:
        """Remove an abandoned lock and report the reason, or None when it stays.

        Reclaimers serialize on ``<resource>.reclaim.d``: the owner is read, judged and
        renamed away only while that guard is held, so a waiter that saw the same dead
        owner later finds the fresh lock instead of removing it. The renamed directory
        is checked once more and put back when its owner is not the one judged stale.
        """

        if self.get_lock_info(resource) is None:
            return None
        with self._reclaim_guard(resource) as entered:
            if not entered:
                logger.debug("Another process is reclaiming lock %s", resource)
                return None
            return self._reclaim_guarded(resource, force=force)

    def force_unlock(self, resource: str = DEFAULT_LOCK_RESOURCE) -> bool:
        return self.reclaim_if_stale(resource, force=True) is not None

    def cleanup_all_stale_locks(self) -> list[str]:
        """Sweep every lock resource and return names of reclaimed ones."""

        reclaimed: list[str] = []
        for info in self.list_locks():
            if self.reclaim_if_stale(info.resource) is not None:
                reclaimed.append(info.resource)
        if reclaimed:
            logger.info("Stale lock sweep reclaimed %d locks", len(reclaimed))
        return reclaimed

    def diagnose(self, resource: str = DEFAULT_LOCK_RESOURCE) -> LockDiagnostics:
        path = self.lock_path(resource)
        info = self.get_lock_info(resource)
        if info is None:
            return LockDiagnostics(
                resource=resource,
                path=str(path),
                exists=False,
                local_hostname=self.hostname,
            )
        same_host = info.hostname is None or info.hostname == self.hostname
        pid_alive = (
            self._liveness.is_alive(info.pid) if same_host and info.pid is not None else None
        )
        try:
            listing = sorted(item.name for item in path.iterdir())
        except FileNotFoundError:
            listing = []
        return LockDiagnostics(
            resource=resource,
            path=str(path),
            exists=True,
            age_seconds=self.lock_age_seconds(info),
            pid=info.pid,
            pid_alive=pid_alive,
            hostname=info.hostname,
            local_hostname=self.hostname,
            user=info.user,
            operation=info.operation,
            staleness=self.check_staleness(info),
            listing=listing,
        )

    def _reclaim_guarded(self, resource: str, *, force: bool) -> StalenessReason | None:
        info = self.get_lock_info(resource)
        if info is None:
            return None
        reason = self.check_staleness(info, force=force)
        if reason is None:
            return None
        path = self.lock_path(resource)
        tombstone = path.with_name(f"{path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            path.rename(tombstone)
        except FileNotFoundError:
            return None
        moved = _read_owner(tombstone, resource)
        if (moved.pid, moved.timestamp) != (info.pid, info.timestamp):
            self._restore_replaced_lock(resource, tombstone, moved)
            return None
        shutil.rmtree(tombstone, ignore_errors=True)
        self._held.discard(resource)
        logger.warning(
            "Reclaimed stale lock %s (reason=%s pid=%s host=%s)",
            resource,
            reason.value,
            info.pid,
            info.hostname,
        )
        return reason

    def _restore_replaced_lock(self, resource: str, tombstone: Path, owner: LockInfo) -> None:
        path = self.lock_path(resource)
        try:
            tombstone.rename(path)
        except OSError:
            logger.error(
                "Lock %s changed owner during reclaim and could not be restored (pid=%s)",
                resource,
                owner.pid,
            )
            shutil.rmtree(tombstone, ignore_errors=True)
            return
        logger.info(
            "Lock %s changed owner during reclaim; left pid=%s in place",
            resource,
            owner.pid,
        )

    @contextmanager
    def _reclaim_guard(self, resource: str) -> Iterator[bool]:
        guard = self.lock_dir / f"{resource}{RECLAIM_GUARD_SUFFIX}"
        if not self._enter_guard(guard):
            yield False
            return
        try:
            yield True
        finally:
            shutil.rmtree(guard, ignore_errors=True)

    def _enter_guard(self, guard: Path) -> bool:
        for _ in range(2):
            try:
                guard.mkdir()
            except FileExistsError:
                try:
                    age = self._now().timestamp() - guard.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age <= RECLAIM_GUARD_MAX_AGE_SECONDS:
                    return False
                logger.warning("Removing abandoned reclaim guard %s (age %.0fs)", guard, age)
                shutil.rmtree(guard, ignore_errors=True)
                continue
            return True
        return False

    def _try_create(self, path: Path, *, operation: str) -> bool:
        try:
            path.mkdir()
        except FileExistsError:
            return False
        try:
            owner = {
                "pid": str(self.pid),
                "timestamp": to_iso(self._now()),
                "hostname": self.hostname,
                "user": _current_user(),
                "operation": operation,
            }
            for name, value in owner.items():
                (path / name).write_text(f"{value}\n", "utf-8")
        except OSError:
            shutil.rmtree(path, ignore_errors=True)
            raise
        return True


def _read_field(path: Path) -> str | None:
    try:
        value = path.read_text("utf-8").strip()
    except (FileNotFoundError, NotADirectoryError):
        return None
    return value or None


def _current_user() -> str:
    return os.getenv("USER") or os.getenv("USERNAME") or "unknown"


def _read_owner(path: Path, resource: str) -> LockInfo:
    raw = {name: _read_field(path / name) for name in _OWNER_FIELDS}
    pid: int | None = None
    if raw["pid"] is not None:
        try:
            pid = int(raw["pid"])
        except ValueError:
            pid = None
    timestamp: datetime | None = None
    if raw["timestamp"] is not None:
        try:
            timestamp = from_iso(raw["timestamp"])
        except ValueError:
            timestamp = None
    return LockInfo(
        resource=resource,
        path=str(path),
        pid=pid,
        timestamp=timestamp,
        hostname=raw["hostname"],
        user=raw["user"],
        operation=raw["operation"],
    )
