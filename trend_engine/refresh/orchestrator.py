"""
Refresh Orchestrator

依 aggregate 類型的 cadence 排程背景重算；失敗時保留舊 snapshot、記錄錯誤，
並以 exponential backoff (有上限) 重試。同一個 key 不會同時有兩個 refresh 在跑。
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional
import logging
import threading

from trend_engine.config import RefreshConfig
from trend_engine.errors import RecomputeFailed
from trend_engine.models import AggregateSnapshot
from trend_engine.stores.snapshot_cache import SnapshotCache, key_kind
from trend_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RefreshJob:
    name: str
    run: Callable[[], Any]
    cadence: timedelta
    next_due: datetime
    failures: int = 0
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class RefreshOrchestrator:
    """
    背景 refresh 排程

    Usage:
        orchestrator = RefreshOrchestrator(cache, config)
        orchestrator.register_computer("user_analytics", compute_user)
        orchestrator.schedule_refresh("user:u1")
        orchestrator.start()
    """

    def __init__(
        self,
        cache: SnapshotCache,
        config: Optional[RefreshConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cache = cache
        self.config = config or RefreshConfig()
        self.clock = clock
        self._computers: Dict[str, Callable[[str], Dict[str, Any]]] = {}
        self._jobs: Dict[str, RefreshJob] = {}
        self._job_locks: Dict[str, _KeyLock] = {}
        self._registry_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_computer(self, kind: str, compute: Callable[[str], Dict[str, Any]]) -> None:
        """註冊 aggregate 類型的計算函數 (key → payload)"""
        self._computers[kind] = compute

    @contextmanager
    def _exclusive(self, name: str, blocking: bool = True) -> Iterator[bool]:
        """
        同一個 name 的執行互斥

        Lock 只在有人持有或等待時存在於 registry，沒有 refresh 在跑的 key 不佔空間。

        Yields:
            是否取得 lock (blocking=False 時可能為 False)
        """
        with self._registry_lock:
            entry = self._job_locks.get(name)
            if entry is None:
                entry = _KeyLock()
                self._job_locks[name] = entry
            entry.holders += 1

        acquired = False
        try:
            acquired = entry.lock.acquire(blocking=blocking)
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._job_locks[name]

    def get_job(self, name: str) -> Optional[RefreshJob]:
        return self._jobs.get(name)

    def jobs(self) -> List[RefreshJob]:
        with self._registry_lock:
            return list(self._jobs.values())

    def schedule_refresh(self, key: str, cadence: Optional[timedelta] = None) -> RefreshJob:
        """
        排程 aggregate refresh；第一次在下一個 tick 執行

        Args:
            key: Aggregate key
            cadence: 覆寫該類型的預設 cadence
        """
        kind = key_kind(key)
        if kind not in self._computers:
            raise ValueError(f"No computer registered for aggregate kind: {kind}")

        cadence = cadence or self.config.cadence_for(kind)
        return self.schedule_task(key, lambda: self._refresh(key, cadence), cadence)

    def schedule_task(self, name: str, run: Callable[[], Any], cadence: timedelta) -> RefreshJob:
        """排程任意週期性任務 (例如 trend recompute)"""
        with self._registry_lock:
            job = self._jobs.get(name)
            if job is None:
                job = RefreshJob(name=name, run=run, cadence=cadence, next_due=self.clock())
                self._jobs[name] = job
                logger.info(f"Scheduled {name} every {cadence}")
            else:
                job.run = run
                job.cadence = cadence
        return job

    def unschedule(self, name: str) -> bool:
        with self._registry_lock:
            return self._jobs.pop(name, None) is not None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _staleness_budget(self, cadence: timedelta) -> float:
        return cadence.total_seconds() * self.config.staleness_budget_factor

    def _refresh(self, key: str, cadence: timedelta) -> AggregateSnapshot:
        """完整計算後才 swap；計算失敗時 cache 不變"""
        compute = self._computers[key_kind(key)]
        payload = compute(key)
        return self.cache.swap(key, payload, self._staleness_budget(cadence))

    def backoff_delay(self, failures: int) -> timedelta:
        """retry_base * 2^(failures-1)，上限 max_backoff"""
        seconds = self.config.retry_base_seconds * (2 ** max(failures - 1, 0))
        return timedelta(seconds=min(seconds, self.config.max_backoff_seconds))

    def _record_success(self, job: RefreshJob, now: datetime) -> None:
        job.failures = 0
        job.last_error = None
        job.last_success = now
        job.next_due = now + job.cadence

    def _record_failure(self, job: RefreshJob, error: BaseException, now: datetime) -> None:
        job.failures += 1
        job.last_error = str(error)
        delay = self.backoff_delay(job.failures)
        job.next_due = now + delay
        logger.error(f"Refresh {job.name} failed ({job.failures} consecutive): {error}; retry in {delay}")

    def _run_job(self, job: RefreshJob) -> bool:
        with self._exclusive(job.name, blocking=False) as acquired:
            if not acquired:
                logger.debug(f"Refresh {job.name} already running, skipped")
                return False
            try:
                job.run()
            except Exception as e:
                self._record_failure(job, e, self.clock())
                return False

            self._record_success(job, self.clock())
            return True

    def force_refresh(self, key: str) -> AggregateSnapshot:
        """
        立即重算 (等待同 key 正在進行的 refresh 完成)

        Raises:
            RecomputeFailed: 計算失敗 (舊 snapshot 保留，排程中的 job 進入 backoff)
        """
        kind = key_kind(key)
        if kind not in self._computers:
            raise ValueError(f"No computer registered for aggregate kind: {kind}")

        job = self._jobs.get(key)
        cadence = job.cadence if job else self.config.cadence_for(kind)

        with self._exclusive(key):
            try:
                snapshot = self._refresh(key, cadence)
            except Exception as e:
                if job is not None:
                    self._record_failure(job, e, self.clock())
                else:
                    logger.error(f"Forced refresh {key} failed: {e}")
                raise RecomputeFailed(key, e)

            if job is not None:
                self._record_success(job, self.clock())

        return snapshot

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        執行所有到期的 job

        Returns:
            成功完成的 job names
        """
        now = now or self.clock()
        due = [job for job in self.jobs() if job.next_due <= now]
        if not due:
            return []

        if self._executor is not None:
            outcomes = list(self._executor.map(self._run_job, due))
        else:
            outcomes = [self._run_job(job) for job in due]

        completed = [job.name for job, ok in zip(due, outcomes) if ok]
        logger.debug(f"Tick ran {len(due)} jobs ({len(completed)} succeeded)")
        return completed

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.background_workers,
            thread_name_prefix="refresh"
        )
        self._thread = threading.Thread(target=self._loop, name="refresh-orchestrator", daemon=True)
        self._thread.start()
        logger.info(f"Refresh orchestrator started ({self.config.background_workers} workers)")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Refresh tick failed: {e}", exc_info=True)
            self._stop_event.wait(self.config.tick_seconds)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join()
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Refresh orchestrator stopped")
