"""
output_base 级互斥锁。

行为：
- 使用 `fcntl.flock` 在 `<output_base>/lock` 上加独占锁；进程退出（包括被 kill）时由 OS 释放；
- 拿不到锁时按固定间隔轮询，直到 `wait_secs` 上限；`block=False` 时立即失败；
- 持锁后把持有者信息（pid/时间/命令）写入锁文件，供等待方输出“谁在占用”；
- 锁文件内容只在持锁期间写入，读取方对半写/空内容容错。

说明：
- 仅支持 macOS/Linux（`fcntl`）。
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from relaybuild.core.errors import LockContention

logger = logging.getLogger(__name__)

_CONTENDED_ERRNOS = frozenset({errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES})


def read_lock_holder(lock_path: Path) -> Dict[str, Any]:
    """
    读取锁文件中的持有者信息（best-effort）。

    返回：
    - dict：解析失败/文件为空时返回空 dict
    """

    try:
        raw = Path(lock_path).read_text(encoding="utf-8")
    except OSError:
        return {}
    if not raw.strip():
        return {}
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return obj if isinstance(obj, dict) else {}


class OutputBaseLock:
    """
    output_base 互斥锁句柄（作用域获取，保证释放）。

    用法：
    - `with lock.holding(description={...}): ...`
    - 或显式 `acquire()` / `release()`（`release()` 幂等）
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        block: bool = True,
        wait_secs: float = 60.0,
        poll_interval: float = 0.1,
        on_wait: Optional[Callable[[Dict[str, Any]], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        参数：
        - lock_path：锁文件路径（父目录不存在时自动创建）
        - block：是否等待（False 时被占用立即抛 LockContention）
        - wait_secs：最长等待秒数
        - poll_interval：轮询间隔秒数
        - on_wait：第一次进入等待时的回调（参数为持有者信息）
        - clock/sleep：可注入的时钟（测试用）
        """

        self._path = Path(lock_path)
        self._block = bool(block)
        self._wait_secs = max(0.0, float(wait_secs))
        self._poll_interval = max(0.001, float(poll_interval))
        self._on_wait = on_wait
        self._clock = clock
        self._sleep = sleep
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _try_lock(self, fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except OSError as exc:
            if exc.errno in _CONTENDED_ERRNOS:
                return False
            raise

    def acquire(self, *, description: Optional[Dict[str, Any]] = None) -> None:
        """
        获取锁。

        参数：
        - description：写入锁文件的附加持有者信息（例如 command/cwd）

        异常：
        - LockContention：不等待且被占用，或等待超过上限
        - KeyboardInterrupt：等待期间被中断（放弃等待，不持有锁）
        """

        if self._fd is not None:
            raise RuntimeError(f"lock already held: {self._path}")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._path), os.O_RDWR | os.O_CREAT, 0o644)
        started = self._clock()
        announced = False
        try:
            while not self._try_lock(fd):
                waited = self._clock() - started
                holder = read_lock_holder(self._path)
                if not self._block or waited >= self._wait_secs:
                    logger.info("output base lock %s still held after %.1fs (holder=%s)", self._path, waited, holder)
                    raise LockContention(lock_path=str(self._path), holder=holder, waited_ms=int(waited * 1000))
                if not announced:
                    announced = True
                    logger.info("waiting for output base lock %s (holder=%s)", self._path, holder)
                    if self._on_wait is not None:
                        self._on_wait(holder)
                self._sleep(min(self._poll_interval, max(0.0, self._wait_secs - waited)))
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        record: Dict[str, Any] = {"pid": os.getpid(), "acquired_at_ms": int(time.time() * 1000)}
        record.update(description or {})
        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, json.dumps(record, ensure_ascii=False).encode("utf-8"))
        except OSError:
            logger.warning("failed to record lock holder in %s", self._path, exc_info=True)
        logger.debug("acquired output base lock %s after %.3fs", self._path, self._clock() - started)

    def release(self) -> None:
        """释放锁（幂等）。"""

        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            os.ftruncate(fd, 0)
        except OSError:
            logger.debug("failed to clear lock record %s", self._path, exc_info=True)
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("released output base lock %s", self._path)

    def holding(self, *, description: Optional[Dict[str, Any]] = None) -> "_Held":
        """返回持锁上下文：进入时 acquire，退出时（包括异常/中断）release。"""

        return _Held(self, description)

    def __enter__(self) -> "OutputBaseLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


class _Held:
    def __init__(self, lock: OutputBaseLock, description: Optional[Dict[str, Any]]) -> None:
        self._lock = lock
        self._description = description

    def __enter__(self) -> OutputBaseLock:
        self._lock.acquire(description=self._description)
        return self._lock

    def __exit__(self, *exc: Any) -> None:
        self._lock.release()


__all__ = ["OutputBaseLock", "read_lock_holder"]
