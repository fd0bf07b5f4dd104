"""FileLock - ストアドキュメント用のプロセス間排他ロック

フックは別プロセスとして並列起動されるため、プロセス内Mutexでは不十分。
サイドカーの .lock ファイルに flock（Windowsでは msvcrt.locking）をかける。
"""

import os
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Union

_LOCK_SIZE = 1024
_POLL_INTERVAL_SECONDS = 0.05


class LockTimeoutError(TimeoutError):
    """ロック取得がタイムアウトした"""


def _try_lock(fd: int, blocking: bool) -> bool:
    if sys.platform == "win32":
        import msvcrt

        mode = msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK
        try:
            msvcrt.locking(fd, mode, _LOCK_SIZE)
            return True
        except OSError:
            if blocking:
                raise
            return False

    import fcntl

    flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
    try:
        fcntl.flock(fd, flags)
        return True
    except BlockingIOError:
        return False


def _unlock(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, _LOCK_SIZE)
        return

    import fcntl

    fcntl.flock(fd, fcntl.LOCK_UN)


class FileLock:
    """排他ファイルロック（コンテキストマネージャ）

    プロセス間はflock、同一インスタンスを共有するスレッド間は
    threading.Lockで排他する。再入は不可。
    """

    def __init__(self, path: Union[str, Path], timeout: Optional[float] = None):
        """初期化

        Args:
            path: ロックファイルのパス
            timeout: 取得待ちの上限秒数（None: 無期限ブロック）
        """
        self.path = Path(path)
        self.timeout = timeout
        self._fd: Optional[int] = None
        self._thread_lock = threading.Lock()

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """ロックを取得する

        Raises:
            LockTimeoutError: timeout秒以内に取得できなかった場合
            OSError: ロックファイルを開けない場合
        """
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        if not self._thread_lock.acquire(timeout=-1 if self.timeout is None else self.timeout):
            raise LockTimeoutError(f"ロック取得タイムアウト({self.timeout}s): {self.path}")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        except BaseException:
            self._thread_lock.release()
            raise

        try:
            if deadline is None:
                _try_lock(fd, blocking=True)
            else:
                while not _try_lock(fd, blocking=False):
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"ロック取得タイムアウト({self.timeout}s): {self.path}"
                        )
                    time.sleep(_POLL_INTERVAL_SECONDS)
        except BaseException:
            os.close(fd)
            self._thread_lock.release()
            raise
        self._fd = fd

    def release(self) -> None:
        """ロックを解放する（未取得なら何もしない）"""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            _unlock(fd)
        finally:
            os.close(fd)
            self._thread_lock.release()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
