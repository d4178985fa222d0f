"""
Background image saving.

`ParallelImageWriter` keeps a fixed number of writer threads that drain a
shared queue of save requests, so that a producer (e.g. a time-lapse fusion
loop) can hand over results and continue with the next timepoint.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Union

import numpy as np
from numpy.typing import NDArray

from silvergt.dataio.imageio import write_image


class ParallelImageWriter:
    """
    Pool of image writer threads.

    Parameters
    ----------
    n_workers : int
        Number of writer threads.
    writer : callable, optional
        Function `writer(path, image)` doing the actual save,
        `silvergt.dataio.imageio.write_image` by default.
    """

    def __init__(
        self,
        n_workers: int = 2,
        writer: Optional[Callable[[Path, NDArray], None]] = None,
    ):
        if n_workers < 1:
            raise ValueError("n_workers must be >= 1.")
        self._writer = writer if writer is not None else write_image
        self._executor = ThreadPoolExecutor(
            max_workers=int(n_workers), thread_name_prefix="Image saver"
        )
        self._futures: List[Future] = []
        self._waiting = 0
        self._cond = threading.Condition()
        self._closed = False

    def not_yet_saved_count(self) -> int:
        """How many requests are queued and not yet picked up by a writer."""
        with self._cond:
            return self._waiting

    def _save(self, image: NDArray, path: Path) -> None:
        with self._cond:
            self._waiting -= 1
            self._cond.notify_all()
        self._writer(path, image)

    def add_save_request(self, image: NDArray, path: Union[str, Path]) -> Future:
        """
        Enqueue `image` to be saved to `path`; returns immediately.

        The image is copied, so the caller may reuse its buffer.
        """
        with self._cond:
            if self._closed:
                raise RuntimeError("Cannot add save requests to a closed writer.")
            self._waiting += 1
        future = self._executor.submit(self._save, np.array(image, copy=True), Path(path))
        self._futures.append(future)
        return future

    def add_save_request_or_block_until_less_than(
        self,
        max_queue_length: int,
        image: NDArray,
        path: Union[str, Path],
    ) -> Future:
        """
        Enqueue `image` once fewer than `max_queue_length` requests are waiting.

        Blocks the caller until then, so the queue never grows beyond
        `max_queue_length`.
        """
        if max_queue_length < 1:
            raise ValueError("max_queue_length must be >= 1.")
        with self._cond:
            self._cond.wait_for(lambda: self._waiting < max_queue_length)
        return self.add_save_request(image, path)

    def close_all_workers_leave_possibly_unsaved(self) -> None:
        """
        Stop the writers; saves in progress finish, queued requests are dropped.
        """
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=True, cancel_futures=True)
        with self._cond:
            self._waiting = 0
            self._cond.notify_all()

    def close_all_workers_finish_unsaved_first(self) -> None:
        """
        Save every queued image, then stop the writers.

        Raises
        ------
        Exception
            The first error raised by any of the saves.
        """
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=True)
        for future in self._futures:
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()

    def __enter__(self) -> "ParallelImageWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close_all_workers_finish_unsaved_first()
        else:
            self.close_all_workers_leave_possibly_unsaved()
