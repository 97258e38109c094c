#
# For licensing see accompanying LICENSE file.
# Copyright (C) 2024 Apple Inc. All Rights Reserved.
#

import threading
from concurrent.futures import ThreadPoolExecutor, wait

from loguru import logger


class PlyExporter:
    """
    Writes PLY checkpoints off the training thread. Exports run one at a
    time on a single worker, each on its own deep-copied snapshot; a failed
    write is logged and does not reach the caller.
    """

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ply-export")
        self._futures = []
        self._lock = threading.Lock()
        self.failures = 0

    def _export(self, snapshot, path):
        try:
            snapshot.save_ply(path)
        except OSError as e:
            with self._lock:
                self.failures += 1
            logger.error(f"Failed to write {path}: {e}")
            return None
        logger.info(f"Saved {snapshot.num_gaussians} Gaussians to {path}")
        return path

    def submit(self, snapshot, path):
        future = self._executor.submit(self._export, snapshot, path)
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        return future

    @property
    def pending(self):
        with self._lock:
            return sum(not f.done() for f in self._futures)

    def join(self):
        with self._lock:
            futures = list(self._futures)
        wait(futures)
        for future in futures:
            exc = future.exception()
            if exc is not None:
                logger.error(f"PLY export raised: {exc!r}")
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]

    def shutdown(self):
        self.join()
        self._executor.shutdown(wait=True)
