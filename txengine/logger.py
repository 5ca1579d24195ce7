# txengine/logger.py
import asyncio
import logging
import os
import sys
from typing import Optional

import aiofiles
from aiocsv import AsyncWriter

from .models import TransactionMetrics


class MetricsAuditLogger:
    """
    Non-blocking persistence sink for TransactionMetrics.
    store() only enqueues; a background worker appends CSV rows to disk.
    Write failures are logged and dropped, never retried.
    """
    def __init__(self, filepath: str, logger: logging.Logger):
        self.filepath = filepath
        self.logger = logger
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the directory and header row if missing, then starts the writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            async with aiofiles.open(self.filepath, mode='w', newline='') as f:
                writer = AsyncWriter(f, dialect='unix')
                await writer.writerow(TransactionMetrics.HEADER)

        self._worker_task = asyncio.create_task(self._writer_worker())

    async def store(self, metrics: TransactionMetrics):
        await self._queue.put(metrics)

    async def flush(self):
        await self._queue.join()

    async def _writer_worker(self):
        while True:
            metrics = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(metrics.as_row())
                self.logger.info(f"💾 Metrics stored for {metrics.signature}")
            except Exception as e:
                self.logger.error(f"Failed to store metrics for {metrics.signature}: {e}")
            finally:
                self._queue.task_done()

    async def shutdown(self):
        if self._worker_task:
            self._worker_task.cancel()
            await asyncio.gather(self._worker_task, return_exceptions=True)


def setup_console_logger(name: str, level: str, logfile: Optional[str] = None):
    """
    Sets up the standard Python logger for console output, plus an optional file.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if logfile:
            directory = os.path.dirname(logfile)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(logfile)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
