import logging
import time


class BlockTimer:
    def __init__(self, label: str, logger: logging.Logger):
        self.label = label
        self.logger = logger
        self.total_time = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        self.total_time = self.end_time - self.start_time
        self.logger.debug("%s took %.3fs", self.label, self.total_time)

        # None, not self: a truthy return would swallow the exception.
        return None
