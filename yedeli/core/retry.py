"""
有限次重试
只重试 RetryableError（持久化超时、写冲突），业务规则异常直接抛出。
"""

import logging
import time
from typing import Callable, TypeVar

from .exceptions import RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """固定间隔的重试策略"""

    def __init__(self, max_attempts: int = 5, backoff_ms: int = 20,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self._sleep = sleep

    def run(self, operation: Callable[[], T], label: str = "operation") -> T:
        """
        执行 operation，遇到 RetryableError 时等待后重试

        Raises:
            RetryableError: 重试次数耗尽时抛出最后一次的异常
        """
        attempt = 1
        while True:
            try:
                return operation()
            except RetryableError as e:
                if attempt >= self.max_attempts:
                    logger.warning("%s failed after %d attempts: %s", label, attempt, e.error_code)
                    raise
                logger.info("%s attempt %d hit %s, retrying", label, attempt, e.error_code)
                attempt += 1
                if self.backoff_ms:
                    self._sleep(self.backoff_ms / 1000.0)
