"""存储繁忙时的有界重试。

只对 StoreContention 重试，第 n 次重试前等待 base_delay * n 秒（线性退避）；
其他任何异常立即上抛，不在重试范围内。
"""

import time
from typing import Callable, Optional, TypeVar

from dreamquill_core.config.settings import settings
from dreamquill_core.domain.exceptions import StoreContention
from dreamquill_core.infrastructure.logging.logger import logger

T = TypeVar("T")


def retry_on_contention(
    action: Callable[[], T],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    retries = settings.store_max_retries if max_retries is None else max_retries
    unit = settings.store_retry_base_delay if base_delay is None else base_delay
    attempt = 0
    while True:
        try:
            return action()
        except StoreContention as exc:
            if attempt >= retries:
                raise
            delay = unit * (attempt + 1)
            logger.warning(
                f"store busy, retrying: {exc}",
                extra={"extra": {"attempt": attempt + 1, "delay": delay}},
            )
            sleep(delay)
            attempt += 1
