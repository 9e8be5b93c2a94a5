"""Process memory sampling before expensive fetch strategies."""

import gc
import logging
from dataclasses import dataclass
from typing import Optional

import psutil

from pricewatch.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MemorySample:
    rss_mb: float
    threshold_mb: float
    reclaimed: bool = False
    rss_after_mb: Optional[float] = None

    @property
    def over_threshold(self) -> bool:
        return self.rss_mb > self.threshold_mb


class MemoryGuard:
    """Samples resident memory and runs a gc pass when above the threshold."""

    def __init__(self, threshold_mb: Optional[float] = None):
        self.threshold_mb = threshold_mb if threshold_mb is not None else settings.memory_threshold_mb
        self._process = psutil.Process()

    def rss_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    def check(self) -> MemorySample:
        """Sample memory; collect garbage first if the process is over the threshold."""
        sample = MemorySample(rss_mb=self.rss_mb(), threshold_mb=self.threshold_mb)
        if not sample.over_threshold:
            return sample

        collected = gc.collect()
        sample.reclaimed = True
        sample.rss_after_mb = self.rss_mb()
        logger.warning(
            f"Memory {sample.rss_mb:.0f}MB above {self.threshold_mb:.0f}MB; "
            f"gc collected {collected} objects, now {sample.rss_after_mb:.0f}MB"
        )
        return sample
