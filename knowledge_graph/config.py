"""
Deduplication and Sync Configuration

Environment Variables:
- DEDUP_CANDIDATE_LIMIT: Max candidates per extracted item, 1-20 (default 5)
- DEDUP_SIMILARITY_THRESHOLD: Minimum ANN similarity, 0.0-1.0 (default 0.7)
- DEDUP_LLM_CONFIDENCE_THRESHOLD: Auto-merge confidence, 0-100 (default 95).
  100 disables automatic merging.
- DEDUP_DEGRADE_ON_VECTOR_FAILURE: Continue with no candidates when the
  vector store is unreachable (default false)

Invalid or out-of-range values fall back to the default with a warning.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", int, float)

DEFAULT_CANDIDATE_LIMIT = 5
MIN_CANDIDATE_LIMIT = 1
MAX_CANDIDATE_LIMIT = 20

DEFAULT_SIMILARITY_THRESHOLD = 0.7
MIN_SIMILARITY_THRESHOLD = 0.0
MAX_SIMILARITY_THRESHOLD = 1.0

DEFAULT_LLM_CONFIDENCE_THRESHOLD = 95
MIN_LLM_CONFIDENCE_THRESHOLD = 0
MAX_LLM_CONFIDENCE_THRESHOLD = 100


def _bounded_env(name: str, default: T, low: T, high: T, parse: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning(f"Invalid {name}='{raw}', using default {default}")
        return default
    if value < low or value > high:
        logger.warning(f"{name}={value} outside [{low}, {high}], using default {default}")
        return default
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DeduplicationConfig:
    """Thresholds for the two-phase deduplication process"""

    candidate_limit: int = DEFAULT_CANDIDATE_LIMIT
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    llm_confidence_threshold: int = DEFAULT_LLM_CONFIDENCE_THRESHOLD
    degrade_on_vector_failure: bool = False

    def __post_init__(self):
        if not MIN_CANDIDATE_LIMIT <= self.candidate_limit <= MAX_CANDIDATE_LIMIT:
            raise ValueError(
                f"candidate_limit must be in [{MIN_CANDIDATE_LIMIT}, {MAX_CANDIDATE_LIMIT}], "
                f"got {self.candidate_limit}"
            )
        if not MIN_SIMILARITY_THRESHOLD <= self.similarity_threshold <= MAX_SIMILARITY_THRESHOLD:
            raise ValueError(
                f"similarity_threshold must be in [{MIN_SIMILARITY_THRESHOLD}, {MAX_SIMILARITY_THRESHOLD}], "
                f"got {self.similarity_threshold}"
            )
        if not MIN_LLM_CONFIDENCE_THRESHOLD <= self.llm_confidence_threshold <= MAX_LLM_CONFIDENCE_THRESHOLD:
            raise ValueError(
                f"llm_confidence_threshold must be in [{MIN_LLM_CONFIDENCE_THRESHOLD}, {MAX_LLM_CONFIDENCE_THRESHOLD}], "
                f"got {self.llm_confidence_threshold}"
            )

    @classmethod
    def from_env(cls) -> "DeduplicationConfig":
        config = cls(
            candidate_limit=_bounded_env(
                "DEDUP_CANDIDATE_LIMIT", DEFAULT_CANDIDATE_LIMIT,
                MIN_CANDIDATE_LIMIT, MAX_CANDIDATE_LIMIT, int,
            ),
            similarity_threshold=_bounded_env(
                "DEDUP_SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD,
                MIN_SIMILARITY_THRESHOLD, MAX_SIMILARITY_THRESHOLD, float,
            ),
            llm_confidence_threshold=_bounded_env(
                "DEDUP_LLM_CONFIDENCE_THRESHOLD", DEFAULT_LLM_CONFIDENCE_THRESHOLD,
                MIN_LLM_CONFIDENCE_THRESHOLD, MAX_LLM_CONFIDENCE_THRESHOLD, int,
            ),
            degrade_on_vector_failure=_bool_env("DEDUP_DEGRADE_ON_VECTOR_FAILURE", False),
        )
        logger.info(
            f"Deduplication config: candidates={config.candidate_limit}, "
            f"similarity>={config.similarity_threshold}, "
            f"llm_confidence>={config.llm_confidence_threshold}, "
            f"auto_merge={'on' if config.is_auto_merge_enabled() else 'off'}"
        )
        return config

    def is_auto_merge_enabled(self) -> bool:
        return self.llm_confidence_threshold < MAX_LLM_CONFIDENCE_THRESHOLD


@dataclass(frozen=True)
class RetryPolicy:
    """
    Governs re-queueing of failed store syncs.

    Delay before attempt n+1 is base_delay * 2**(n-1), capped at max_delay.
    A note/store pair with max_attempts failed attempts is left in error
    until an operator re-queues it explicitly.
    """

    max_attempts: int = 5
    base_delay: float = 30.0
    max_delay: float = 3600.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def backoff(self, attempts: int) -> float:
        if attempts <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (attempts - 1)))

    def is_eligible(self, attempts: int, last_attempt_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if attempts >= self.max_attempts:
            return False
        if last_attempt_at is None:
            return True
        now = now or datetime.utcnow()
        return now >= last_attempt_at + timedelta(seconds=self.backoff(attempts))
