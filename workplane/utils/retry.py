# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, wait_exponential

from workplane.config import settings
from workplane.exceptions import WorkplaneException
from workplane.utils.deadline import Deadline

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Capped exponential backoff, attempt counts from 0"""
    return min(max_delay, base_delay * (2**attempt))


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, WorkplaneException) and error.retryable


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    deadline: Deadline,
    description: str = "store operation",
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> T:
    """
    Run operation until it succeeds, retrying retryable workplane errors
    (conflicts and transient store failures) with backoff.

    The operation is expected to re-read whatever it mutates, so every attempt
    works on fresh state. Non-retryable errors are raised immediately; once the
    next wait would run past the deadline the last retryable error is raised.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        deadline: Overall deadline of the enclosing request
        description: Used in log messages only
    """
    base_delay = settings.retry_base_delay if base_delay is None else base_delay
    max_delay = settings.retry_max_delay if max_delay is None else max_delay
    wait = wait_exponential(multiplier=base_delay, max=max_delay)

    def out_of_time(retry_state: RetryCallState) -> bool:
        return deadline.remaining() <= wait(retry_state)

    def log_retry(retry_state: RetryCallState) -> None:
        logger.debug(
            f"Retrying {description} in {retry_state.next_action.sleep:.3f}s "
            f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        wait=wait,
        stop=out_of_time,
        before_sleep=log_retry,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except WorkplaneException as e:
        if e.retryable:
            attempts = retrying.statistics.get("attempt_number")
            logger.warning(f"Giving up on {description} after {attempts} attempts: {e}")
        raise
