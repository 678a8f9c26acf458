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

import time


class Deadline:
    """Absolute point in time, derived from a caller-supplied timeout, shared by every nested operation"""

    def __init__(self, timeout: float):
        if timeout < 0:
            raise ValueError("Deadline timeout must not be negative")
        self.timeout = timeout
        self._expires_at = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def __repr__(self) -> str:
        return f"Deadline(timeout={self.timeout}, remaining={self.remaining():.3f})"
