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

"""
Error taxonomy shared by the store adapters, the condition awaiter, the
reconcilers and the repositories.

Retry policy:
- ConflictException and StoreUnavailableException are transient and retried
  with backoff until the caller's deadline (see workplane.utils.retry)
- everything else is returned to the caller immediately
"""

from typing import List, Optional


class WorkplaneException(Exception):
    """Base class for every error raised by workplane"""

    retryable = False


class ResourceNotFoundException(WorkplaneException):
    """Referenced or watched object is absent"""

    def __init__(self, resource_type: str, name: str, namespace: Optional[str] = None):
        self.resource_type = resource_type
        self.name = name
        self.namespace = namespace
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{resource_type} {location} not found")


class ConditionTimeoutException(WorkplaneException):
    """The deadline elapsed before an awaited condition reached its desired value"""

    def __init__(self, resource_type: str, name: str, condition_type: str, desired_status: str, timeout: float):
        self.resource_type = resource_type
        self.name = name
        self.condition_type = condition_type
        self.desired_status = desired_status
        self.timeout = timeout
        super().__init__(
            f"{resource_type} {name} did not get the {condition_type} condition "
            f"with status {desired_status} within {timeout:.1f}s"
        )


class ConflictException(WorkplaneException):
    """Optimistic-concurrency rejection, the object changed since it was read"""

    retryable = True

    def __init__(self, resource_type: str, name: str, message: str = "the object has been modified"):
        self.resource_type = resource_type
        self.name = name
        super().__init__(f"conflict on {resource_type} {name}: {message}")


class InvalidStateException(WorkplaneException):
    """A semantic precondition does not hold, retrying will not help"""


class ForbiddenException(WorkplaneException):
    """The caller's identity lacks permission at the store level"""

    def __init__(self, user: str, verb: str, resource_type: str, namespace: Optional[str] = None):
        self.user = user
        self.verb = verb
        self.resource_type = resource_type
        self.namespace = namespace
        scope = f" in namespace {namespace}" if namespace else ""
        super().__init__(f"user {user!r} cannot {verb} {resource_type}{scope}")


class AlreadyExistsException(WorkplaneException):
    def __init__(self, resource_type: str, name: str):
        self.resource_type = resource_type
        self.name = name
        super().__init__(f"{resource_type} {name} already exists")


class StoreUnavailableException(WorkplaneException):
    """Transient failure talking to the declarative store"""

    retryable = True


class WatchExpiredException(WorkplaneException):
    """The requested watch resource version is no longer available, relist"""


class PropagationException(WorkplaneException):
    """One or more best-effort cleanup deletions failed during propagation"""

    def __init__(self, target_namespace: str, failures: List[str]):
        self.target_namespace = target_namespace
        self.failures = failures
        super().__init__(
            f"failed to clean up {len(failures)} propagated object(s) in namespace {target_namespace}: "
            + "; ".join(failures)
        )
