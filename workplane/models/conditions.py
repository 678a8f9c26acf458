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
Condition model.

A resource reports convergence through an ordered list of conditions, keyed by
type. The list keeps first-set order: updating an existing condition replaces
it in place, a new type is appended. last_transition_time only moves when the
status value actually changes, so re-applying the same condition is a no-op.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from workplane.models.meta import WireModel, utc_now

# Condition types shared across kinds
READY = "Ready"
SUCCEEDED = "Succeeded"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(WireModel):
    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[datetime] = None

    def same_as(self, other: "Condition") -> bool:
        """Equal in everything but the transition timestamp"""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
            and self.observed_generation == other.observed_generation
        )


class ConditionedStatus(WireModel):
    """Status fields every reconciled kind carries"""

    observed_generation: int = 0
    conditions: List[Condition] = Field(default_factory=list)


def find_status_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_status_condition(
    conditions: List[Condition], new_condition: Condition, now: Optional[datetime] = None
) -> bool:
    """
    Insert or update new_condition in conditions (in place).

    Returns True when the list changed. The transition time
    is preserved when the status is unchanged, otherwise set to now (or to the
    condition's own last_transition_time when the caller provided one).
    """
    existing = find_status_condition(conditions, new_condition.type)
    if existing is None:
        condition = new_condition.model_copy()
        if condition.last_transition_time is None:
            condition.last_transition_time = now or utc_now()
        conditions.append(condition)
        return True

    if existing.same_as(new_condition):
        return False

    if existing.status != new_condition.status:
        existing.status = new_condition.status
        existing.last_transition_time = new_condition.last_transition_time or now or utc_now()
    existing.reason = new_condition.reason
    existing.message = new_condition.message
    existing.observed_generation = new_condition.observed_generation
    return True


def remove_status_condition(conditions: List[Condition], condition_type: str) -> bool:
    for i, condition in enumerate(conditions):
        if condition.type == condition_type:
            del conditions[i]
            return True
    return False


def is_status_condition_true(conditions: List[Condition], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def is_status_condition_false(conditions: List[Condition], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.FALSE


def condition_status(conditions: List[Condition], condition_type: str) -> ConditionStatus:
    """Status of condition_type, Unknown when the condition is absent"""
    condition = find_status_condition(conditions, condition_type)
    return condition.status if condition is not None else ConditionStatus.UNKNOWN
