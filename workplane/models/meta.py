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

import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, NamedTuple, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GROUP = "workplane.io"
GROUP_VERSION = f"{GROUP}/v1alpha1"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def new_guid() -> str:
    return str(uuid.uuid4())


class WireModel(BaseModel):
    """
    Base for everything that travels to and from the store (camelCase on the wire).

    Fields the models do not declare are kept as extras and written back
    unchanged, so a read-modify-write never drops data owned by other writers.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class LocalObjectReference(WireModel):
    name: str = ""


class ObjectReference(WireModel):
    kind: str = ""
    name: str = ""
    api_version: str = ""
    namespace: Optional[str] = None


class OwnerReference(WireModel):
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False


class ObjectMeta(WireModel):
    name: str = ""
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


class ObjectKey(NamedTuple):
    namespace: Optional[str]
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


R = TypeVar("R", bound="Resource")

# kind -> model class, filled in as Resource subclasses are defined
KIND_REGISTRY: Dict[str, Type["Resource"]] = {}


class Resource(WireModel):
    """
    A versioned object in the declarative store.

    Subclasses set API_VERSION/KIND/PLURAL and declare their spec and status
    fields. HAS_STATUS marks kinds whose status is only writable through the
    status subresource.
    """

    API_VERSION: ClassVar[str] = "v1"
    KIND: ClassVar[str] = ""
    PLURAL: ClassVar[str] = ""
    NAMESPACED: ClassVar[bool] = True
    HAS_STATUS: ClassVar[bool] = False

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any):
        super().__pydantic_init_subclass__(**kwargs)
        if cls.__dict__.get("KIND"):
            KIND_REGISTRY[cls.KIND] = cls

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.metadata.namespace, self.metadata.name)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        data["apiVersion"] = self.API_VERSION
        data["kind"] = self.KIND
        return data

    @classmethod
    def from_dict(cls: Type[R], data: Dict[str, Any]) -> R:
        # apiVersion and kind come from the class
        return cls.model_validate({k: v for k, v in data.items() if k not in ("apiVersion", "kind")})

    def copy_deep(self: R) -> R:
        return self.model_copy(deep=True)

    def owner_reference(self, controller: bool = True) -> OwnerReference:
        if not self.metadata.uid:
            raise ValueError(f"{self.KIND} {self.name} has no uid yet, it must be read back from the store first")
        return OwnerReference(
            api_version=self.API_VERSION,
            kind=self.KIND,
            name=self.metadata.name,
            uid=self.metadata.uid,
            controller=controller,
            block_owner_deletion=controller,
        )

    def set_owner(self, owner: "Resource") -> None:
        """Set owner as the controlling owner, replacing any previous reference to the same uid"""
        ref = owner.owner_reference()
        self.metadata.owner_references = [r for r in self.metadata.owner_references if r.uid != ref.uid] + [ref]


def kind_for(name: str) -> Type[Resource]:
    try:
        return KIND_REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown resource kind: {name}") from None
