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

from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Workplane settings, loaded from WORKPLANE_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="WORKPLANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    # Store
    store_type: Literal["memory", "kubernetes"] = "kubernetes"
    kubeconfig: Optional[str] = None
    root_namespace: str = "cf"

    # Tenant propagation
    container_registry_secret_names: List[str] = ["image-registry-credentials"]
    propagated_from_label: str = "workplane.io/propagated-from"
    propagate_role_binding_annotation: str = "workplane.io/propagate-cf-role"
    propagate_deletion_annotation: str = "workplane.io/propagate-deletion"
    org_guid_label: str = "workplane.io/org-guid"
    space_guid_label: str = "workplane.io/space-guid"
    parent_namespace_label: str = "workplane.io/parent-namespace"
    package_manager_key_prefixes: List[str] = [
        "kapp.k14s.io/",
        "meta.helm.sh/",
        "app.kubernetes.io/managed-by",
        "kubectl.kubernetes.io/last-applied-configuration",
    ]

    # Workloads
    app_revision_annotation: str = "workplane.io/app-rev"
    task_sequence_annotation: str = "workplane.io/task-sequence-id"
    default_task_memory_mb: int = 256
    default_task_disk_mb: int = 128

    # Default deadline handed to repositories by the API layer
    default_await_timeout: float = 120.0

    # Retry/backoff for conflicts and transient store errors
    retry_base_delay: float = 0.05
    retry_max_delay: float = 2.0

    # Control loop
    reconcile_workers: int = 4
    # Deadline for the store retries inside a single reconcile attempt
    reconcile_timeout: float = 30.0
    resync_period: float = 600.0
    requeue_base_delay: float = 0.5
    requeue_max_delay: float = 60.0

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    resync_schedule_seconds: float = 300.0


settings = Settings()
