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
Store adapter over a Kubernetes API server.

Blocking client calls run in worker threads (asyncio.to_thread). Watches are
pumped from a thread into an asyncio queue. Each distinct caller token gets its
own API client so that the API server evaluates RBAC for the actual caller.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from kubernetes import client, config, dynamic, watch
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from workplane.config import settings
from workplane.exceptions import (
    AlreadyExistsException,
    ConflictException,
    ForbiddenException,
    ResourceNotFoundException,
    StoreUnavailableException,
    WatchExpiredException,
    WorkplaneException,
)
from workplane.models.meta import Resource
from workplane.store.base import (
    EventType,
    Identity,
    LabelSelector,
    R,
    ResourceList,
    Store,
    WatchEvent,
    format_label_selector,
)

logger = logging.getLogger(__name__)

_END = object()


def load_configuration(kubeconfig: Optional[str] = None) -> client.Configuration:
    configuration = client.Configuration()
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
        return configuration
    try:
        config.load_incluster_config(client_configuration=configuration)
    except ConfigException:
        config.load_kube_config(client_configuration=configuration)
    return configuration


def translate_api_exception(
    e: ApiException, kind: str, name: str = "", namespace: Optional[str] = None
) -> WorkplaneException:
    """Map an API server error onto the workplane error taxonomy"""
    if e.status == 404:
        return ResourceNotFoundException(kind, name, namespace)
    if e.status == 409:
        if e.reason == "AlreadyExists" or "already exists" in str(e.body or ""):
            return AlreadyExistsException(kind, name)
        return ConflictException(kind, name, str(e.reason))
    if e.status == 403:
        return ForbiddenException("", "access", kind, namespace)
    if e.status == 410:
        return WatchExpiredException(f"{kind} watch expired: {e.reason}")
    return StoreUnavailableException(f"{kind} {name}: API server returned {e.status} {e.reason}")


class KubernetesStore(Store):
    def __init__(
        self, kubeconfig: Optional[str] = None, watch_timeout_seconds: int = 60, watch_join_timeout: float = 5.0
    ):
        self._kubeconfig = kubeconfig or settings.kubeconfig
        self._watch_timeout_seconds = watch_timeout_seconds
        self._watch_join_timeout = watch_join_timeout
        self._base_configuration: Optional[client.Configuration] = None
        self._clients: Dict[Optional[str], dynamic.DynamicClient] = {}
        self._clients_lock = threading.Lock()

    def _client_for(self, identity: Identity) -> dynamic.DynamicClient:
        with self._clients_lock:
            if identity.token in self._clients:
                return self._clients[identity.token]
            if self._base_configuration is None:
                self._base_configuration = load_configuration(self._kubeconfig)
            configuration = self._base_configuration
            if identity.token:
                # A fresh configuration that authenticates with the caller's token only
                configuration = client.Configuration(host=self._base_configuration.host)
                configuration.ssl_ca_cert = self._base_configuration.ssl_ca_cert
                configuration.verify_ssl = self._base_configuration.verify_ssl
                configuration.api_key = {"authorization": identity.token}
                configuration.api_key_prefix = {"authorization": "Bearer"}
            dynamic_client = dynamic.DynamicClient(client.ApiClient(configuration))
            self._clients[identity.token] = dynamic_client
            return dynamic_client

    def _resource(self, identity: Identity, model: Type[R]):
        return self._client_for(identity).resources.get(api_version=model.API_VERSION, kind=model.KIND)

    async def _call(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str], fn):
        """Run fn(resource_api) in a worker thread, translating client errors"""

        def run():
            return fn(self._resource(identity, model))

        try:
            return await asyncio.to_thread(run)
        except ApiException as e:
            error = translate_api_exception(e, model.KIND, name, namespace)
            if isinstance(error, ForbiddenException):
                error = ForbiddenException(identity.user, "access", model.KIND, namespace)
            raise error from e
        except HTTPError as e:
            raise StoreUnavailableException(f"{model.KIND} {name}: {e}") from e

    @staticmethod
    def _write_body(obj: Resource) -> Dict[str, Any]:
        body = obj.to_dict()
        # Server managed
        body["metadata"].pop("generation", None)
        return body

    @staticmethod
    def _namespace_arg(model: Type[R], namespace: Optional[str]) -> Optional[str]:
        return namespace if model.NAMESPACED else None

    async def get(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str] = None) -> R:
        ns = self._namespace_arg(model, namespace)
        result = await self._call(identity, model, name, ns, lambda api: api.get(name=name, namespace=ns).to_dict())
        return model.from_dict(result)

    async def list(
        self,
        identity: Identity,
        model: Type[R],
        namespace: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
    ) -> ResourceList[R]:
        ns = self._namespace_arg(model, namespace)
        selector = format_label_selector(label_selector)
        result: Dict[str, Any] = await self._call(
            identity, model, "", ns, lambda api: api.get(namespace=ns, label_selector=selector).to_dict()
        )
        return ResourceList(
            items=[model.from_dict(item) for item in result.get("items") or []],
            resource_version=(result.get("metadata") or {}).get("resourceVersion", ""),
        )

    @asynccontextmanager
    async def watch(
        self,
        identity: Identity,
        model: Type[R],
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        label_selector: Optional[LabelSelector] = None,
        name: Optional[str] = None,
    ) -> AsyncIterator[AsyncIterator[WatchEvent[R]]]:
        ns = self._namespace_arg(model, namespace)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        watcher = watch.Watch()
        api = await self._call(identity, model, name or "", ns, lambda api: api)

        # Open responses are closed from the event loop to unblock the reading thread
        responses: List[Any] = []
        responses_lock = threading.Lock()
        stopped = threading.Event()

        def open_stream(**kwargs):
            response = api.get(**kwargs)
            with responses_lock:
                responses.append(response)
                if stopped.is_set():
                    response.close()
            return response

        def deliver(item) -> None:
            if not stopped.is_set():
                loop.call_soon_threadsafe(queue.put_nowait, item)

        def pump():
            try:
                for raw in watcher.stream(
                    open_stream,
                    namespace=ns,
                    field_selector=f"metadata.name={name}" if name else None,
                    label_selector=format_label_selector(label_selector),
                    resource_version=resource_version,
                    serialize=False,
                    timeout_seconds=self._watch_timeout_seconds,
                ):
                    deliver(raw)
            except Exception as e:  # handed over to the consuming coroutine
                deliver(e)
            finally:
                deliver(_END)

        thread = threading.Thread(target=pump, name=f"watch-{model.KIND}", daemon=True)
        thread.start()

        async def events() -> AsyncIterator[WatchEvent[R]]:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, ApiException):
                    raise translate_api_exception(item, model.KIND, name or "", ns) from item
                if isinstance(item, HTTPError):
                    raise StoreUnavailableException(f"{model.KIND} watch: {item}") from item
                if isinstance(item, Exception):
                    raise item
                event_type = item.get("type")
                raw_object = item.get("raw_object") or {}
                if event_type == "ERROR":
                    if raw_object.get("code") == 410:
                        raise WatchExpiredException(f"{model.KIND} watch expired: {raw_object.get('message')}")
                    raise StoreUnavailableException(f"{model.KIND} watch error: {raw_object.get('message')}")
                if event_type not in EventType.__members__:
                    continue
                yield WatchEvent(EventType(event_type), model.from_dict(raw_object))

        stream = events()
        try:
            yield stream
        finally:
            watcher.stop()
            with responses_lock:
                stopped.set()
                for response in responses:
                    response.close()
            await stream.aclose()
            await asyncio.to_thread(thread.join, self._watch_join_timeout)
            if thread.is_alive():
                logger.warning(f"{model.KIND} watch thread did not stop within {self._watch_join_timeout}s")

    async def create(self, identity: Identity, obj: R) -> R:
        model = type(obj)
        ns = self._namespace_arg(model, obj.namespace)
        body = self._write_body(obj)
        result = await self._call(
            identity, model, obj.name, ns, lambda api: api.create(body=body, namespace=ns).to_dict()
        )
        return model.from_dict(result)

    async def update(self, identity: Identity, obj: R) -> R:
        model = type(obj)
        ns = self._namespace_arg(model, obj.namespace)
        body = self._write_body(obj)
        if model.HAS_STATUS:
            body.pop("status", None)
        result = await self._call(
            identity, model, obj.name, ns, lambda api: api.replace(body=body, namespace=ns).to_dict()
        )
        return model.from_dict(result)

    async def update_status(self, identity: Identity, obj: R) -> R:
        model = type(obj)
        ns = self._namespace_arg(model, obj.namespace)
        body = self._write_body(obj)
        result = await self._call(
            identity, model, obj.name, ns, lambda api: api.status.replace(body=body, namespace=ns).to_dict()
        )
        return model.from_dict(result)

    async def delete(self, identity: Identity, model: Type[R], name: str, namespace: Optional[str] = None) -> None:
        ns = self._namespace_arg(model, namespace)
        await self._call(
            identity,
            model,
            name,
            ns,
            lambda api: api.delete(name=name, namespace=ns, body={"propagationPolicy": "Background"}),
        )
