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
Control loop driver.

Feeds object keys to controllers through a level-triggered work queue:

- a key is processed by at most one worker at a time; a key added while it is
  being processed is queued again once that run finishes
- different keys are processed concurrently by a pool of workers
- failed runs are requeued with per-key exponential backoff, a successful run
  resets the backoff
- every controller watches its own kind and its related kinds; the watches
  relist when their resource version expires and periodically resync
"""

import asyncio
import logging
from typing import Dict, Hashable, List, Optional, Set, Tuple, Type

from workplane.config import settings
from workplane.exceptions import WatchExpiredException, WorkplaneException
from workplane.models.meta import ObjectKey, Resource
from workplane.reconciler.base import Controller, KeyMapper, ReconcileResult
from workplane.store.base import CONTROLLER_IDENTITY, Identity, Store
from workplane.utils.retry import backoff_delay

logger = logging.getLogger(__name__)

WorkItem = Tuple[str, ObjectKey]


class WorkQueue:
    """Deduplicating queue that never hands out an item that is already being processed"""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}

    def add(self, item: Hashable) -> None:
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.put_nowait(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        asyncio.get_running_loop().call_later(delay, self.add, item)

    def add_rate_limited(self, item: Hashable) -> float:
        """Requeue item after its backoff delay, returns the delay"""
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        delay = backoff_delay(failures, settings.requeue_base_delay, settings.requeue_max_delay)
        self.add_after(item, delay)
        return delay

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)

    async def get(self) -> Hashable:
        item = await self._queue.get()
        self._processing.add(item)
        self._dirty.discard(item)
        return item

    def done(self, item: Hashable) -> None:
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.put_nowait(item)

    def __len__(self) -> int:
        return self._queue.qsize()


class ControlLoop:
    """Runs a set of controllers against one store"""

    def __init__(
        self,
        store: Store,
        controllers: List[Controller],
        identity: Identity = CONTROLLER_IDENTITY,
        workers: Optional[int] = None,
        resync_period: Optional[float] = None,
    ):
        self.store = store
        self.identity = identity
        self.controllers: Dict[str, Controller] = {c.name: c for c in controllers}
        self.workers = workers or settings.reconcile_workers
        self.resync_period = resync_period or settings.resync_period
        self.queue = WorkQueue()

    async def process(self, item: WorkItem) -> bool:
        """Reconcile a single key, returns whether the run succeeded"""
        controller_name, key = item
        controller = self.controllers[controller_name]
        try:
            result: ReconcileResult = await controller.reconcile(key)
        except WorkplaneException as e:
            level = logging.WARNING if e.retryable else logging.ERROR
            logger.log(level, f"Failed to reconcile {controller_name} {key}: {e}")
            return False
        except Exception:
            logger.exception(f"Unexpected error reconciling {controller_name} {key}")
            return False

        if result.requeue_after is not None:
            self.queue.forget(item)
            self.queue.add_after(item, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(item)
        else:
            self.queue.forget(item)
        return True

    async def _worker(self, index: int) -> None:
        while True:
            item = await self.queue.get()
            try:
                if not await self.process(item):
                    delay = self.queue.add_rate_limited(item)
                    logger.debug(f"Requeued {item[0]} {item[1]} in {delay:.2f}s")
            finally:
                self.queue.done(item)

    async def resync_all(self) -> Dict[str, int]:
        """
        Reconcile every existing object of every controller once.

        Keys are reconciled concurrently across objects and serially per key.

        Returns:
            Number of failed reconciliations per controller
        """
        failures: Dict[str, int] = {}
        for name, controller in self.controllers.items():
            objects = await self.store.list(self.identity, controller.model)
            results = await asyncio.gather(*(self.process((name, obj.key)) for obj in objects.items))
            failures[name] = sum(1 for ok in results if not ok)
            logger.info(f"Resynced {len(results)} {name} objects, {failures[name]} failed")
        return failures

    async def _watch_kind(self, model: Type[Resource], targets: List[Tuple[str, Optional[KeyMapper]]]) -> None:
        """List and watch model forever, enqueueing the keys each target maps a change to"""
        attempt = 0
        while True:
            try:
                listed = await self.store.list(self.identity, model)
                for obj in listed.items:
                    await self._enqueue(obj, targets)
                resource_version = listed.resource_version
                attempt = 0
                while True:
                    async with self.store.watch(self.identity, model, resource_version=resource_version) as events:
                        async for event in events:
                            resource_version = event.object.metadata.resource_version or resource_version
                            await self._enqueue(event.object, targets)
            except WatchExpiredException:
                logger.info(f"Watch on {model.KIND} expired, relisting")
            except WorkplaneException as e:
                delay = backoff_delay(attempt, settings.requeue_base_delay, settings.requeue_max_delay)
                attempt += 1
                logger.warning(f"Watch on {model.KIND} failed, retrying in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)

    async def _enqueue(self, obj: Resource, targets: List[Tuple[str, Optional[KeyMapper]]]) -> None:
        for controller_name, mapper in targets:
            if mapper is None:
                self.queue.add((controller_name, obj.key))
                continue
            try:
                keys = await mapper(obj)
            except WorkplaneException as e:
                logger.warning(f"Failed to map {obj.KIND} {obj.key} for {controller_name}: {e}")
                continue
            for key in keys:
                self.queue.add((controller_name, key))

    def _watch_targets(self) -> Dict[Type[Resource], List[Tuple[str, Optional[KeyMapper]]]]:
        targets: Dict[Type[Resource], List[Tuple[str, Optional[KeyMapper]]]] = {}
        for name, controller in self.controllers.items():
            targets.setdefault(controller.model, []).append((name, None))
            for model, mapper in controller.related():
                targets.setdefault(model, []).append((name, mapper))
        return targets

    async def _periodic_resync(self) -> None:
        while True:
            await asyncio.sleep(self.resync_period)
            for name, controller in self.controllers.items():
                try:
                    objects = await self.store.list(self.identity, controller.model)
                except WorkplaneException as e:
                    logger.warning(f"Periodic resync of {name} failed: {e}")
                    continue
                for obj in objects.items:
                    self.queue.add((name, obj.key))

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run watches, workers and the periodic resync until stop is set (or forever)"""
        tasks = [asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}") for i in range(self.workers)]
        for model, targets in self._watch_targets().items():
            tasks.append(asyncio.create_task(self._watch_kind(model, targets), name=f"watch-{model.KIND}"))
        tasks.append(asyncio.create_task(self._periodic_resync(), name="periodic-resync"))
        logger.info(f"Control loop started with {len(self.controllers)} controllers and {self.workers} workers")
        try:
            if stop is None:
                await asyncio.gather(*tasks)
            else:
                await stop.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Control loop stopped")
