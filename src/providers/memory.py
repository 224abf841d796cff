"""In-memory provider.

Keeps resources in a dict. Used for local dry runs of a declaration set and
as the test double for the engine. Failures can be injected per resource id
to exercise retry and containment behaviour.
"""

import itertools
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Optional

from declarations import ResourceSpec

logger = logging.getLogger(__name__)


class MemoryProvider:
    """Dict-backed provider adapter.

    Attributes:
        name: Registry key (for log messages)
        objects: external_id -> attributes of live resources
        calls: Log of (operation, resource_id or external_id) in call order
    """

    def __init__(self, name: str = 'memory', computed: Optional[dict[str, dict[str, Any]]] = None):
        """Initialize the provider.

        Args:
            name: Registry key
            computed: Resource type -> extra attributes returned on create
                      (values may use {id} and {name} placeholders)
        """
        self.name = name
        self.computed = computed or {}
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._owners: dict[str, str] = {}
        self._faults: dict[str, deque] = defaultdict(deque)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, resource_id: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls for resource_id (one per call)."""
        with self._lock:
            self._faults[resource_id].extend(errors)

    def _maybe_fail(self, resource_id: str) -> None:
        with self._lock:
            queue = self._faults.get(resource_id)
            error = queue.popleft() if queue else None
        if error is not None:
            logger.debug(f"[{self.name}] Injected failure for {resource_id}: {error}")
            raise error

    def create(self, spec: ResourceSpec) -> tuple[str, dict[str, Any]]:
        with self._lock:
            self.calls.append(('create', spec.id))
        self._maybe_fail(spec.id)

        external_id = f'{spec.name}-{next(self._counter):04d}'
        attributes = dict(spec.attributes)
        attributes['id'] = external_id
        for key, template in self.computed.get(spec.type, {}).items():
            attributes[key] = (template.format(id=external_id, name=spec.name)
                               if isinstance(template, str) else template)
        with self._lock:
            self.objects[external_id] = attributes
            self._owners[external_id] = spec.id
        logger.info(f"[{self.name}] Created {spec.id} as {external_id}")
        return external_id, dict(attributes)

    def update(self, external_id: str, changes: dict, spec: Optional[ResourceSpec] = None) -> dict[str, Any]:
        resource_id = spec.id if spec is not None else self._owners.get(external_id, external_id)
        with self._lock:
            self.calls.append(('update', resource_id))
        self._maybe_fail(resource_id)

        with self._lock:
            if external_id not in self.objects:
                # Created by an earlier process; adopt it
                logger.debug(f"[{self.name}] Adopting {external_id} for {resource_id}")
                self.objects[external_id] = {'id': external_id}
                self._owners[external_id] = resource_id
            attributes = self.objects[external_id]
            for key, change in changes.items():
                if change.new is None:
                    attributes.pop(key, None)
                else:
                    attributes[key] = change.new
            result = dict(attributes)
        logger.info(f"[{self.name}] Updated {resource_id} ({', '.join(sorted(changes))})")
        return result

    def delete(self, external_id: str, record: Any = None) -> None:
        resource_id = record.resource_id if record is not None else self._owners.get(external_id, external_id)
        with self._lock:
            self.calls.append(('delete', resource_id))
        self._maybe_fail(resource_id)

        with self._lock:
            # Deleting something already gone is not an error
            self.objects.pop(external_id, None)
            self._owners.pop(external_id, None)
        logger.info(f"[{self.name}] Deleted {resource_id}")
