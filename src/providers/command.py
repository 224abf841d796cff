"""Hook-command provider.

Delegates each operation to an external command (a wrapper script around
gcloud, a vendor CLI, ...). The command receives a JSON request on stdin:

    {"operation": "create", "type": "google_storage_bucket",
     "name": "assets", "attributes": {...}}
    {"operation": "update", "type": ..., "external_id": "...",
     "attributes": {...}, "changes": {"attr": {"old": ..., "new": ...}}}
    {"operation": "delete", "type": ..., "external_id": "..."}

and answers on stdout with JSON:

    {"id": "projects/p/buckets/assets", "attributes": {...}}

Exit status 75 (EX_TEMPFAIL) or a timeout marks the failure as transient;
any other non-zero status is permanent.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from common import EXEC_ERROR_RC, TIMEOUT_RC, run_command
from declarations import ResourceSpec
from reconciler.errors import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# sysexits.h EX_TEMPFAIL
TRANSIENT_EXIT_CODES = {75}


class CommandProvider:
    """Provider adapter that shells out to configured hook commands."""

    def __init__(
        self,
        name: str,
        hooks: dict[str, list[str]],
        timeout: int = 300,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ):
        self.name = name
        self.hooks = hooks
        self.timeout = timeout
        self.env = env or {}
        self.cwd = cwd

    def _run(self, operation: str, resource_id: str, request: dict) -> dict:
        """Run the hook for an operation and parse its JSON reply."""
        cmd = self.hooks[operation]
        env = {**os.environ, **self.env} if self.env else None
        logger.debug(f"[{self.name}] {operation} {resource_id}: {' '.join(cmd)}")

        rc, out, err = run_command(
            cmd,
            cwd=self.cwd,
            timeout=self.timeout,
            env=env,
            input_data=json.dumps(request),
        )
        if rc == TIMEOUT_RC or rc in TRANSIENT_EXIT_CODES:
            raise TransientProviderError(
                f"{operation} hook failed (rc={rc}): {err.strip() or 'no output'}",
                resource_id,
            )
        if rc == EXEC_ERROR_RC:
            raise PermanentProviderError(f"{operation} hook could not run: {err.strip()}", resource_id)
        if rc != 0:
            raise PermanentProviderError(
                f"{operation} hook failed (rc={rc}): {err.strip() or out.strip() or 'no output'}",
                resource_id,
            )

        if not out.strip():
            return {}
        try:
            reply = json.loads(out)
        except json.JSONDecodeError as e:
            raise PermanentProviderError(f"{operation} hook returned invalid JSON: {e}", resource_id)
        if not isinstance(reply, dict):
            raise PermanentProviderError(f"{operation} hook must return a JSON object", resource_id)
        return reply

    def create(self, spec: ResourceSpec) -> tuple[str, dict[str, Any]]:
        reply = self._run('create', spec.id, {
            'operation': 'create',
            'type': spec.type,
            'name': spec.name,
            'attributes': spec.attributes,
        })
        external_id = reply.get('id')
        if not external_id:
            raise PermanentProviderError("create hook reply is missing 'id'", spec.id)
        attributes = reply.get('attributes') or {}
        return str(external_id), dict(attributes)

    def update(self, external_id: str, changes: dict, spec: Optional[ResourceSpec] = None) -> dict[str, Any]:
        resource_id = spec.id if spec is not None else external_id
        request: dict[str, Any] = {
            'operation': 'update',
            'external_id': external_id,
            'changes': {name: {'old': c.old, 'new': c.new} for name, c in changes.items()},
        }
        if spec is not None:
            request.update(type=spec.type, name=spec.name, attributes=spec.attributes)
        reply = self._run('update', resource_id, request)
        return dict(reply.get('attributes') or {})

    def delete(self, external_id: str, record: Any = None) -> None:
        resource_id = record.resource_id if record is not None else external_id
        request: dict[str, Any] = {'operation': 'delete', 'external_id': external_id}
        if record is not None:
            request['type'] = record.type
        self._run('delete', resource_id, request)
