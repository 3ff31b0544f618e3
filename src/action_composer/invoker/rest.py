"""Action invoker over the platform REST API."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any
from urllib.parse import quote

import requests

from action_composer.config import ComposerSettings
from action_composer.errors import InvocationError, NameValidationError
from action_composer.fqn import qualify
from action_composer.invoker.base import Recipient
from action_composer.values import JsonObject, as_object

logger = logging.getLogger(__name__)


class RestActionInvoker:
    """Invoke actions through ``/api/v1/namespaces/{ns}/actions/{name}``.

    The REST API has no notification mode, so ``notify`` is emulated: a
    daemon thread performs a blocking invocation and then posts the result to
    the recipient. The thread does not outlive the process; runtimes that
    freeze or recycle the process once the current activation returns can
    lose the delivery. Call :meth:`flush` before returning from such an
    activation.
    """

    def __init__(
        self,
        *,
        api_host: str,
        api_key: str,
        ignore_certs: bool = False,
        timeout: float = 70.0,
        session: requests.Session | None = None,
    ) -> None:
        if not api_host:
            raise ValueError("API host is required")
        if ":" not in api_key:
            raise ValueError("API key must have the form 'uuid:key'")

        base = api_host if api_host.startswith(("http://", "https://")) else f"https://{api_host}"
        self._base_url = f"{base.rstrip('/')}/api/v1"
        self._timeout = timeout
        self._session = session or requests.Session()
        user, password = api_key.split(":", 1)
        self._session.auth = (user, password)
        self._session.verify = not ignore_certs
        self._session.headers.update({"User-Agent": "action-composer"})
        self._pending: set[threading.Thread] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: ComposerSettings) -> RestActionInvoker:
        return cls(
            api_host=settings.api_host,
            api_key=settings.api_key,
            ignore_certs=settings.ignore_certs,
        )

    def _action_url(self, name: str) -> str:
        try:
            qualified = qualify(name)
        except NameValidationError as exc:
            raise InvocationError(str(exc), code=400) from exc
        _, namespace, *rest = qualified.split("/")
        return f"{self._base_url}/namespaces/{quote(namespace)}/actions/{quote('/'.join(rest))}"

    def _post(self, name: str, params: JsonObject, *, blocking: bool) -> dict[str, Any]:
        url = self._action_url(name)
        query = {"blocking": "true" if blocking else "false", "result": "false"}
        try:
            resp = self._session.post(url, params=query, json=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise InvocationError(f"Failed to invoke {name}: {exc}") from exc

        # A blocking invocation of a failed action still returns its activation.
        if resp.status_code == 502 and blocking:
            return resp.json()
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise InvocationError(
                f"Failed to invoke {name}: HTTP {resp.status_code}", code=resp.status_code
            ) from exc
        return resp.json()

    def invoke(
        self,
        name: str,
        params: JsonObject,
        *,
        blocking: bool = False,
        notify: Recipient | None = None,
        cause: str | None = None,
    ) -> JsonObject | str:
        logger.debug(
            "Invoking action",
            extra={"action": name, "blocking": blocking, "cause": cause, "notify": notify is not None},
        )
        if notify is not None:
            return self._invoke_with_notification(name, params, notify)

        activation = self._post(name, params, blocking=blocking)
        if not blocking or "response" not in activation:
            # Blocking calls that outlive the platform's wait come back as ids.
            return str(activation.get("activationId", ""))
        return as_object(activation["response"].get("result", {}))

    def _invoke_with_notification(self, name: str, params: JsonObject, notify: Recipient) -> str:
        request_id = uuid.uuid4().hex
        thread = threading.Thread(
            target=self._deliver,
            name=f"notify-{request_id}",
            daemon=True,
            kwargs={"name": name, "params": params, "notify": notify},
        )
        with self._lock:
            self._pending.add(thread)
        thread.start()
        return request_id

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for emulated notifications still in flight.

        Returns True when every delivery finished within ``timeout``.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            pending = list(self._pending)
        for thread in pending:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            thread.join(remaining)
        with self._lock:
            self._pending = {thread for thread in self._pending if thread.is_alive()}
            return not self._pending

    def _deliver(self, *, name: str, params: JsonObject, notify: Recipient) -> None:
        try:
            try:
                result = self.invoke(name, params, blocking=True)
            except InvocationError as exc:
                result = {"error": str(exc)}
            if isinstance(result, str):
                result = {"error": f"Activation {result} of {name} did not complete in time"}
            try:
                self.invoke(notify.action, notify.delivery(result), blocking=False)
            except InvocationError:
                logger.exception(
                    "Failed to deliver result", extra={"action": name, "recipient": notify.action}
                )
        finally:
            with self._lock:
                self._pending.discard(threading.current_thread())
