"""
Cluster Secret Gateway: the narrow contract over the Kubernetes API.

Values cross this boundary as ``str`` (decoded from base64 with
``surrogateescape`` so arbitrary bytes round-trip unchanged). Every call
carries a request timeout, transient failures are retried with backoff, and
a circuit breaker stops hammering an unreachable API server.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from vwsync.config import KubernetesConfig
from vwsync.sync.models import LiveSecret
from vwsync.sync.resilience import CircuitBreaker, CircuitOpenError, call_with_resilience

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}


class GatewayError(Exception):
    """A cluster call failed (after retries, where retrying applies)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SecretNotFoundError(GatewayError):
    pass


class NamespaceNotFoundError(GatewayError):
    pass


def encode_value(value: str) -> str:
    return base64.b64encode(value.encode("utf-8", "surrogateescape")).decode("ascii")


def decode_value(value: str) -> str:
    return base64.b64decode(value).decode("utf-8", "surrogateescape")


class SecretGateway(ABC):
    """Get/list/create/update/delete Opaque Secrets in a namespace."""

    @abstractmethod
    def namespace_exists(self, namespace: str) -> bool: ...

    @abstractmethod
    def get_secret(self, namespace: str, name: str) -> LiveSecret | None: ...

    @abstractmethod
    def list_secrets(self, namespace: str, label_selector: str = "") -> list[LiveSecret]: ...

    @abstractmethod
    def create_secret(self, secret: LiveSecret) -> None: ...

    @abstractmethod
    def update_secret(self, secret: LiveSecret) -> None:
        """Overwrite an existing Secret. Raises SecretNotFoundError if it vanished."""

    @abstractmethod
    def delete_secret(self, namespace: str, name: str) -> bool:
        """Delete a Secret. Returns False if it was already gone."""


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ApiException):
        return exc.status in _TRANSIENT_STATUSES or not exc.status
    return isinstance(exc, (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError))


def load_core_api(cfg: KubernetesConfig) -> client.CoreV1Api:
    """Build a CoreV1Api from in-cluster credentials or a kubeconfig."""
    if cfg.in_cluster:
        config.load_incluster_config()
    else:
        config.load_kube_config(
            config_file=cfg.kubeconfig_path or None,
            context=cfg.context or None,
        )
    return client.CoreV1Api()


def _to_live(obj: Any) -> LiveSecret:
    meta = obj.metadata
    return LiveSecret(
        namespace=meta.namespace,
        name=meta.name,
        data={k: decode_value(v) for k, v in (obj.data or {}).items()},
        labels=dict(meta.labels or {}),
        annotations=dict(meta.annotations or {}),
        type=obj.type or "Opaque",
    )


def _to_body(secret: LiveSecret) -> client.V1Secret:
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=secret.name,
            namespace=secret.namespace,
            labels=secret.labels,
            annotations=secret.annotations,
        ),
        type=secret.type,
        data={k: encode_value(v) for k, v in secret.data.items()},
    )


class KubernetesSecretGateway(SecretGateway):
    """SecretGateway backed by the official kubernetes client."""

    def __init__(
        self,
        cfg: KubernetesConfig | None = None,
        api: client.CoreV1Api | None = None,
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        retry_wait_max: float = 8.0,
    ):
        if api is None:
            api = load_core_api(cfg or KubernetesConfig())
        self.api = api
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("kubernetes")
        self.retry_wait_max = retry_wait_max

    def _call(self, fn, *args, **kwargs):
        try:
            return call_with_resilience(
                fn,
                *args,
                breaker=self.breaker,
                is_transient=_is_transient,
                wait_min=min(1.0, self.retry_wait_max),
                wait_max=self.retry_wait_max,
                _request_timeout=self.timeout,
                **kwargs,
            )
        except CircuitOpenError as e:
            raise GatewayError(str(e)) from e
        except ApiException as e:
            if e.status == 404:
                raise SecretNotFoundError(f"not found: {e.reason}", status=404) from e
            raise GatewayError(f"Kubernetes API error {e.status}: {e.reason}", status=e.status) from e
        except (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError) as e:
            raise GatewayError(f"Kubernetes API unreachable: {e}") from e

    def namespace_exists(self, namespace: str) -> bool:
        try:
            self._call(self.api.read_namespace, namespace)
        except SecretNotFoundError:
            return False
        return True

    def get_secret(self, namespace: str, name: str) -> LiveSecret | None:
        try:
            obj = self._call(self.api.read_namespaced_secret, name, namespace)
        except SecretNotFoundError:
            return None
        return _to_live(obj)

    def list_secrets(self, namespace: str, label_selector: str = "") -> list[LiveSecret]:
        try:
            result = self._call(
                self.api.list_namespaced_secret, namespace, label_selector=label_selector
            )
        except SecretNotFoundError as e:
            raise NamespaceNotFoundError(
                f"Namespace '{namespace}' does not exist", status=404
            ) from e
        return [_to_live(obj) for obj in result.items]

    def create_secret(self, secret: LiveSecret) -> None:
        try:
            self._call(self.api.create_namespaced_secret, secret.namespace, _to_body(secret))
        except SecretNotFoundError as e:
            raise NamespaceNotFoundError(
                f"Namespace '{secret.namespace}' does not exist", status=404
            ) from e
        logger.debug("Created secret %s/%s", secret.namespace, secret.name)

    def update_secret(self, secret: LiveSecret) -> None:
        self._call(
            self.api.replace_namespaced_secret, secret.name, secret.namespace, _to_body(secret)
        )
        logger.debug("Replaced secret %s/%s", secret.namespace, secret.name)

    def delete_secret(self, namespace: str, name: str) -> bool:
        try:
            self._call(self.api.delete_namespaced_secret, name, namespace)
        except SecretNotFoundError:
            return False
        logger.debug("Deleted secret %s/%s", namespace, name)
        return True
