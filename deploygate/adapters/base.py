"""
Adapter contract and runtime.

Every backend adapter subclasses ``DMSAdapter``. The base class owns the
lazily created backend client: the first operation that needs it runs
``_connect`` exactly once behind an asyncio lock, and the resulting client
or error is replayed to every later caller. A fresh adapter instance is
needed to retry a failed connection.

Public operations take a keyword-only ``cancel`` signal (anything with an
``is_set()`` method) that is checked before any backend I/O.
"""

import asyncio
import functools
import inspect
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, TypeVar, Union

from ..errors import BackendError, DMSError, OperationCancelledError, ValidationError
from ..models import (
    Capability,
    Deployment,
    DeploymentHistory,
    DeploymentPackage,
    DeploymentPackageUpload,
    DeploymentRequest,
    DeploymentStatusDetail,
    DeploymentUpdate,
    Filter,
    LogOptions,
)
from ..telemetry import error_kind, record_operation, span
from .common import paginate

logger = logging.getLogger(__name__)

ClientT = TypeVar("ClientT")
ClientFactory = Callable[[], Union[Any, Awaitable[Any]]]


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


def check_cancelled(cancel: Optional[CancelSignal], operation: str = "operation") -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(operation)


def operation(name: str) -> Callable:
    """Wrap a public adapter coroutine with the cancellation check, a span and metrics."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self: "DMSAdapter", *args, cancel: Optional[CancelSignal] = None, **kwargs):
            check_cancelled(cancel, name)

            kind = None
            start = time.perf_counter()
            try:
                with span(f"{self.name}.{name}", {"dms.adapter": self.name, "dms.operation": name}):
                    return await func(self, *args, cancel=cancel, **kwargs)
            except asyncio.CancelledError:
                kind = OperationCancelledError.kind
                raise
            except Exception as e:
                kind = error_kind(e)
                raise
            finally:
                record_operation(self.name, name, time.perf_counter() - start, kind)

        return wrapper

    return decorator


class DMSAdapter(ABC, Generic[ClientT]):
    """Canonical operation set every deployment backend implements."""

    name: str = ""
    version: str = ""

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        """Initialize the adapter.

        Args:
            client_factory: Builds the backend client on first use. Defaults
                to the adapter's own connection logic.
        """
        self._client_factory = client_factory
        self._client: Optional[ClientT] = None
        self._init_error: Optional[Exception] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # Runtime

    @abstractmethod
    async def _default_client(self) -> ClientT:
        """Connect to the backend using settings."""

    async def _connect(self) -> ClientT:
        if self._client_factory is None:
            return await self._default_client()
        result = self._client_factory()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _ensure_client(self, cancel: Optional[CancelSignal] = None) -> ClientT:
        """Return the backend client, connecting at most once per adapter instance."""
        check_cancelled(cancel, "initialize")
        if not self._initialized:
            async with self._init_lock:
                check_cancelled(cancel, "initialize")
                if not self._initialized:
                    try:
                        self._client = await self._connect()
                        logger.info("%s adapter initialized", self.name)
                    except DMSError as e:
                        self._init_error = e
                    except Exception as e:  # noqa: BLE001
                        self._init_error = BackendError(str(e), "initialize", self.name)
                        self._init_error.__cause__ = e
                    if self._init_error is not None:
                        logger.error("%s adapter initialization failed: %s", self.name, self._init_error)
                    self._initialized = True
        if self._init_error is not None:
            raise self._init_error
        return self._client

    @staticmethod
    def _require(payload: Any, what: str) -> None:
        if payload is None:
            raise ValidationError(f"{what} cannot be None")

    @staticmethod
    def _page(items: list, filter: Optional[Filter]) -> list:
        if filter is None:
            return items
        return paginate(items, filter.limit, filter.offset)

    @staticmethod
    def _matches(deployment: Deployment, filter: Optional[Filter]) -> bool:
        if filter is None:
            return True
        if filter.namespace and deployment.namespace != filter.namespace:
            return False
        if filter.status and deployment.status != filter.status:
            return False
        return True

    # Metadata

    @abstractmethod
    def capabilities(self) -> list[Capability]:
        """Capabilities this backend supports."""

    def supports_rollback(self) -> bool:
        return Capability.ROLLBACK in self.capabilities()

    def supports_scaling(self) -> bool:
        return Capability.SCALING in self.capabilities()

    def supports_gitops(self) -> bool:
        return Capability.GITOPS in self.capabilities()

    # Packages

    @abstractmethod
    async def list_packages(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[DeploymentPackage]: ...

    @abstractmethod
    async def get_package(
        self, package_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage: ...

    @abstractmethod
    async def upload_package(
        self, upload: DeploymentPackageUpload, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentPackage: ...

    @abstractmethod
    async def delete_package(
        self, package_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> None: ...

    # Deployments

    @abstractmethod
    async def list_deployments(
        self, filter: Optional[Filter] = None, *, cancel: Optional[CancelSignal] = None
    ) -> list[Deployment]: ...

    @abstractmethod
    async def get_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment: ...

    @abstractmethod
    async def create_deployment(
        self, request: DeploymentRequest, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment: ...

    @abstractmethod
    async def update_deployment(
        self, deployment_id: str, update: DeploymentUpdate, *, cancel: Optional[CancelSignal] = None
    ) -> Deployment: ...

    @abstractmethod
    async def delete_deployment(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> None: ...

    @abstractmethod
    async def scale_deployment(
        self, deployment_id: str, replicas: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        """Set the replica count. Raises ValidationError for negative counts."""

    @abstractmethod
    async def rollback_deployment(
        self, deployment_id: str, revision: int, *, cancel: Optional[CancelSignal] = None
    ) -> None:
        """Return to a recorded revision.

        On reconciliation backends this only records the desired revision
        and requests reconciliation; the status converges afterwards.
        """

    @abstractmethod
    async def get_deployment_status(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentStatusDetail: ...

    @abstractmethod
    async def get_deployment_history(
        self, deployment_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> DeploymentHistory: ...

    @abstractmethod
    async def get_deployment_logs(
        self,
        deployment_id: str,
        options: Optional[LogOptions] = None,
        *,
        cancel: Optional[CancelSignal] = None,
    ) -> bytes: ...

    @abstractmethod
    async def health(self, *, cancel: Optional[CancelSignal] = None) -> None:
        """Raise if the backend is unreachable."""

    async def close(self) -> None:
        """Release the backend client if one was created."""
        if self._client is None:
            return
        closer = getattr(self._client, "close", None)
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            await result
