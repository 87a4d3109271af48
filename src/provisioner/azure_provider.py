"""Azure Resource Manager provider.

Every kind in the catalog is provisioned through the generic resources API
of azure-mgmt-resource (PUT/DELETE by resource id), so adding a kind means
adding a catalog entry, not a client.

ERROR CLASSIFICATION:
- HTTP 408, 409, 429 and 5xx, and connection-level failures are transient
  (ARM throttling, conflicting in-flight operations, service hiccups)
- Every other HTTP error is fatal for the node (bad request, authorization,
  quota, validation)
- A 404 on delete means the resource is already gone and counts as success

SECURITY: Only an azure-identity credential is accepted; tokens are attached
by azure-core policies and never appear in outputs or logs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Identity, Sku

from .catalog import ENVELOPE_FIELDS, AzureKind, get_catalog
from .config import ConfigurationError, DeploymentSettings
from .errors import FatalProviderError, ProviderError, TransientProviderError, UnknownKindError
from .models import StateEntry
from .provider import CompletedPoller, KindSchema, Poller, Provider, ProviderResult

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
USER_AGENT = "azure-provisioner"

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429})

# (resource_id, action, api_version) -> parsed JSON response
ActionInvoker = Callable[[str, str, str], dict[str, Any]]


def classify_azure_error(
    error: AzureError,
    resource: str | None = None,
    operation: str | None = None,
) -> ProviderError:
    """Map an azure-core exception onto the provider error taxonomy."""
    if isinstance(error, HttpResponseError):
        status = error.status_code
        message = f"Azure returned HTTP {status}: {error.message}"
        if status is not None and (status in TRANSIENT_STATUS_CODES or status >= 500):
            return TransientProviderError(message, resource=resource, operation=operation)
        return FatalProviderError(message, resource=resource, operation=operation)

    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TransientProviderError(
            f"Connection to Azure failed: {error}", resource=resource, operation=operation
        )

    return FatalProviderError(f"Azure error: {error}", resource=resource, operation=operation)


class ArmActionClient:
    """Invokes POST actions (``listKeys`` and friends) on ARM resources."""

    def __init__(self, credential: TokenCredential, endpoint: str = ARM_ENDPOINT) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._client = PipelineClient(
            base_url=self._endpoint,
            policies=[
                HeadersPolicy(),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, ARM_SCOPE),
            ],
        )

    def __call__(self, resource_id: str, action: str, api_version: str) -> dict[str, Any]:
        request = HttpRequest(
            "POST",
            f"{self._endpoint}{resource_id}/{action}",
            params={"api-version": api_version},
        )
        response = self._client.send_request(request)
        response.raise_for_status()
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {}

    def close(self) -> None:
        self._client.close()


class _AzurePoller:
    """Wraps an azure-core LROPoller: classifies errors and shapes the result."""

    def __init__(
        self,
        poller: Any,
        transform: Callable[[Any], Any],
        resource: str,
        operation: str,
        ignore_not_found: bool = False,
    ) -> None:
        self._poller = poller
        self._transform = transform
        self._resource = resource
        self._operation = operation
        self._ignore_not_found = ignore_not_found

    def result(self, timeout: float | None = None) -> Any:
        try:
            value = self._poller.result(timeout)
        except ResourceNotFoundError as e:
            if not self._ignore_not_found:
                raise classify_azure_error(e, self._resource, self._operation) from e
            value = None
        except AzureError as e:
            raise classify_azure_error(e, self._resource, self._operation) from e
        return self._transform(value)

    def done(self) -> bool:
        return self._poller.done()


class AzureProvider(Provider):
    """Provider backed by the ARM generic resources API."""

    def __init__(
        self,
        settings: DeploymentSettings,
        credential: TokenCredential | None = None,
        client: Any | None = None,
        action_invoker: ActionInvoker | None = None,
        catalog: dict[str, AzureKind] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            settings: Deployment settings; supplies subscription and
                resource group for resource ids.
            credential: azure-identity credential. Required unless both
                ``client`` and ``action_invoker`` are given.
            client: Pre-built ResourceManagementClient (or a test double).
            action_invoker: Callable for POST actions such as listKeys.
            catalog: Kind catalog, defaults to the built-in one.

        Raises:
            ConfigurationError: If required settings or credentials are missing.
        """
        self._settings = settings
        self._catalog = catalog if catalog is not None else get_catalog()
        self._schemas = {kind: entry.schema() for kind, entry in self._catalog.items()}
        self._owned: list[Any] = []

        if client is None or action_invoker is None:
            if credential is None:
                raise ConfigurationError("AzureProvider requires a credential")
            if not settings.subscription_id:
                raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for Azure calls")

        if client is None:
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=settings.subscription_id,
            )
            self._owned.append(client)
        if action_invoker is None:
            action_client = ArmActionClient(credential)
            self._owned.append(action_client)
            action_invoker = action_client

        self._client = client
        self._invoke_action = action_invoker

    def close(self) -> None:
        """Close SDK clients created by this provider."""
        for owned in self._owned:
            owned.close()
        self._owned.clear()

    def schemas(self) -> dict[str, KindSchema]:
        return self._schemas

    def _entry(self, kind: str) -> AzureKind:
        entry = self._catalog.get(kind)
        if entry is None:
            raise UnknownKindError(
                f"Unknown resource kind '{kind}'. Supported kinds: {sorted(self._catalog)}"
            )
        return entry

    # =========================================================================
    # Request shaping
    # =========================================================================

    def resource_id(self, kind: str, name: str, config: dict[str, Any]) -> str:
        """Build the ARM resource id for a declaration.

        Raises:
            FatalProviderError: If a placeholder cannot be filled.
        """
        entry = self._entry(kind)
        values: dict[str, str] = {}
        for placeholder in sorted(entry.address_fields):
            if placeholder in config:
                value = config[placeholder]
            elif placeholder == "name":
                value = name
            else:
                found, value = self._settings.lookup(placeholder)
                if not found:
                    value = None
            if not isinstance(value, str) or not value:
                raise FatalProviderError(
                    f"Cannot build resource id for {kind}: '{placeholder}' is not set",
                    resource=name,
                    operation="address",
                )
            values[placeholder] = value
        return entry.id_template.format(**values)

    def build_resource(self, kind: str, config: dict[str, Any]) -> GenericResource:
        """Split a flat config into the ARM envelope and its properties."""
        entry = self._entry(kind)
        excluded = entry.address_fields | {"name"}
        properties = {
            key: value
            for key, value in config.items()
            if key not in ENVELOPE_FIELDS and key not in excluded
        }

        sku = config.get("sku")
        identity = config.get("identity")
        return GenericResource(
            location=config.get("location"),
            tags=config.get("tags"),
            kind=config.get("kind"),
            sku=Sku(**sku) if isinstance(sku, dict) else None,
            identity=Identity(type=identity.get("type")) if isinstance(identity, dict) else None,
            properties=properties,
        )

    def _to_result(
        self,
        entry: AzureKind,
        name: str,
        resource_id: str,
        resource: Any,
    ) -> ProviderResult:
        outputs: dict[str, Any] = {"id": resource_id, "name": name}
        if resource is not None:
            outputs["id"] = getattr(resource, "id", None) or resource_id
            outputs["name"] = getattr(resource, "name", None) or name
            for attr in ("type", "location"):
                value = getattr(resource, attr, None)
                if value is not None:
                    outputs[attr] = value
            properties = getattr(resource, "properties", None)
            if isinstance(properties, dict):
                for key, value in properties.items():
                    outputs.setdefault(key, value)

        for action in entry.list_actions:
            try:
                response = self._invoke_action(outputs["id"], action, entry.api_version)
            except AzureError as e:
                raise classify_azure_error(e, name, action) from e
            outputs.update(response)
            logger.debug(
                "Resource action invoked",
                extra={"resource": name, "action": action, "keys": sorted(response)},
            )

        return ProviderResult(resource_id=outputs["id"], outputs=outputs)

    # =========================================================================
    # Provider operations
    # =========================================================================

    def begin_create_or_update(
        self,
        name: str,
        kind: str,
        config: dict[str, Any],
        prior: StateEntry | None,
    ) -> Poller:
        entry = self._entry(kind)
        operation = "update" if prior is not None else "create"
        resource_id = self.resource_id(kind, name, config)
        parameters = self.build_resource(kind, config)

        logger.info(
            "Starting create_or_update",
            extra={"resource": name, "kind": kind, "resource_id": resource_id},
        )
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, entry.api_version, parameters
            )
        except AzureError as e:
            raise classify_azure_error(e, name, operation) from e

        return _AzurePoller(
            poller,
            lambda resource: self._to_result(entry, name, resource_id, resource),
            resource=name,
            operation=operation,
        )

    def begin_delete(self, name: str, entry: StateEntry) -> Poller:
        kind = self._entry(entry.kind)
        resource_id = entry.resource_id or self.resource_id(entry.kind, name, entry.config)

        logger.info(
            "Starting delete",
            extra={"resource": name, "kind": entry.kind, "resource_id": resource_id},
        )
        try:
            poller = self._client.resources.begin_delete_by_id(resource_id, kind.api_version)
        except ResourceNotFoundError:
            logger.info("Resource already deleted", extra={"resource": name})
            return CompletedPoller(None)
        except AzureError as e:
            raise classify_azure_error(e, name, "delete") from e

        return _AzurePoller(
            poller,
            lambda _: None,
            resource=name,
            operation="delete",
            ignore_not_found=True,
        )
