"""
Connection state and the service catalogue discovered at handshake.

The backend describes its own REST surface at /{version}/services/api;
that description is the client's set of capabilities. Endpoint shapes
are opaque here: the catalogue only maps (service, endpoint) to a path
and HTTP method.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from obrew_client.errors import EndpointNotFoundError

logger = logging.getLogger(__name__)


class Endpoint(BaseModel):
    """One callable endpoint of a service."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    url_path: str = Field(alias="urlPath")
    method: str = "GET"


class ServiceApi(BaseModel):
    """A backend service (textInference, memory, storage, ...)."""
    name: str
    port: Optional[int] = None
    endpoints: list[Endpoint] = []
    configs: dict[str, Any] = {}

    def endpoint(self, name: str) -> Optional[Endpoint]:
        for endpoint in self.endpoints:
            if endpoint.name == name:
                return endpoint
        return None


class ServiceCatalog(BaseModel):
    """Everything the backend advertised at connect time."""
    services: list[ServiceApi] = []

    @classmethod
    def from_response(cls, data: list[dict]) -> "ServiceCatalog":
        return cls(services=[ServiceApi.model_validate(api) for api in data])

    def __bool__(self) -> bool:
        return bool(self.services)

    def service(self, name: str) -> Optional[ServiceApi]:
        for api in self.services:
            if api.name == name:
                return api
        return None

    def has_endpoint(self, service: str, endpoint: str) -> bool:
        api = self.service(service)
        return api is not None and api.endpoint(endpoint) is not None

    def endpoint(self, service: str, endpoint: str) -> Endpoint:
        """Look up an endpoint; raise EndpointNotFoundError if absent."""
        api = self.service(service)
        found = api.endpoint(endpoint) if api else None
        if found is None:
            raise EndpointNotFoundError(f"No endpoint '{service}.{endpoint}' on this backend")
        return found

    def config_options(self) -> dict[str, Any]:
        """Merged `configs` of every service (later services win)."""
        merged: dict[str, Any] = {}
        for api in self.services:
            merged.update(api.configs)
        return merged


class ConnectionState:
    """
    Whether the client may talk to the backend, and what it can call.

    `capabilities` is only ever set while `enabled` is True; resetting
    clears capabilities before the flag so no reader sees a catalogue on a
    disabled connection.
    """

    def __init__(self) -> None:
        self.enabled: bool = False
        self.capabilities: Optional[ServiceCatalog] = None

    def __repr__(self) -> str:
        services = len(self.capabilities.services) if self.capabilities else 0
        return f"<ConnectionState enabled={self.enabled} services={services}>"

    @property
    def connected(self) -> bool:
        return self.enabled and bool(self.capabilities)

    def enable(self, capabilities: ServiceCatalog) -> None:
        self.enabled = True
        self.capabilities = capabilities

    def reset(self) -> None:
        if self.enabled:
            logger.info("Connection state reset to disabled")
        self.capabilities = None
        self.enabled = False
