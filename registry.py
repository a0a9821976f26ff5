# registry.py
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from openapi_spec_validator import (
    openapi_v2_spec_validator,
    openapi_v30_spec_validator,
    openapi_v31_spec_validator,
)
from openapi_spec_validator.validation.exceptions import OpenAPIValidationError

from errors import ConfigurationError
from models import ApiDescriptor, EndpointDescriptor, FeatureDescriptor
from schema_resolver import HTTP_METHODS, parse_document_text

logger = logging.getLogger(__name__)

REGISTRY_NAMESPACE = uuid.UUID("6f1c7a52-3f0e-4a4e-9d53-2d8f6c1b9e10")
DEFAULT_FEATURE_NAME = "default"


def stable_id(*parts: str) -> str:
    return str(uuid.uuid5(REGISTRY_NAMESPACE, "|".join(parts)))


class EndpointRegistry(ABC):
    """Read-only lookup interface over registered APIs, their features and endpoints."""

    @abstractmethod
    async def list_apis(self) -> List[ApiDescriptor]:
        pass  # pragma: no cover

    @abstractmethod
    async def list_features(self, api_id: str) -> List[FeatureDescriptor]:
        """Features of one API, in registration order. Unknown ids give an empty list."""
        pass  # pragma: no cover

    @abstractmethod
    async def list_endpoints(self, feature_id: str) -> List[EndpointDescriptor]:
        pass  # pragma: no cover


class InMemoryEndpointRegistry(EndpointRegistry):
    def __init__(self):
        self._apis: Dict[str, ApiDescriptor] = {}
        self._features: Dict[str, List[FeatureDescriptor]] = {}
        self._endpoints: Dict[str, List[EndpointDescriptor]] = {}

    async def list_apis(self) -> List[ApiDescriptor]:
        return list(self._apis.values())

    async def list_features(self, api_id: str) -> List[FeatureDescriptor]:
        return list(self._features.get(api_id, []))

    async def list_endpoints(self, feature_id: str) -> List[EndpointDescriptor]:
        return list(self._endpoints.get(feature_id, []))

    def __len__(self) -> int:
        return len(self._apis)

    def get_api(self, api_id: str) -> Optional[ApiDescriptor]:
        return self._apis.get(api_id)

    def add_api(self, api: ApiDescriptor) -> ApiDescriptor:
        if api.id in self._apis:
            raise ValueError(f"API '{api.id}' is already registered.")
        self._apis[api.id] = api
        self._features.setdefault(api.id, [])
        return api

    def add_feature(self, api_id: str, feature: FeatureDescriptor) -> FeatureDescriptor:
        if api_id not in self._apis:
            raise KeyError(f"Unknown API '{api_id}'")
        self._features[api_id].append(feature)
        self._endpoints.setdefault(feature.id, [])
        return feature

    def add_endpoint(self, feature_id: str, endpoint: EndpointDescriptor) -> EndpointDescriptor:
        if feature_id not in self._endpoints:
            raise KeyError(f"Unknown feature '{feature_id}'")
        self._endpoints[feature_id].append(endpoint)
        return endpoint


# --- Population Helpers ---
def validate_openapi_document(document: Dict[str, Any]) -> None:
    """Validates with the validator matching the document's version string. Raises OpenAPIValidationError."""
    spec_version_str = str(document.get("openapi", document.get("swagger", "")))
    if spec_version_str.startswith("2."):
        openapi_v2_spec_validator.validate(document)
    elif spec_version_str.startswith("3.1"):
        openapi_v31_spec_validator.validate(document)
    elif spec_version_str.startswith("3.0"):
        openapi_v30_spec_validator.validate(document)
    else:
        logger.warning(f"Unknown or unsupported OpenAPI version string: '{spec_version_str}'. Attempting with v3.0 validator as a default.")
        openapi_v30_spec_validator.validate(document)


def _derive_base_url(document: Dict[str, Any], schema_locator: str) -> str:
    for server in document.get("servers") or []:
        url = (server or {}).get("url", "")
        if urlparse(url).scheme in ("http", "https"):
            return url.rstrip("/")
    if document.get("host"):  # Swagger 2
        scheme = (document.get("schemes") or ["https"])[0]
        return f"{scheme}://{document['host']}{document.get('basePath', '')}".rstrip("/")
    parsed = urlparse(schema_locator)
    if parsed.scheme in ("http", "https"):
        return f"{parsed.scheme}://{parsed.netloc}"
    return ""


def register_openapi_document(
    registry: InMemoryEndpointRegistry,
    document: Dict[str, Any],
    schema_locator: str,
    base_url: Optional[str] = None,
    validate: bool = True,
) -> ApiDescriptor:
    """Registers one API from an OpenAPI/Swagger document: tags become features, operations become endpoints."""
    if validate:
        try:
            validate_openapi_document(document)
        except OpenAPIValidationError as val_e:
            error_detail = str(val_e.message if hasattr(val_e, 'message') else val_e)
            if hasattr(val_e, 'schema_path'):
                error_detail = f"Validation error at path '{'->'.join(map(str, val_e.schema_path))}': {error_detail}"
            logger.error(f"OpenAPI Validation failed for {schema_locator}: {error_detail}")
            raise ConfigurationError(f"OpenAPI document at {schema_locator} is invalid: {error_detail[:500]}", original_error=val_e)
        except Exception as e_general:
            # jsonschema errors raised for structural problems are not OpenAPIValidationError subclasses
            logger.error(f"Unexpected error during OpenAPI validation of {schema_locator}: {e_general}")
            raise ConfigurationError(f"OpenAPI document at {schema_locator} is invalid: {str(e_general)[:500]}", original_error=e_general)

    info = document.get("info") or {}
    name = info.get("title") or "Unknown API"
    api = registry.add_api(ApiDescriptor(
        id=stable_id("api", schema_locator),
        name=name,
        description=info.get("description"),
        base_url=(base_url or _derive_base_url(document, schema_locator)).rstrip("/"),
        schema_locator=schema_locator,
    ))

    features: Dict[str, FeatureDescriptor] = {}

    def feature_for(tag_name: str, description: Optional[str] = None) -> FeatureDescriptor:
        if tag_name not in features:
            features[tag_name] = registry.add_feature(api.id, FeatureDescriptor(
                id=stable_id("feature", api.id, tag_name), name=tag_name, description=description))
        return features[tag_name]

    for tag in document.get("tags") or []:
        if isinstance(tag, dict) and tag.get("name"):
            feature_for(tag["name"], tag.get("description"))

    endpoint_count = 0
    for path, path_item in (document.get("paths") or {}).items():
        if not isinstance(path_item, dict):
            logger.warning(f"Skipping non-dictionary path item at '{path}'")
            continue
        for method, operation in path_item.items():
            if method.lower() not in HTTP_METHODS or not isinstance(operation, dict):
                continue
            tags = operation.get("tags") or [DEFAULT_FEATURE_NAME]
            feature = feature_for(tags[0])
            registry.add_endpoint(feature.id, EndpointDescriptor(
                id=stable_id("endpoint", api.id, method.upper(), path),
                path=path,
                method=method.upper(),
                summary=operation.get("summary"),
                description=operation.get("description"),
                operation_id=operation.get("operationId"),
            ))
            endpoint_count += 1

    logger.info(f"Registered API '{name}' with {len(features)} features and {endpoint_count} endpoints")
    return api


def _register_inline_api(registry: InMemoryEndpointRegistry, entry: Dict[str, Any]) -> ApiDescriptor:
    api = registry.add_api(ApiDescriptor(
        id=str(entry.get("id") or stable_id("api", entry["name"])),
        name=entry["name"],
        description=entry.get("description"),
        base_url=str(entry["base_url"]).rstrip("/"),
        schema_locator=entry.get("schema_locator"),
    ))
    for feature_entry in entry.get("features") or []:
        feature = registry.add_feature(api.id, FeatureDescriptor(
            id=str(feature_entry.get("id") or stable_id("feature", api.id, feature_entry["name"])),
            name=feature_entry["name"],
            description=feature_entry.get("description"),
        ))
        for endpoint_entry in feature_entry.get("endpoints") or []:
            method = str(endpoint_entry["method"]).upper()
            registry.add_endpoint(feature.id, EndpointDescriptor(
                id=str(endpoint_entry.get("id") or stable_id("endpoint", api.id, method, endpoint_entry["path"])),
                path=endpoint_entry["path"],
                method=method,
                summary=endpoint_entry.get("summary"),
                description=endpoint_entry.get("description"),
                operation_id=endpoint_entry.get("operation_id"),
            ))
    return api


def load_registry_file(path: str, validate: bool = True) -> InMemoryEndpointRegistry:
    """
    Builds a registry from a YAML/JSON file of the form:

        apis:
          - name: Pets            # inline: features -> endpoints
            base_url: https://pets.example.com
            schema_locator: https://pets.example.com/openapi.json
            features: [{name: pets, endpoints: [{path: /pets, method: GET}]}]
          - schema_locator: ./specs/users.yaml   # loaded from a local OpenAPI document
            base_url: https://users.example.com
    """
    registry_path = Path(path)
    try:
        config = parse_document_text(registry_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read registry file: {path}", original_error=e)
    except Exception as e:
        raise ConfigurationError(f"Cannot parse registry file {path}: {e}", original_error=e)

    registry = InMemoryEndpointRegistry()
    for entry in config.get("apis") or []:
        if "features" in entry or "name" in entry:
            try:
                _register_inline_api(registry, entry)
            except KeyError as e:
                raise ConfigurationError(f"Registry entry is missing required key {e}: {entry}")
            continue
        locator = entry.get("schema_locator")
        if not locator:
            raise ConfigurationError(f"Registry entry needs 'name' or 'schema_locator': {entry}")
        document_path = Path(locator)
        if not document_path.is_absolute():
            document_path = registry_path.parent / document_path
        try:
            document = parse_document_text(document_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"Cannot read interface document: {document_path}", original_error=e)
        register_openapi_document(registry, document, str(document_path), base_url=entry.get("base_url"), validate=validate)
    logger.info(f"Loaded registry from {path}: {len(registry)} APIs")
    return registry
