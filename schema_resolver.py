# schema_resolver.py
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx
import yaml

from errors import SchemaFetchError
from models import BodySpec, FieldSpec, ParameterSpec, ResolvedSchema
from schema_cache import SchemaDocumentCache
from utils import extract_path_placeholders

logger = logging.getLogger(__name__)

SCHEMA_FETCH_TIMEOUT = float(os.getenv("SCHEMA_FETCH_TIMEOUT", "10"))

HTTP_METHODS = {"get", "post", "put", "delete", "patch", "options", "head", "trace"}
PARAMETER_LOCATIONS = {"query", "path", "header"}
NO_BODY_MARKER = "No body"


def parse_document_text(text: str) -> Dict[str, Any]:
    """Parses an interface document given as JSON or YAML text."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as yaml_e:
            raise SchemaFetchError(f"Document is neither valid JSON nor YAML: {yaml_e}", original_error=yaml_e)
    if not isinstance(parsed, dict):
        raise SchemaFetchError(f"Parsed document is not a mapping (got {type(parsed).__name__}).")
    return parsed


class SchemaDocumentSource:
    """Fetches raw interface documents from http(s) URLs, file:// URLs or local paths."""

    def __init__(self, timeout: float = SCHEMA_FETCH_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def fetch(self, schema_locator: str) -> Dict[str, Any]:
        scheme = urlparse(schema_locator).scheme.lower()
        if scheme in ("http", "https"):
            return await self._fetch_url(schema_locator)
        if scheme == "file":
            return self._read_file(Path(unquote(urlparse(schema_locator).path)))
        return self._read_file(Path(schema_locator))

    async def _fetch_url(self, url: str) -> Dict[str, Any]:
        logger.info(f"Fetching interface document from: {url}")
        headers = {"Accept": "application/json, application/yaml;q=0.9, */*;q=0.5"}
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch interface document from {url}: {e}")
            raise SchemaFetchError(f"Failed to fetch interface document from: {url}",
                                   details={"schema_locator": url}, original_error=e)
        return parse_document_text(response.text)

    def _read_file(self, path: Path) -> Dict[str, Any]:
        logger.info(f"Reading interface document from file: {path}")
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SchemaFetchError(f"Failed to read interface document: {path}",
                                   details={"schema_locator": str(path)}, original_error=e)
        return parse_document_text(text)


# --- Reference Resolution ---
def ref_name(ref: str) -> str:
    return ref.rsplit("/", 1)[-1]


def _json_type_of(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


class SchemaTreeBuilder:
    """
    Turns raw (reference-bearing) JSON schemas of one document into reference-free FieldSpec trees.
    A reference chain that revisits a name already being resolved stops with a 'reference' marker node.
    """

    def __init__(self, document: Dict[str, Any]):
        self.document = document

    def lookup(self, ref: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(ref, str) or not ref.startswith("#/"):
            return None
        node: Any = self.document
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node if isinstance(node, dict) else None

    def follow(self, schema: Any, stack: Tuple[str, ...] = ()) -> Tuple[Dict[str, Any], Tuple[str, ...], Optional[str]]:
        """Follows $ref chains. Returns (schema, stack, unresolved_ref)."""
        if not isinstance(schema, dict):
            return {}, stack, None
        while "$ref" in schema:
            ref = schema["$ref"]
            target = self.lookup(ref) if ref not in stack else None
            if target is None:
                if ref in stack:
                    logger.debug(f"Reference cycle detected at '{ref}' (chain: {' -> '.join(stack)})")
                else:
                    logger.warning(f"Could not resolve reference '{ref}'")
                return schema, stack, str(ref)
            siblings = {k: v for k, v in schema.items() if k != "$ref"}
            schema = {**target, **siblings}
            stack = stack + (ref,)
        return schema, stack, None

    def derive_type(self, schema: Any, stack: Tuple[str, ...] = ()) -> str:
        """
        explicit type > first composition branch > reference > enum > array of item type > object > unknown.
        """
        if not isinstance(schema, dict):
            return "unknown"
        explicit = schema.get("type")
        if isinstance(explicit, list):
            explicit = next((t for t in explicit if t != "null"), None)
        if explicit:
            if explicit == "array" and schema.get("items"):
                return f"array<{self.derive_type(schema['items'], stack)}>"
            return str(explicit)
        for key in ("allOf", "oneOf", "anyOf"):
            branches = schema.get(key)
            if isinstance(branches, list) and branches:
                return self.derive_type(branches[0], stack)
        ref = schema.get("$ref")
        if ref:
            target = self.lookup(ref) if ref not in stack else None
            if target is None:
                return f"ref:{ref_name(str(ref))}"
            return self.derive_type(target, stack + (ref,))
        enum = schema.get("enum")
        if isinstance(enum, list) and enum:
            return _json_type_of(enum[0])
        if schema.get("items"):
            return f"array<{self.derive_type(schema['items'], stack)}>"
        if isinstance(schema.get("properties"), dict):
            return "object"
        return "unknown"

    def _merge_composition(self, schema: Dict[str, Any], stack: Tuple[str, ...]) -> Tuple[Dict[str, Any], Tuple[str, ...]]:
        if isinstance(schema.get("allOf"), list) and schema["allOf"]:
            merged = {k: v for k, v in schema.items() if k != "allOf"}
            properties: Dict[str, Any] = dict(merged.get("properties") or {})
            required: List[str] = list(merged.get("required") or [])
            for index, branch in enumerate(schema["allOf"]):
                branch, branch_stack, unresolved = self.follow(branch, stack)
                if unresolved:
                    logger.warning(f"Skipping unresolvable allOf branch '{unresolved}'")
                    continue
                branch, _ = self._merge_composition(branch, branch_stack)
                for prop_name, prop_schema in (branch.get("properties") or {}).items():
                    properties.setdefault(prop_name, prop_schema)
                required.extend(r for r in branch.get("required") or [] if r not in required)
                for key in ("type", "description", "example", "enum", "items"):
                    if index == 0 or key != "type":
                        if key in branch and key not in merged:
                            merged[key] = branch[key]
            merged["properties"] = properties
            if required:
                merged["required"] = required
            return merged, stack

        for key in ("oneOf", "anyOf"):
            branches = schema.get(key)
            if "type" not in schema and "properties" not in schema and isinstance(branches, list) and branches:
                first, first_stack, unresolved = self.follow(branches[0], stack)
                if unresolved:
                    return schema, stack
                rest = {k: v for k, v in schema.items() if k != key}
                return self._merge_composition({**first, **rest}, first_stack)
        return schema, stack

    def build_field(self, name: str, schema: Any, required: bool = False, stack: Tuple[str, ...] = ()) -> FieldSpec:
        declared_type = self.derive_type(schema, stack)
        resolved, resolved_stack, unresolved = self.follow(schema, stack)
        if unresolved:
            return FieldSpec(
                name=name, kind="reference", type=declared_type, required=required,
                description=resolved.get("description"), ref=unresolved,
            )

        resolved, resolved_stack = self._merge_composition(resolved, resolved_stack)
        field = FieldSpec(
            name=name,
            type=declared_type,
            required=required,
            description=resolved.get("description"),
            format=resolved.get("format"),
            example=resolved.get("example"),
        )

        properties = resolved.get("properties")
        if isinstance(properties, dict) and properties:
            required_names = set(resolved.get("required") or [])
            field.kind = "object"
            field.fields = [
                self.build_field(prop_name, prop_schema, prop_name in required_names, resolved_stack)
                for prop_name, prop_schema in properties.items()
            ]
        elif resolved.get("type") == "object":
            field.kind = "object"
        elif resolved.get("items") or resolved.get("type") == "array":
            field.kind = "array"
            if resolved.get("items"):
                field.items = self.build_field("items", resolved["items"], False, resolved_stack)
        elif isinstance(resolved.get("enum"), list):
            field.kind = "enum"
            field.enum = list(resolved["enum"])

        if field.enum is None and isinstance(resolved.get("enum"), list):
            field.enum = list(resolved["enum"])
        return field


# --- Operation Resolution ---
def _resolve_parameters(builder: SchemaTreeBuilder, path_item: Dict[str, Any], operation: Dict[str, Any]) -> List[ParameterSpec]:
    collected: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for raw in list(path_item.get("parameters") or []) + list(operation.get("parameters") or []):
        param, _, unresolved = builder.follow(raw)
        if unresolved or not param.get("name"):
            logger.warning(f"Skipping unresolvable parameter definition: {unresolved or raw}")
            continue
        # Operation-level definitions come last and win
        collected[(param["name"], param.get("in", "query"))] = param

    specs = []
    for (name, location), param in collected.items():
        if location not in PARAMETER_LOCATIONS:
            continue
        if "schema" in param:
            param_type = builder.derive_type(param["schema"])
        else:
            param_type = builder.derive_type(param)  # Swagger 2 inline type
        specs.append(ParameterSpec(
            name=name,
            location=location,
            required=bool(param.get("required", location == "path")),
            type=param_type if param_type != "unknown" else "string",
            description=param.get("description"),
        ))
    return specs


def _resolve_body(builder: SchemaTreeBuilder, path_item: Dict[str, Any], operation: Dict[str, Any]) -> Optional[BodySpec]:
    request_body = operation.get("requestBody")
    if request_body is not None:
        request_body, _, unresolved = builder.follow(request_body)
        if unresolved:
            return BodySpec(required=True, type=f"ref:{ref_name(unresolved)}")
        content = request_body.get("content") or {}
        content_type = "application/json"
        media = None
        if "application/json" in content:
            media = content["application/json"]
        elif content:
            content_type, media = next(iter(content.items()))
        schema = (media or {}).get("schema")
        body = BodySpec(required=bool(request_body.get("required", False)),
                        description=request_body.get("description"), content_type=content_type)
        if schema is None:
            return body
        return _fill_body(builder, body, schema)

    # Swagger 2: a single 'in: body' parameter
    for raw in list(path_item.get("parameters") or []) + list(operation.get("parameters") or []):
        param, _, _ = builder.follow(raw)
        if param.get("in") == "body":
            body = BodySpec(required=bool(param.get("required", False)), description=param.get("description"))
            return _fill_body(builder, body, param.get("schema"))
    return None


def _fill_body(builder: SchemaTreeBuilder, body: BodySpec, schema: Any) -> BodySpec:
    root = builder.build_field("body", schema, body.required)
    body.type = root.type
    body.fields = root.fields
    body.items = root.items
    if root.description and not body.description:
        body.description = root.description
    return body


def resolve_operation(document: Dict[str, Any], endpoint_path: str, method: str) -> Optional[ResolvedSchema]:
    """Resolves one operation of a document. Returns None when (path, method) is absent."""
    paths = document.get("paths") or {}
    path_item = paths.get(endpoint_path)
    method_lower = method.lower()
    if not isinstance(path_item, dict) or method_lower not in HTTP_METHODS:
        return None
    operation = path_item.get(method_lower)
    if not isinstance(operation, dict):
        return None

    builder = SchemaTreeBuilder(document)
    parameters = _resolve_parameters(builder, path_item, operation)

    declared_path_params = {p.name for p in parameters if p.location == "path"}
    for placeholder in extract_path_placeholders(endpoint_path):
        if placeholder not in declared_path_params:
            logger.warning(f"Placeholder '{{{placeholder}}}' of {method.upper()} {endpoint_path} is not declared as a path parameter; adding it.")
            parameters.append(ParameterSpec(name=placeholder, location="path", required=True, type="string",
                                            description="Path placeholder not declared in the interface document."))
            declared_path_params.add(placeholder)

    return ResolvedSchema(
        path=endpoint_path,
        method=method.upper(),
        summary=operation.get("summary"),
        description=operation.get("description"),
        parameters=parameters,
        body=_resolve_body(builder, path_item, operation),
    )


class SchemaResolver:
    """Fetches (through the cache) and resolves operation schemas."""

    def __init__(self, source: Optional[SchemaDocumentSource] = None, cache: Optional[SchemaDocumentCache] = None):
        self.source = source or SchemaDocumentSource()
        self.cache = cache if cache is not None else SchemaDocumentCache()

    async def fetch_document(self, schema_locator: str) -> Dict[str, Any]:
        return await self.cache.get_or_fetch(schema_locator, self.source.fetch)

    async def resolve(self, schema_locator: str, endpoint_path: str, method: str) -> Optional[ResolvedSchema]:
        """Returns the resolved schema, or None when the operation does not exist. Raises SchemaFetchError."""
        document = await self.fetch_document(schema_locator)
        resolved = resolve_operation(document, endpoint_path, method)
        if resolved is None:
            logger.warning(f"Endpoint {method.upper()} {endpoint_path} not found in document {schema_locator}")
        else:
            logger.debug(f"Resolved schema for {method.upper()} {endpoint_path}: "
                         f"{len(resolved.parameters)} parameters, body={'yes' if resolved.body else 'no'}")
        return resolved


# --- Prompt Rendering ---
def _render_value(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)


def render_field(field: FieldSpec, depth: int = 0) -> List[str]:
    indent = "  " * depth
    line = f"{indent}- {field.name} ({'REQUIRED' if field.required else 'optional'}): {field.type}"
    if field.description:
        line += f" - {field.description}"
    if field.format:
        line += f" (format: {field.format})"
    if field.example is not None:
        line += f" (example: {_render_value(field.example)})"
    if field.enum:
        line += f" (enum: {', '.join(_render_value(v) for v in field.enum)})"
    if field.kind == "reference":
        line += f" [unresolved reference: {field.ref}]"
    lines = [line]
    for child in field.fields:
        lines.extend(render_field(child, depth + 1))
    if field.items is not None and (field.items.fields or field.items.kind == "reference"):
        lines.append(f"{indent}  items:")
        if field.items.kind == "reference":
            lines.append(f"{indent}    [unresolved reference: {field.items.ref}]")
        for child in field.items.fields:
            lines.extend(render_field(child, depth + 2))
    return lines


def render_body_description(body: Optional[BodySpec]) -> str:
    """Render-ready text describing a request body, used verbatim inside generation prompts."""
    if body is None:
        return NO_BODY_MARKER
    header = f"Body ({'REQUIRED' if body.required else 'optional'}, {body.content_type})"
    if body.description:
        header += f": {body.description}"
    if body.fields:
        return "\n".join([f"{header}\nObject with the following fields:"] + [l for f in body.fields for l in render_field(f)])
    if body.items is not None:
        lines = [f"{header}\nArray of {body.items.type}"]
        if body.items.fields:
            lines[0] += " with the following item fields:"
            lines.extend(l for f in body.items.fields for l in render_field(f))
        return "\n".join(lines)
    if body.type in ("object", "unknown") or body.type.startswith("ref:"):
        return f"{header}\nDeclared with type '{body.type}' but the document describes no fields."
    return f"{header}\nA single value of type {body.type}"


def render_parameters(schema: ResolvedSchema, location: str) -> str:
    return json.dumps([p.model_dump(exclude_none=True) for p in schema.parameters_in(location)], indent=2, ensure_ascii=False)
