import copy
from typing import Callable, List
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from langchain_core.messages import AIMessage

from models import PlanStep


def make_llm(*responses) -> MagicMock:
    """Chat model stand-in answering each ainvoke with the next response (exceptions are raised)."""
    llm = MagicMock()
    llm.ainvoke = AsyncMock(side_effect=[r if isinstance(r, BaseException) else AIMessage(content=r) for r in responses])
    return llm


def make_step(step: int = 1, method: str = "GET", path: str = "/users/{id}/profile", **overrides) -> PlanStep:
    values = dict(
        step=step,
        endpoint_id=f"ep-{step}",
        api_name="Users",
        feature_name="users",
        method=method,
        path_template=path,
        base_url="https://api.example.com",
        schema_locator="https://api.example.com/openapi.json",
        description=f"{method} {path}",
    )
    values.update(overrides)
    return PlanStep(**values)


class RecordingTransport:
    """httpx.MockTransport wrapper that remembers every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        self.transport = httpx.MockTransport(_record)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)


USERS_DOCUMENT = {
    "openapi": "3.0.3",
    "info": {"title": "Users", "version": "1.0.0", "description": "User accounts"},
    "servers": [{"url": "https://api.example.com"}],
    "tags": [{"name": "users", "description": "User management"}],
    "paths": {
        "/users": {
            "post": {
                "tags": ["users"],
                "summary": "Create a user",
                "operationId": "createUser",
                "requestBody": {
                    "required": True,
                    "content": {"application/json": {"schema": {"$ref": "#/components/schemas/User"}}},
                },
                "responses": {"201": {"description": "Created"}},
            },
            "get": {
                "tags": ["users"],
                "summary": "List users",
                "operationId": "listUsers",
                "parameters": [
                    {"name": "limit", "in": "query", "required": False, "schema": {"type": "integer"}},
                    {"name": "X-Trace", "in": "header", "schema": {"type": "string"}},
                ],
                "responses": {"200": {"description": "OK"}},
            },
        },
        "/users/{id}/profile": {
            "parameters": [{"$ref": "#/components/parameters/UserId"}],
            "get": {
                "tags": ["users"],
                "summary": "Get a user's profile",
                "operationId": "getProfile",
                "responses": {"200": {"description": "OK"}},
            },
        },
        "/nodes": {
            "post": {
                "summary": "Create a node tree",
                "operationId": "createNode",
                "requestBody": {"content": {"application/json": {"schema": {"$ref": "#/components/schemas/Node"}}}},
                "responses": {"201": {"description": "Created"}},
            },
        },
        "/broken": {
            "post": {
                "summary": "Body declared without fields",
                "operationId": "broken",
                "requestBody": {"content": {"application/json": {"schema": {"type": "object"}}}},
                "responses": {"200": {"description": "OK"}},
            },
        },
    },
    "components": {
        "parameters": {
            "UserId": {"name": "id", "in": "path", "required": True, "schema": {"type": "string"}, "description": "User id"},
        },
        "schemas": {
            "Base": {
                "type": "object",
                "required": ["id"],
                "properties": {"id": {"type": "integer", "description": "Server generated id"}},
            },
            "User": {
                "allOf": [
                    {"$ref": "#/components/schemas/Base"},
                    {
                        "type": "object",
                        "required": ["name"],
                        "properties": {
                            "name": {"type": "string", "example": "Ann"},
                            "role": {"enum": ["admin", "user"]},
                            "address": {"$ref": "#/components/schemas/Address"},
                        },
                    },
                ],
            },
            "Address": {
                "type": "object",
                "properties": {"city": {"type": "string"}},
            },
            "Node": {
                "type": "object",
                "properties": {
                    "value": {"type": "string"},
                    "children": {"type": "array", "items": {"$ref": "#/components/schemas/Node"}},
                },
            },
        },
    },
}


@pytest.fixture
def users_document():
    return copy.deepcopy(USERS_DOCUMENT)
