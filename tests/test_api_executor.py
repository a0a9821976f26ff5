import json

import httpx
import pytest

from api_executor import APIExecutor, build_request, find_missing_path_parameters
from models import ExecutionErrorType, ParameterGenerationResult, ParameterStatus, ParameterValue
from conftest import RecordingTransport, make_step


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"id": "123", "name": "Ann"})


def _params(*triples):
    return [ParameterValue(name=n, value=v, location=loc) for n, v, loc in triples]


class TestBuildRequest:
    def test_path_substitution(self):
        url, headers, body = build_request(make_step(), _params(("id", "123", "path")))
        assert url == "https://api.example.com/users/123/profile"
        assert headers == {}
        assert body is None

    def test_query_values_are_percent_encoded(self):
        step = make_step(path="/search")
        url, _, _ = build_request(step, _params(("q", "a b&c/d", "query"), ("exact", True, "query")))
        assert url == "https://api.example.com/search?q=a%20b%26c%2Fd&exact=true"

    def test_header_parameters(self):
        _, headers, _ = build_request(make_step(path="/x"), _params(("X-Request-Id", 7, "header")))
        assert headers == {"X-Request-Id": "7"}

    def test_empty_body_not_sent_on_get(self):
        _, _, body = build_request(make_step(path="/x"), [], {})
        assert body is None

    def test_body_kept_on_post(self):
        _, _, body = build_request(make_step(method="POST", path="/x"), [], {})
        assert body == {}

    def test_missing_path_parameters(self):
        assert find_missing_path_parameters("/orgs/{org}/users/{id}", _params(("org", "a", "path"), ("id", "1", "query"))) == ["id"]


class TestAPIExecutor:
    @pytest.mark.asyncio
    async def test_path_value_substituted_into_dispatched_url(self):
        recorder = RecordingTransport(_ok)
        executor = APIExecutor(client=recorder.client())
        result = await executor.execute_step(make_step(), ParameterGenerationResult.success(_params(("id", "123", "path"))))

        assert str(recorder.requests[0].url) == "https://api.example.com/users/123/profile"
        assert recorder.requests[0].method == "GET"
        assert result.success is True
        assert result.response_status == 200
        assert result.response == {"id": "123", "name": "Ann"}
        assert result.request_url == "https://api.example.com/users/123/profile"
        assert result.error is None
        assert result.execution_time is not None
        await executor.close()

    @pytest.mark.asyncio
    async def test_missing_path_parameter_is_validation_error_without_call(self):
        recorder = RecordingTransport(_ok)
        executor = APIExecutor(client=recorder.client())
        result = await executor.execute_step(make_step(), ParameterGenerationResult.success(_params(("id", "123", "query"))))

        assert recorder.requests == []
        assert result.success is False
        assert result.error_type == ExecutionErrorType.VALIDATION_ERROR
        assert result.error_details["missing_path_parameters"] == ["id"]
        assert result.request_url is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, error_type", [
        (ParameterStatus.INSUFFICIENT_DATA, ExecutionErrorType.INSUFFICIENT_DATA),
        (ParameterStatus.INSUFFICIENT_SCHEMA, ExecutionErrorType.SWAGGER_ERROR),
        (ParameterStatus.ERROR, ExecutionErrorType.PARAMETER_GENERATION_ERROR),
    ])
    async def test_non_success_status_short_circuits(self, status, error_type):
        recorder = RecordingTransport(_ok)
        executor = APIExecutor(client=recorder.client())
        result = await executor.execute_step(make_step(), ParameterGenerationResult.failure(status, "missing X"))

        assert recorder.requests == []
        assert result.success is False
        assert result.error_type == error_type
        assert result.error == "missing X"
        assert result.response_status == 0

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure_with_body(self):
        recorder = RecordingTransport(lambda request: httpx.Response(500, json={"error": "boom"}))
        executor = APIExecutor(client=recorder.client())
        result = await executor.execute_step(make_step(path="/x"), ParameterGenerationResult.success([]))

        assert result.success is False
        assert result.response_status == 500
        assert result.error == 'HTTP 500: {"error": "boom"}'
        assert result.error_type == ExecutionErrorType.HTTP_REQUEST_ERROR
        assert result.response == {"error": "boom"}

    @pytest.mark.asyncio
    async def test_body_and_headers_sent(self):
        recorder = RecordingTransport(lambda request: httpx.Response(201, json={"id": 1}))
        executor = APIExecutor(client=recorder.client(), default_headers={"Authorization": "Bearer t", "X-Env": "default"})
        params = _params(("X-Env", "test", "header"))
        result = await executor.execute_step(make_step(method="POST", path="/users"),
                                             ParameterGenerationResult.success(params, {"name": "Ann"}))

        sent = recorder.requests[0]
        assert json.loads(sent.content) == {"name": "Ann"}
        assert sent.headers["Authorization"] == "Bearer t"
        assert sent.headers["X-Env"] == "test"
        assert sent.headers["Content-Type"] == "application/json"
        assert result.success is True
        assert result.request_body == {"name": "Ann"}

    @pytest.mark.asyncio
    async def test_text_response(self):
        recorder = RecordingTransport(lambda request: httpx.Response(200, text="pong"))
        result = await APIExecutor(client=recorder.client()).execute_step(make_step(path="/ping"), ParameterGenerationResult.success([]))
        assert result.response == "pong"

    @pytest.mark.asyncio
    async def test_transport_error_is_unknown_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await APIExecutor(client=RecordingTransport(refuse).client()).execute_step(
            make_step(path="/x"), ParameterGenerationResult.success([]))
        assert result.success is False
        assert result.error_type == ExecutionErrorType.UNKNOWN_ERROR
        assert result.error_details["reason"] == "transport"

    @pytest.mark.asyncio
    async def test_timeout_is_unknown_error(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await APIExecutor(client=RecordingTransport(slow).client()).execute_step(
            make_step(path="/x"), ParameterGenerationResult.success([]))
        assert result.error_type == ExecutionErrorType.UNKNOWN_ERROR
        assert result.error_details["reason"] == "timeout"
