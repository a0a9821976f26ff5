import json

import pytest

from models import (
    ExecutionErrorType, ExecutionResult, ParameterSpec, ParameterStatus, ResolvedSchema,
)
from parameter_generator import (
    NO_PRIOR_RESULTS_MARKER, ParameterGenerator, build_parameter_prompt, format_step_context,
    parse_parameter_response,
)
from schema_resolver import resolve_operation
from conftest import make_llm, make_step

SUCCESS_PAYLOAD = {
    "status": "SUCCESS",
    "parameters": [
        {"name": "id", "value": "123", "location": "path"},
        {"name": "verbose", "value": True, "location": "query"},
    ],
    "body": None,
}


def _profile_schema() -> ResolvedSchema:
    return ResolvedSchema(
        path="/users/{id}/profile",
        method="GET",
        parameters=[ParameterSpec(name="id", location="path", required=True)],
    )


class TestParseParameterResponse:
    def test_fenced_and_unfenced_are_equal(self):
        raw = json.dumps(SUCCESS_PAYLOAD)
        assert parse_parameter_response(f"```json\n{raw}\n```") == parse_parameter_response(raw)

    def test_success(self):
        result = parse_parameter_response(json.dumps(SUCCESS_PAYLOAD))
        assert result.status == ParameterStatus.SUCCESS
        assert [(p.name, p.value, p.location) for p in result.parameters] == [
            ("id", "123", "path"),
            ("verbose", True, "query"),
        ]

    def test_missing_status_means_success(self):
        result = parse_parameter_response('{"parameters": [], "body": {"name": "Ann"}}')
        assert result.status == ParameterStatus.SUCCESS
        assert result.body == {"name": "Ann"}

    def test_insufficient_data_keeps_message(self):
        result = parse_parameter_response('{"status": "INSUFFICIENT_DATA", "message": "missing X", "parameters": [], "body": {}}')
        assert result.status == ParameterStatus.INSUFFICIENT_DATA
        assert result.message == "missing X"
        assert result.parameters == []
        assert result.body is None

    def test_insufficient_schema(self):
        result = parse_parameter_response('{"status": "INSUFFICIENT_SCHEMA", "message": "no body"}')
        assert result.status == ParameterStatus.INSUFFICIENT_SCHEMA
        assert result.message == "no body"

    def test_unparsable_is_error_not_exception(self):
        result = parse_parameter_response("Sure! Here are your parameters: id=123")
        assert result.status == ParameterStatus.ERROR
        assert result.message.startswith("Failed to parse model response:")

    def test_unknown_status(self):
        result = parse_parameter_response('{"status": "MAYBE"}')
        assert result.status == ParameterStatus.ERROR
        assert "MAYBE" in result.message

    def test_malformed_parameter(self):
        result = parse_parameter_response('{"status": "SUCCESS", "parameters": [{"name": "id", "value": "1", "location": "cookie"}]}')
        assert result.status == ParameterStatus.ERROR

    def test_non_object_payload(self):
        assert parse_parameter_response("[1, 2]").status == ParameterStatus.ERROR

    @pytest.mark.parametrize("raw_parameters", ["true", "5", '"id=1"', '{"name": "id"}'])
    def test_parameters_must_be_a_list(self, raw_parameters):
        result = parse_parameter_response(f'{{"status": "SUCCESS", "parameters": {raw_parameters}}}')
        assert result.status == ParameterStatus.ERROR
        assert "'parameters' must be a list" in result.message

    @pytest.mark.parametrize("body", [[], {}, 0, False, ""])
    def test_falsy_body_is_kept(self, body):
        result = parse_parameter_response(json.dumps({"status": "SUCCESS", "parameters": [], "body": body}))
        assert result.status == ParameterStatus.SUCCESS
        assert result.body == body
        assert type(result.body) is type(body)


class TestStepContext:
    def test_no_prior_results_marker(self):
        assert format_step_context([]) == NO_PRIOR_RESULTS_MARKER

    def test_prior_results_summary(self):
        results = [
            ExecutionResult(step=1, endpoint="/users", method="POST", response={"id": 42}, response_status=201, success=True),
            ExecutionResult(step=2, endpoint="/groups/{groupId}", method="GET", response={"error": "nope"},
                            response_status=404, success=False, error="HTTP 404: {\"error\": \"nope\"}",
                            error_type=ExecutionErrorType.HTTP_REQUEST_ERROR),
        ]
        text = format_step_context(results)
        assert text.startswith("Step 1: POST /users -> Success\nResponse: {\n  \"id\": 42\n}")
        assert "Step 2: GET /groups/{groupId} -> Error" in text
        assert "Error: HTTP 404" in text

    def test_long_responses_are_truncated(self):
        result = ExecutionResult(step=1, endpoint="/big", method="GET", response="x" * 500, success=True)
        assert "[truncated" in format_step_context([result], max_response_chars=100)


class TestParameterPrompt:
    def test_prompt_embeds_all_sections(self, users_document):
        step = make_step(method="POST", path="/users")
        schema = resolve_operation(users_document, "/users", "POST")
        prompt = build_parameter_prompt(step, schema, "create Ann", NO_PRIOR_RESULTS_MARKER)

        assert "<method>POST</method>" in prompt
        assert "<url>/users</url>" in prompt
        assert "<userPrompt>create Ann</userPrompt>" in prompt
        assert f"<previousResults>{NO_PRIOR_RESULTS_MARKER}</previousResults>" in prompt
        assert "- name (REQUIRED): string (example: Ann)" in prompt
        assert "INSUFFICIENT_SCHEMA" in prompt
        assert "take it only from the user prompt or previousResults" in prompt

    def test_prompt_names_path_placeholders(self):
        prompt = build_parameter_prompt(make_step(), _profile_schema(), "profile of 123", NO_PRIOR_RESULTS_MARKER)
        assert "path placeholders {id}" in prompt
        assert '"/users/{id}/profile"' in prompt


class TestParameterGenerator:
    @pytest.mark.asyncio
    async def test_generate_success(self):
        llm = make_llm(f"```json\n{json.dumps(SUCCESS_PAYLOAD)}\n```")
        result = await ParameterGenerator(llm).generate(make_step(), _profile_schema(), "profile of 123", [])
        assert result.status == ParameterStatus.SUCCESS
        prompt = llm.ainvoke.await_args.args[0][0].content
        assert NO_PRIOR_RESULTS_MARKER in prompt

    @pytest.mark.asyncio
    async def test_backend_failure_becomes_error_status(self):
        llm = make_llm(RuntimeError("quota"))
        result = await ParameterGenerator(llm).generate(make_step(), _profile_schema(), "x", [])
        assert result.status == ParameterStatus.ERROR
        assert "quota" in result.message
