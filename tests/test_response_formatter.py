import pytest

from models import ExecutionErrorType, ExecutionResult, ParameterValue
from response_formatter import ResponseFormatter, build_insufficient_data_context, build_results_context
from conftest import make_llm


def _success(step=1):
    return ExecutionResult(step=step, endpoint="/users/{id}", method="GET",
                           request_parameters=[ParameterValue(name="id", value="5", location="path")],
                           response={"name": "Ann"}, response_status=200, success=True)


def _insufficient(step=2):
    return ExecutionResult(step=step, endpoint="/groups/{groupId}/members", method="POST", success=False,
                           error="group id is required", error_type=ExecutionErrorType.INSUFFICIENT_DATA)


class TestContexts:
    def test_results_context(self):
        text = build_results_context([_success()])
        assert text.startswith("Step 1: GET /users/{id} - success")
        assert '"value": "5"' in text
        assert '"name": "Ann"' in text

    def test_insufficient_data_context(self):
        text = build_insufficient_data_context([_insufficient()])
        assert "Step 2: POST /groups/{groupId}/members - insufficient data" in text
        assert "Reason: group id is required" in text


class TestResponseFormatter:
    @pytest.mark.asyncio
    async def test_summarizes_results(self):
        llm = make_llm("Ann is user 5.")
        answer = await ResponseFormatter(llm).format_final_response([_success()], "who is user 5?", "Answer the user")
        assert answer == "Ann is user 5."
        prompt = llm.ainvoke.await_args.args[0][0].content
        assert prompt.startswith("Answer the user")
        assert "Results of the API calls:" in prompt

    @pytest.mark.asyncio
    async def test_asks_for_missing_data(self):
        llm = make_llm("Which group should I use?")
        answer = await ResponseFormatter(llm).format_final_response([_success(), _insufficient()], "add Ann to the group")
        assert answer == "Which group should I use?"
        prompt = llm.ainvoke.await_args.args[0][0].content
        assert "Reason: group id is required" in prompt
        assert "Ask the user to provide the missing information" in prompt

    @pytest.mark.asyncio
    async def test_no_results_answers_directly(self):
        llm = make_llm("Hi!")
        assert await ResponseFormatter(llm).format_final_response(None, "hello") == "Hi!"
        assert llm.ainvoke.await_args.args[0][0].content == "hello"

    @pytest.mark.asyncio
    async def test_backend_failure_returns_context(self):
        answer = await ResponseFormatter(make_llm(RuntimeError("down"))).format_final_response([_insufficient()], "x")
        assert answer.startswith("Some data is missing to perform the request.")
        assert "group id is required" in answer
