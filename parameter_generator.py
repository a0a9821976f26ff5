# parameter_generator.py
import json
import logging
import os
from typing import Any, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import LLMCallError
from models import (
    ExecutionResult, ParameterGenerationResult, ParameterStatus, ParameterValue,
    PlanStep, ResolvedSchema,
)
from schema_resolver import render_body_description, render_parameters
from utils import extract_path_placeholders, llm_call_helper, parse_llm_json_output, truncate

logger = logging.getLogger(__name__)

MAX_PRIOR_RESPONSE_CHARS = int(os.getenv("MAX_PRIOR_RESPONSE_CHARS", "4000"))
NO_PRIOR_RESULTS_MARKER = "[no prior results]"
BODY_METHODS = {"POST", "PUT", "PATCH"}


def format_step_context(prior_results: List[ExecutionResult], max_response_chars: int = MAX_PRIOR_RESPONSE_CHARS) -> str:
    """Textual summary of earlier steps, fed to the next step's prompt. Never empty."""
    if not prior_results:
        return NO_PRIOR_RESULTS_MARKER

    blocks = []
    for result in prior_results:
        outcome = "Success" if result.success else "Error"
        response_text = truncate(json.dumps(result.response, indent=2, ensure_ascii=False, default=str), max_response_chars)
        block = f"Step {result.step}: {result.method} {result.endpoint} -> {outcome}\nResponse: {response_text}"
        if result.error:
            block += f"\nError: {result.error}"
        blocks.append(block)
    return "\n\n".join(blocks)


def build_parameter_prompt(step: PlanStep, schema: ResolvedSchema, user_prompt: str, step_context: str) -> str:
    """XML-sectioned instruction asking for a status decision first, then parameter values and a body."""
    method = step.method.upper()
    placeholders = extract_path_placeholders(step.path_template)
    placeholder_note = (
        f"The endpoint contains path placeholders {', '.join('{' + p + '}' for p in placeholders)}: "
        f"EVERY one of them needs a parameter with location \"path\"."
        if placeholders else "The endpoint has no path placeholders."
    )

    return f"""
  <task>
    Generate the parameters and the body for an HTTP request from the data below.
  </task>

  <endpoint>
    <method>{method}</method>
    <url>{step.path_template}</url>
    <description>{step.description or schema.summary or schema.description or 'N/A'}</description>
  </endpoint>

  <schema>
    <parameters>
      <query>{render_parameters(schema, "query")}</query>
      <path>{render_parameters(schema, "path")}</path>
      <header>{render_parameters(schema, "header")}</header>
    </parameters>

    <body>
      {render_body_description(schema.body)}
    </body>
  </schema>

  <context>
    <userPrompt>{user_prompt}</userPrompt>
    <previousResults>{step_context}</previousResults>
  </context>

  <generationRules>
    When required values are not stated outright:
    - Look for them, in this order, in:
      1) the user prompt,
      2) the previous results,
      3) the parameter and body schema (types, descriptions, enum values, examples, patterns).
    - Respect types, descriptions and constraints from the schema. Do not invent formats the schema does not state.
    - Resource identifiers (for example: id, userId, groupId, orderId):
      * If it references an EXISTING resource (in the path, query or body), take it only from the user prompt or previousResults.
        If no such value exists, return INSUFFICIENT_DATA and say explicitly which id is required.
      * If the resource is being created and its id is generated by the server, do not include the id in the body unless the schema marks it as required / client-supplied.
      * If the field is a non-identifying technical key (for example idempotencyKey, requestId, correlationId) and the schema allows a client value, you may generate a safe unique token (for example a UUID string) following the schema's pattern/format. Without such requirements use a simple unique placeholder string.
    - Other fields the request can do without may get simple realistic values compatible with the schema:
      * Strings: "example", "test", "note"
      * Numbers: 1-10
      * Booleans: true/false
    - Do not invent fields that are not in the schema. Do not change the meaning of the request.
    - If the endpoint has {{path}} placeholders whose values are unknown, return INSUFFICIENT_DATA (never substitute made-up ids).
  </generationRules>

  <criticalRules>
    - Study the endpoint carefully: {step.path_template}
    - {placeholder_note}
    - Path parameters are MANDATORY to replace the {{placeholder}} in the URL.
    - First decide whether there is enough data to perform the request.
    - If the schema has required fields and the user request does not provide them (and they cannot be taken from previous results), use status INSUFFICIENT_DATA.
    - If there is enough data, use status SUCCESS and fill in all parameters.
    - If this is a {'/'.join(sorted(BODY_METHODS))} request whose body schema is empty or missing although the operation clearly needs a body, use status INSUFFICIENT_SCHEMA with the message "Invalid interface schema: missing body description for {method} request".
  </criticalRules>

  <examples>
    <pathExamples>
      If the endpoint is "/users/{{id}}/profile" -> create the parameter {{"name": "id", "value": "123", "location": "path"}}
      If the endpoint is "/groups/{{groupId}}/members" -> create the parameter {{"name": "groupId", "value": "456", "location": "path"}}
    </pathExamples>
  </examples>

  <outputFormat>
    Return ONLY valid JSON, without markdown and without text outside the JSON:

    If there is enough data:
    {{
      "status": "SUCCESS",
      "parameters": [
        {{"name": "param", "value": "value", "location": "query"}},
        {{"name": "id", "value": "123", "location": "path"}}
      ],
      "body": {{
        "key": "value"
      }}
    }}

    If data is missing:
    {{
      "status": "INSUFFICIENT_DATA",
      "message": "Not enough data to perform the request: [state exactly what is needed]",
      "parameters": [],
      "body": {{}}
    }}

    If the interface schema is broken:
    {{
      "status": "INSUFFICIENT_SCHEMA",
      "message": "Invalid interface schema: missing body description for POST request",
      "parameters": [],
      "body": {{}}
    }}
  </outputFormat>
"""


def parse_parameter_response(llm_output: str) -> ParameterGenerationResult:
    """
    Classifies a raw model response. Never raises: anything unparsable or malformed
    becomes an ERROR result whose message embeds the parse failure.
    """
    try:
        parsed = parse_llm_json_output(llm_output)
    except (json.JSONDecodeError, TypeError) as e:
        return ParameterGenerationResult.failure(ParameterStatus.ERROR, f"Failed to parse model response: {e}")

    if not isinstance(parsed, dict):
        return ParameterGenerationResult.failure(
            ParameterStatus.ERROR, f"Failed to parse model response: expected a JSON object, got {type(parsed).__name__}")

    raw_status = parsed.get("status") or ParameterStatus.SUCCESS.value
    try:
        status = ParameterStatus(str(raw_status).upper())
    except ValueError:
        return ParameterGenerationResult.failure(ParameterStatus.ERROR, f"Failed to parse model response: unknown status '{raw_status}'")

    if status == ParameterStatus.INSUFFICIENT_DATA:
        message = parsed.get("message") or "Insufficient data to perform the request"
        logger.warning(f"Insufficient data: {message}")
        return ParameterGenerationResult.failure(status, str(message))
    if status == ParameterStatus.INSUFFICIENT_SCHEMA:
        message = parsed.get("message") or "Invalid interface schema"
        logger.warning(f"Insufficient schema: {message}")
        return ParameterGenerationResult.failure(status, str(message))
    if status == ParameterStatus.ERROR:
        return ParameterGenerationResult.failure(status, str(parsed.get("message") or "Model reported an error"))

    raw_parameters = parsed.get("parameters")
    if raw_parameters is None:
        raw_parameters = []
    if not isinstance(raw_parameters, list):
        return ParameterGenerationResult.failure(
            ParameterStatus.ERROR,
            f"Failed to parse model response: 'parameters' must be a list, got {type(raw_parameters).__name__}")
    try:
        parameters = [ParameterValue.model_validate(p) for p in raw_parameters]
    except PydanticValidationError as e:
        return ParameterGenerationResult.failure(ParameterStatus.ERROR, f"Failed to parse model response: {e}")
    # Empty bodies are trimmed per method by the executor
    return ParameterGenerationResult.success(parameters, parsed.get("body"))


class ParameterGenerator:
    """Asks the worker LLM for concrete parameter values and a body, one step at a time."""

    def __init__(self, llm: Any, max_prior_response_chars: int = MAX_PRIOR_RESPONSE_CHARS):
        if not hasattr(llm, "ainvoke"):
            raise TypeError("llm must have an 'ainvoke' method.")
        self.llm = llm
        self.max_prior_response_chars = max_prior_response_chars

    async def generate(
        self,
        step: PlanStep,
        resolved_schema: ResolvedSchema,
        user_prompt: str,
        prior_results: Optional[List[ExecutionResult]] = None,
    ) -> ParameterGenerationResult:
        step_context = format_step_context(prior_results or [], self.max_prior_response_chars)
        prompt = build_parameter_prompt(step, resolved_schema, user_prompt, step_context)
        logger.debug(f"Parameter prompt for step {step.step}:\n{prompt[:2000]}")

        try:
            llm_output = await llm_call_helper(self.llm, [{"role": "user", "content": prompt}])
        except LLMCallError as e:
            return ParameterGenerationResult.failure(ParameterStatus.ERROR, f"Parameter generation call failed: {e.message}")

        result = parse_parameter_response(llm_output)
        if result.status == ParameterStatus.SUCCESS:
            path_params = [p.name for p in result.parameters if p.location == "path"]
            if path_params:
                logger.info(f"Generated path parameters for step {step.step}: {path_params}")
            elif extract_path_placeholders(step.path_template):
                logger.warning(f"No path parameters generated for step {step.step} with endpoint: {step.path_template}")
        else:
            logger.info(f"Parameter generation for step {step.step} ended with {result.status.value}: {result.message}")
        return result
