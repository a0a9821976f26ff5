# api_executor.py
import httpx
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from models import (
    ExecutionErrorType, ExecutionResult, ParameterGenerationResult, ParameterStatus,
    ParameterValue, PlanStep, StandardizedError,
)
from utils import extract_path_placeholders, stringify_value

logger = logging.getLogger(__name__)

API_TIMEOUT = float(os.getenv("API_TIMEOUT", "30"))
NO_BODY_METHODS = {"GET", "HEAD", "DELETE"}

# Generator status -> error type recorded on the short-circuited step
STATUS_ERROR_TYPES = {
    ParameterStatus.INSUFFICIENT_DATA: ExecutionErrorType.INSUFFICIENT_DATA,
    ParameterStatus.INSUFFICIENT_SCHEMA: ExecutionErrorType.SWAGGER_ERROR,
    ParameterStatus.ERROR: ExecutionErrorType.PARAMETER_GENERATION_ERROR,
}


def find_missing_path_parameters(path_template: str, parameters: List[ParameterValue]) -> List[str]:
    """Placeholders of the template that have no path-located parameter."""
    provided = {p.name for p in parameters if p.location == "path"}
    return [name for name in extract_path_placeholders(path_template) if name not in provided]


def build_request(step: PlanStep, parameters: List[ParameterValue], body: Any = None) -> Tuple[str, Dict[str, str], Any]:
    """
    Assembles (url, headers, body) for a step. Path placeholders are replaced literally,
    query parameters are percent-encoded into the query string, header parameters become headers.
    """
    path = step.path_template
    query_pairs = []
    headers: Dict[str, str] = {}
    for param in parameters:
        value = stringify_value(param.value)
        if param.location == "path":
            path = path.replace("{" + param.name + "}", value)
        elif param.location == "query":
            query_pairs.append((param.name, value))
        elif param.location == "header":
            headers[param.name] = value

    if not path.startswith("/"):
        path = "/" + path
    url = step.base_url.rstrip("/") + path
    if query_pairs:
        url += ("&" if "?" in url else "?") + urlencode(query_pairs, quote_via=quote, safe="")

    if step.method.upper() in NO_BODY_METHODS and body in ({}, []):
        body = None
    return url, headers, body


def _parse_response_body(http_response: httpx.Response) -> Any:
    content_type = http_response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            return http_response.json()
        except json.JSONDecodeError:
            logger.warning(f"Failed to decode JSON response despite content-type. Raw text: {http_response.text[:200]}...")
            return http_response.text
    if not http_response.content:
        return None
    return http_response.text


class APIExecutor:
    """
    Step executor: validates generated path parameters against the URL template,
    issues the HTTP call with httpx and records the outcome as an ExecutionResult.
    """
    def __init__(self, timeout: float = API_TIMEOUT, default_headers: Optional[Dict[str, str]] = None,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            timeout (float): Timeout for every HTTP request in seconds.
            default_headers (Optional[Dict[str, str]]): Headers sent with every request (e.g. a shared API key).
                                                        Header parameters of a step override them.
            client (Optional[httpx.AsyncClient]): Client to reuse; one is created when omitted.
        """
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self._client = client or httpx.AsyncClient(timeout=self.timeout)
        logger.info(f"APIExecutor initialized. Default Timeout: {timeout}s")

    async def close(self):
        """Closes the underlying HTTP client. Should be called on application shutdown."""
        await self._client.aclose()
        logger.info("APIExecutor's HTTP client closed.")

    async def execute_step(self, step: PlanStep, parameter_result: ParameterGenerationResult) -> ExecutionResult:
        if parameter_result.status != ParameterStatus.SUCCESS:
            error_type = STATUS_ERROR_TYPES[parameter_result.status]
            message = parameter_result.message or parameter_result.status.value
            logger.warning(f"Step {step.step}: not dispatched, parameter generation returned {parameter_result.status.value}: {message}")
            return ExecutionResult.from_error(step, StandardizedError(type=error_type, message=message, step=step.step))

        missing = find_missing_path_parameters(step.path_template, parameter_result.parameters)
        if missing:
            message = f"Missing required path parameters: {', '.join(missing)}"
            logger.error(f"Step {step.step}: {message} for endpoint {step.path_template}")
            return ExecutionResult.from_error(
                step,
                StandardizedError(
                    type=ExecutionErrorType.VALIDATION_ERROR,
                    message=message,
                    details={"missing_path_parameters": missing, "endpoint": step.path_template},
                    step=step.step,
                ),
                parameters=parameter_result.parameters,
                body=parameter_result.body,
            )

        url, step_headers, body = build_request(step, parameter_result.parameters, parameter_result.body)
        return await self._dispatch(step, url, step_headers, body, parameter_result.parameters)

    async def _dispatch(self, step: PlanStep, url: str, step_headers: Dict[str, str], body: Any,
                        parameters: List[ParameterValue]) -> ExecutionResult:
        request_method = step.method.upper()
        final_headers = self.default_headers.copy()
        final_headers.update(step_headers)

        request_kwargs: Dict[str, Any] = {"method": request_method, "url": url, "headers": final_headers}
        if body is not None:
            request_kwargs["json"] = body

        log_payload_preview = str(body)[:200] + "..." if body is not None and len(str(body)) > 200 else body
        logger.info(f"Step {step.step}: {request_method} {url}")
        logger.debug(f"Step {step.step} - Headers: {final_headers}, Payload Preview: {log_payload_preview}")

        base = {
            "step": step.step,
            "endpoint": step.path_template,
            "method": request_method,
            "request_parameters": parameters,
            "request_body": body,
            "request_url": url,
        }
        start_time = time.perf_counter()
        try:
            http_response: httpx.Response = await self._client.request(**request_kwargs)
        except httpx.TimeoutException as e_timeout:
            logger.error(f"Step {step.step}: Timeout during API call to {url}: {e_timeout}")
            return ExecutionResult(
                **base, success=False,
                error=f"Timeout: {e_timeout}",
                error_type=ExecutionErrorType.UNKNOWN_ERROR,
                error_details={"reason": "timeout", "timeout": self.timeout, "url": url},
                execution_time=round(time.perf_counter() - start_time, 4),
            )
        except httpx.RequestError as e_request:
            logger.error(f"Step {step.step}: Request error during API call to {url}: {e_request}")
            return ExecutionResult(
                **base, success=False,
                error=f"Request Error: {e_request}",
                error_type=ExecutionErrorType.UNKNOWN_ERROR,
                error_details={"reason": "transport", "exception": type(e_request).__name__, "url": url},
                execution_time=round(time.perf_counter() - start_time, 4),
            )

        execution_time = round(time.perf_counter() - start_time, 4)
        response_body = _parse_response_body(http_response)
        status = http_response.status_code
        logger.info(f"Step {step.step}: Finished API call. Status: {status}, Time: {execution_time:.4f}s")

        if 200 <= status <= 299:
            return ExecutionResult(**base, response=response_body, response_status=status, success=True,
                                   execution_time=execution_time)

        error = f"HTTP {status}: {json.dumps(response_body, ensure_ascii=False, default=str)}"
        logger.warning(f"Step {step.step}: Received non-2xx status: {status}. Response: {error[:200]}...")
        return ExecutionResult(
            **base, response=response_body, response_status=status, success=False,
            error=error,
            error_type=ExecutionErrorType.HTTP_REQUEST_ERROR,
            error_details={"status": status, "response": response_body},
            execution_time=execution_time,
        )
