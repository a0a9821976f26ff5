# response_formatter.py
import json
import logging
from typing import Any, List, Optional

from errors import LLMCallError
from models import ExecutionErrorType, ExecutionResult
from utils import llm_call_helper, truncate

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS_PER_RESULT = 4000


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def build_insufficient_data_context(results: List[ExecutionResult]) -> str:
    return "\n".join(
        f"Step {r.step}: {r.method} {r.endpoint} - insufficient data\nReason: {r.error}\n"
        for r in results
    )


def build_results_context(results: List[ExecutionResult]) -> str:
    blocks = []
    for r in results:
        status = "success" if r.success else "failure"
        request = r.request_body if r.request_body is not None else [p.model_dump() for p in r.request_parameters]
        block = (f"Step {r.step}: {r.method} {r.endpoint} - {status}\n"
                 f"Request: {_dump(request)}\n"
                 f"Response: {truncate(_dump(r.response), MAX_CONTEXT_CHARS_PER_RESULT)}\n")
        if not r.success:
            block += f"Error ({r.error_type.value if r.error_type else 'unknown'}): {r.error}\n"
        blocks.append(block)
    return "\n".join(blocks)


class ResponseFormatter:
    """Turns the results of a plan run into the natural-language answer returned to the user."""

    def __init__(self, worker_llm: Any):
        if not hasattr(worker_llm, "ainvoke"):
            raise TypeError("worker_llm must have an 'ainvoke' method.")
        self.worker_llm = worker_llm

    async def format_final_response(self, results: Optional[List[ExecutionResult]], user_prompt: str,
                                    generate_prompt: Optional[str] = None) -> str:
        results = results or []
        if not results:
            prompt = user_prompt if not generate_prompt or generate_prompt == user_prompt else f"{generate_prompt}\n\nUser request: \"{user_prompt}\""
            return await self._generate(prompt, fallback="I could not produce an answer to this request right now.")

        insufficient = [r for r in results if r.error_type == ExecutionErrorType.INSUFFICIENT_DATA]
        if insufficient:
            context = build_insufficient_data_context(insufficient)
            prompt = (f"The user asked: \"{user_prompt}\"\n\n"
                      f"The request cannot be performed because data is missing:\n{context}\n"
                      f"Ask the user to provide the missing information and explain exactly what is needed to perform the request.")
            return await self._generate(prompt, fallback=f"Some data is missing to perform the request.\n{context}")

        context = build_results_context(results)
        prompt = (f"{generate_prompt or 'Compose the answer for the user'}\n\n"
                  f"User request: \"{user_prompt}\"\n\n"
                  f"Results of the API calls:\n{context}\n"
                  f"Write a clear, well-structured answer for the user based on the data received. "
                  f"If a step failed, say which one and why.")
        all_ok = all(r.success for r in results)
        fallback_head = "The operation completed successfully." if all_ok else "The operation did not complete."
        return await self._generate(prompt, fallback=f"{fallback_head} Results:\n{context}")

    async def _generate(self, prompt: str, fallback: str) -> str:
        try:
            return (await llm_call_helper(self.worker_llm, [{"role": "user", "content": prompt}])).strip()
        except LLMCallError as e:
            logger.error(f"Response formatting failed, returning the raw context instead: {e.message}")
            return fallback
