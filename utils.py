# utils.py
import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from errors import LLMCallError

logger = logging.getLogger(__name__)

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

FENCED_BLOCK_REGEX = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")
PATH_PLACEHOLDER_REGEX = re.compile(r"\{([^}]+)\}")
LEADING_ORDINAL_REGEX = re.compile(r"^\s*(?:\d+\s*[.)]|[-*•](?=\s))?\s*(?:ID\s*:\s*)?", re.IGNORECASE)

_ROLE_TO_MESSAGE = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


# --- LLM Call Helper ---
def to_langchain_messages(messages: Sequence[Dict[str, str]]) -> List[BaseMessage]:
    """Converts [{'role': ..., 'content': ...}] into LangChain message objects."""
    converted = []
    for message in messages:
        role = message.get("role", "user")
        message_cls = _ROLE_TO_MESSAGE.get(role)
        if message_cls is None:
            raise ValueError(f"Unsupported message role: '{role}'")
        converted.append(message_cls(content=message.get("content", "")))
    return converted


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Some chat models return a list of content parts
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    logger.warning(f"LLM content is not a string ({type(content)}). Converting to string.")
    return str(content)


async def llm_call_helper(llm: Any, messages: Sequence[Dict[str, str]], timeout: Optional[float] = None) -> str:
    """
    Sends an ordered list of {role, content} messages to a chat model and returns the text content.
    Exactly one attempt is made. Raises LLMCallError on exception, timeout or empty content.
    """
    timeout = LLM_TIMEOUT_SECONDS if timeout is None else timeout
    prompt_repr = str(messages[-1].get("content", "")) if messages else ""
    logger.debug(f"LLM call ({len(messages)} messages). Last message: {prompt_repr[:500]}...")
    try:
        response_obj = await asyncio.wait_for(llm.ainvoke(to_langchain_messages(messages)), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"LLM call timed out after {timeout}s")
        raise LLMCallError(f"LLM call timed out after {timeout}s", details={"reason": "timeout"}, original_error=e)
    except Exception as e:
        logger.error(f"LLM call failed: {e}", exc_info=True)
        raise LLMCallError(f"LLM call failed: {e}", original_error=e)

    if hasattr(response_obj, "content"):
        content = _content_to_text(response_obj.content)
    elif isinstance(response_obj, str):
        content = response_obj
    else:
        logger.warning(f"LLM response object type ({type(response_obj)}) has no 'content' and is not str. Trying str().")
        content = str(response_obj)

    if not content.strip():
        raise LLMCallError("No content received from the text-generation backend")
    logger.debug(f"LLM call successful. Response: {content[:500]}...")
    return content


# --- JSON Parsing Helpers ---
def extract_json_block(llm_output: str) -> str:
    """Returns the inside of the first fenced code block, or the stripped text when there is none."""
    match = FENCED_BLOCK_REGEX.search(llm_output)
    if match:
        logger.debug("Extracted JSON content from markdown fence.")
        return match.group(1).strip()
    return llm_output.strip()


def parse_llm_json_output(llm_output: str, expected_model: Optional[Type[BaseModel]] = None) -> Any:
    """
    Parses JSON output from an LLM string, handling markdown fences, with optional Pydantic validation.
    Raises json.JSONDecodeError / pydantic.ValidationError / TypeError so callers can classify the failure.
    """
    if not isinstance(llm_output, str):
        raise TypeError(f"Cannot parse non-string LLM output as JSON. Type: {type(llm_output)}")

    json_block = extract_json_block(llm_output)
    try:
        parsed_data = json.loads(json_block)
    except json.JSONDecodeError as jde:
        context_start = max(0, jde.pos - 30)
        context_end = min(len(jde.doc), jde.pos + 30)
        logger.error(f"JSON parsing failed: {jde.msg}. At char {jde.pos}. Snippet: '{jde.doc[context_start:context_end]}'")
        raise

    if expected_model is not None:
        return expected_model.model_validate(parsed_data)
    return parsed_data


# --- Candidate Filtering ---
def filter_candidate_ids(tokens: Iterable[str], known_ids: Iterable[str], keep_duplicates: bool = False) -> List[str]:
    """
    Intersects optimistically parsed tokens with the set of valid ids.
    Order of appearance in tokens is kept; unknown tokens are dropped.
    """
    known = set(known_ids)
    selected: List[str] = []
    for token in tokens:
        candidate = token.strip().strip("`'\"[]()").strip()
        if candidate not in known:
            if candidate:
                logger.debug(f"Dropping unknown id from model output: '{candidate[:80]}'")
            continue
        if not keep_duplicates and candidate in selected:
            continue
        selected.append(candidate)
    return selected


def split_id_list(text: str) -> List[str]:
    """Splits a comma (or newline) separated id list."""
    return [t for t in re.split(r"[,\n]", text) if t.strip()]


def split_numbered_lines(text: str) -> List[str]:
    """Splits a numbered, newline-delimited list and strips each line's leading ordinal."""
    tokens = []
    for line in text.splitlines():
        token = LEADING_ORDINAL_REGEX.sub("", line).strip()
        if token:
            tokens.append(token)
    return tokens


# --- Path / Value Helpers ---
def extract_path_placeholders(path_template: str) -> List[str]:
    """Names of all {placeholder}s in a path template, in order of appearance."""
    return PATH_PLACEHOLDER_REGEX.findall(path_template)


def stringify_value(value: Any) -> str:
    """Renders a parameter value for URLs and headers (booleans as true/false)."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + f"... [truncated {len(text) - limit} chars]"
