# llm_config.py
import logging
import os
from typing import Any, Optional, Tuple

from dotenv import load_dotenv
from langchain_google_genai import ChatGoogleGenerativeAI

from errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

ROUTER_LLM_MODEL = os.getenv("ROUTER_LLM_MODEL", "gemini-1.5-flash-latest")
WORKER_LLM_MODEL = os.getenv("WORKER_LLM_MODEL", "gemini-1.5-pro-latest")
ROUTER_LLM_TEMPERATURE = float(os.getenv("ROUTER_LLM_TEMPERATURE", "0"))
WORKER_LLM_TEMPERATURE = float(os.getenv("WORKER_LLM_TEMPERATURE", "0.1"))


def _build_gemini(model: str, temperature: float, api_key: str) -> Any:
    return ChatGoogleGenerativeAI(
        model=model,
        temperature=temperature,
        google_api_key=api_key,
        convert_system_message_to_human=True,
    )


def initialize_llms(google_api_key: Optional[str] = None) -> Tuple[Any, Any]:
    """
    Initializes and returns the router and worker LLMs.
    The router LLM (deterministic) serves request classification and plan building;
    the worker LLM serves parameter generation and response formatting.
    """
    logger.info("Attempting to initialize LLMs (Google Gemini)...")
    api_key = google_api_key or os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise ConfigurationError("GOOGLE_API_KEY environment variable not set. Cannot initialize Gemini LLMs.")

    try:
        router_llm = _build_gemini(ROUTER_LLM_MODEL, ROUTER_LLM_TEMPERATURE, api_key)
        logger.info(f"Router LLM ({ROUTER_LLM_MODEL}) initialized successfully.")
        worker_llm = _build_gemini(WORKER_LLM_MODEL, WORKER_LLM_TEMPERATURE, api_key)
        logger.info(f"Worker LLM ({WORKER_LLM_MODEL}) initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize Google Gemini LLMs: {e}", exc_info=True)
        raise ConfigurationError(f"Failed to initialize Google Gemini LLMs: {e}", original_error=e)

    # Everything downstream awaits ainvoke
    for llm in (router_llm, worker_llm):
        if not hasattr(llm, "ainvoke"):
            raise TypeError(f"Initialized LLM {type(llm).__name__} is missing the 'ainvoke' method.")

    logger.info("LLM client initialization process finished.")
    return router_llm, worker_llm
