# main.py
import asyncio
import json
import logging
import os
import sys
from typing import Any, Optional, Tuple

import click
from dotenv import load_dotenv

from api_executor import APIExecutor
from classifier import RequestClassifier
from errors import AgentError, ConfigurationError
from graph import AgentService
from llm_config import initialize_llms
from parameter_generator import ParameterGenerator
from plan_builder import PlanBuilder
from plan_runner import PlanRunner
from registry import EndpointRegistry, load_registry_file
from response_formatter import ResponseFormatter
from schema_cache import SchemaDocumentCache
from schema_resolver import SchemaResolver

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
REGISTRY_FILE = os.getenv("REGISTRY_FILE")
SCHEMA_CACHE_DIR = os.getenv("SCHEMA_CACHE_DIR")

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format='%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s'
    )


def build_agent_service(
    registry: EndpointRegistry,
    router_llm: Any,
    worker_llm: Any,
    api_executor: Optional[APIExecutor] = None,
    schema_cache: Optional[SchemaDocumentCache] = None,
) -> Tuple[AgentService, APIExecutor, SchemaDocumentCache]:
    """Wires the engine together. The caller owns (and must close) the returned executor and cache."""
    api_executor = api_executor or APIExecutor()
    schema_cache = schema_cache if schema_cache is not None else SchemaDocumentCache(SCHEMA_CACHE_DIR)
    plan_runner = PlanRunner(
        schema_resolver=SchemaResolver(cache=schema_cache),
        parameter_generator=ParameterGenerator(worker_llm),
        api_executor=api_executor,
    )
    service = AgentService(
        classifier=RequestClassifier(router_llm),
        plan_builder=PlanBuilder(router_llm, registry),
        plan_runner=plan_runner,
        response_formatter=ResponseFormatter(worker_llm),
    )
    logger.info("Agent service built and ready.")
    return service, api_executor, schema_cache


async def run_query(message: str, registry_file: Optional[str] = REGISTRY_FILE) -> int:
    if not registry_file:
        raise ConfigurationError("No registry file given. Pass --registry or set REGISTRY_FILE.")
    registry = load_registry_file(registry_file)
    router_llm, worker_llm = initialize_llms()
    service, api_executor, schema_cache = build_agent_service(registry, router_llm, worker_llm)
    try:
        response = await service.process_query(message)
    finally:
        await api_executor.close()
        schema_cache.close()

    click.echo(json.dumps(response.model_dump(mode="json", exclude_none=True), indent=2, ensure_ascii=False))
    results = response.execution_results or []
    return 0 if all(r.success for r in results) else 1


@click.command()
@click.argument("message")
@click.option("--registry", "registry_file", default=REGISTRY_FILE, show_default="$REGISTRY_FILE",
              help="YAML/JSON registry file describing the available APIs.")
def main(message: str, registry_file: Optional[str]):
    """Plan and execute calls against registered HTTP APIs for one request."""
    configure_logging()
    try:
        exit_code = asyncio.run(run_query(message, registry_file))
    except AgentError as e:
        logger.critical(f"Failed to process query: {e.message}")
        click.echo(json.dumps(e.to_dict(), indent=2), err=True)
        sys.exit(2)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
