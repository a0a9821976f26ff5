# plan_runner.py
import logging
from typing import Any, Dict, List, Optional

from langgraph.graph import StateGraph, START, END

from api_executor import APIExecutor
from errors import AgentError
from models import (
    ExecutionErrorType, ExecutionResult, PlanRunState, PlanStep, StandardizedError,
)
from parameter_generator import ParameterGenerator
from schema_resolver import SchemaResolver

logger = logging.getLogger(__name__)


def _error_result(step: PlanStep, error_type: ExecutionErrorType, message: str,
                  details: Optional[Dict[str, Any]] = None) -> ExecutionResult:
    return ExecutionResult.from_error(step, StandardizedError(type=error_type, message=message, details=details, step=step.step))


def _unexpected_error_result(step: PlanStep, e: Exception) -> ExecutionResult:
    logger.error(f"Step {step.step}: unexpected error: {e}", exc_info=True)
    return _error_result(step, ExecutionErrorType.UNKNOWN_ERROR, f"Unexpected error: {e}",
                         {"exception": type(e).__name__, "message": str(e)})


class PlanRunner:
    """
    Executes a plan strictly in step order and stops at the first failed step.
    Each run is a small LangGraph: resolve_schema -> generate_parameters -> execute_step,
    looping back to resolve_schema while steps remain and nothing has failed.
    """

    def __init__(self, schema_resolver: SchemaResolver, parameter_generator: ParameterGenerator, api_executor: APIExecutor):
        self.schema_resolver = schema_resolver
        self.parameter_generator = parameter_generator
        self.api_executor = api_executor
        self.compiled_graph = self._build_graph()
        logger.info("PlanRunner initialized.")

    def _build_graph(self):
        builder = StateGraph(PlanRunState)
        builder.add_node("resolve_schema", self.resolve_schema)
        builder.add_node("generate_parameters", self.generate_parameters)
        builder.add_node("execute_step", self.execute_step)

        builder.add_conditional_edges(START, self._route_from_start, {"resolve_schema": "resolve_schema", END: END})
        builder.add_conditional_edges("resolve_schema", self._route_unless_halted("generate_parameters"),
                                      {"generate_parameters": "generate_parameters", END: END})
        builder.add_conditional_edges("generate_parameters", self._route_unless_halted("execute_step"),
                                      {"execute_step": "execute_step", END: END})
        builder.add_conditional_edges("execute_step", self._route_after_step, {"resolve_schema": "resolve_schema", END: END})
        return builder.compile()

    # --- Routing ---
    @staticmethod
    def _route_from_start(state: PlanRunState) -> str:
        return "resolve_schema" if state.plan else END

    @staticmethod
    def _route_unless_halted(next_node: str):
        def route(state: PlanRunState) -> str:
            return END if state.halted else next_node
        return route

    @staticmethod
    def _route_after_step(state: PlanRunState) -> str:
        if state.halted:
            failed = state.results[-1]
            logger.error(f"Stopping plan run at step {failed.step} ({failed.error_type.value if failed.error_type else 'failure'}): {failed.error}")
            return END
        if state.current_step is None:
            return END
        return "resolve_schema"

    # --- Nodes ---
    async def resolve_schema(self, state: PlanRunState) -> Dict[str, Any]:
        step = state.current_step
        logger.info(f"Step {step.step}: resolving schema for {step.method} {step.path_template}")
        try:
            if not step.schema_locator:
                result = _error_result(step, ExecutionErrorType.SWAGGER_ERROR,
                                       f"No schema document registered for {step.api_name}")
                return {"results": state.results + [result]}
            resolved = await self.schema_resolver.resolve(step.schema_locator, step.path_template, step.method)
        except AgentError as e:
            standardized = e.to_standardized()
            standardized.step = step.step
            return {"results": state.results + [ExecutionResult.from_error(step, standardized)]}
        except Exception as e:
            return {"results": state.results + [_unexpected_error_result(step, e)]}

        if resolved is None:
            result = _error_result(step, ExecutionErrorType.SWAGGER_ERROR,
                                   f"Schema for {step.method} {step.path_template} not found in {step.schema_locator}",
                                   {"schema_locator": step.schema_locator, "endpoint": step.path_template, "method": step.method})
            return {"results": state.results + [result]}
        return {"resolved_schema": resolved, "parameter_result": None}

    async def generate_parameters(self, state: PlanRunState) -> Dict[str, Any]:
        step = state.current_step
        try:
            parameter_result = await self.parameter_generator.generate(step, state.resolved_schema, state.user_prompt, state.results)
        except Exception as e:
            return {"results": state.results + [_unexpected_error_result(step, e)]}
        return {"parameter_result": parameter_result}

    async def execute_step(self, state: PlanRunState) -> Dict[str, Any]:
        step = state.current_step
        try:
            result = await self.api_executor.execute_step(step, state.parameter_result)
        except Exception as e:
            result = _unexpected_error_result(step, e)
        logger.info(f"Step {step.step}: {'success' if result.success else 'failure'} (status {result.response_status})")
        return {
            "results": state.results + [result],
            "cursor": state.cursor + 1,
            "resolved_schema": None,
            "parameter_result": None,
        }

    # --- Entry Point ---
    async def run(self, plan: List[PlanStep], user_prompt: str) -> List[ExecutionResult]:
        """
        Returns the results of the executed steps: a prefix of the plan in step order that is
        either all successful or ends with exactly one failed step. Never raises except on cancellation.
        """
        ordered_plan = sorted(plan, key=lambda s: s.step)
        logger.info(f"Running plan with {len(ordered_plan)} steps")
        initial_state = PlanRunState(plan=ordered_plan, user_prompt=user_prompt)
        config = {"recursion_limit": 3 * len(ordered_plan) + 10}

        results: List[ExecutionResult] = []
        try:
            async for values in self.compiled_graph.astream(initial_state, config=config, stream_mode="values"):
                raw_results = values.get("results") if isinstance(values, dict) else getattr(values, "results", None)
                if raw_results is not None:
                    results = [ExecutionResult.model_validate(r) for r in raw_results]
        except Exception as e:
            # Nodes convert their own errors; this covers failures of the graph machinery itself
            if len(results) < len(ordered_plan) and (not results or results[-1].success):
                results.append(_unexpected_error_result(ordered_plan[len(results)], e))
            else:
                logger.error(f"Plan run raised after its last step: {e}", exc_info=True)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Plan run finished: {len(results)}/{len(ordered_plan)} steps executed, {succeeded} succeeded")
        return results
