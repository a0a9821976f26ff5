# graph.py
import logging
from typing import Any, Dict, Optional

from langgraph.graph import StateGraph, START, END
from langgraph.checkpoint.base import BaseCheckpointSaver # For type hinting checkpointer

from classifier import RequestClassifier
from errors import PlanningError
from models import AgentState, Command, ExecutionResult, PlanStep, QueryResponse
from plan_builder import PlanBuilder
from plan_runner import PlanRunner
from response_formatter import ResponseFormatter

logger = logging.getLogger(__name__)


def build_plan_prompt(state: AgentState) -> str:
    """HTTP_TOOL prompts joined by blank lines; the raw input when there are none."""
    http_prompts = [t.prompt for t in state.tasks if t.command == Command.HTTP_TOOL]
    return "\n\n".join(http_prompts) if http_prompts else state.user_input


class AgentNodes:
    """Node callables of the agent graph, bound to their collaborators."""

    def __init__(self, classifier: RequestClassifier, plan_builder: PlanBuilder,
                 plan_runner: PlanRunner, response_formatter: ResponseFormatter):
        self.classifier = classifier
        self.plan_builder = plan_builder
        self.plan_runner = plan_runner
        self.response_formatter = response_formatter

    async def classify_request(self, state: AgentState) -> Dict[str, Any]:
        classification = await self.classifier.classify(state.user_input)
        return {"tasks": classification.tasks}

    async def build_plan(self, state: AgentState) -> Dict[str, Any]:
        plan_prompt = build_plan_prompt(state)
        logger.info(f"Planning for {sum(1 for t in state.tasks if t.command == Command.HTTP_TOOL)} HTTP_TOOL tasks")
        try:
            plan = await self.plan_builder.build_plan(plan_prompt)
        except PlanningError as e:
            # Caller policy: carry on without an HTTP plan
            logger.warning(f"Failed to generate API plan, continuing without one: {e.message}")
            return {"plan_prompt": plan_prompt, "plan": [], "planning_error": e.to_standardized()}
        return {"plan_prompt": plan_prompt, "plan": plan}

    async def execute_plan(self, state: AgentState) -> Dict[str, Any]:
        logger.info("Executing API plan")
        results = await self.plan_runner.run(state.plan, state.plan_prompt or state.user_input)
        return {"execution_results": results}

    async def format_response(self, state: AgentState) -> Dict[str, Any]:
        generate_task = next((t for t in reversed(state.tasks) if t.command == Command.GENERATE), None)
        final_response = await self.response_formatter.format_final_response(
            state.execution_results,
            state.user_input,
            generate_prompt=generate_task.prompt if generate_task else None,
        )
        return {"final_response": final_response}


def route_after_classification(state: AgentState) -> str:
    if any(t.command == Command.HTTP_TOOL for t in state.tasks):
        return "build_plan"
    return "format_response"


def route_after_planning(state: AgentState) -> str:
    return "execute_plan" if state.plan else "format_response"


def build_agent_graph(nodes: AgentNodes, checkpointer: Optional[BaseCheckpointSaver] = None):
    """Builds and compiles the request-level graph: classify -> plan -> run -> format."""
    logger.info("Building LangGraph agent graph...")
    builder = StateGraph(AgentState)

    builder.add_node("classify_request", nodes.classify_request)
    builder.add_node("build_plan", nodes.build_plan)
    builder.add_node("execute_plan", nodes.execute_plan)
    builder.add_node("format_response", nodes.format_response)

    builder.add_edge(START, "classify_request")
    builder.add_conditional_edges("classify_request", route_after_classification,
                                  {"build_plan": "build_plan", "format_response": "format_response"})
    builder.add_conditional_edges("build_plan", route_after_planning,
                                  {"execute_plan": "execute_plan", "format_response": "format_response"})
    builder.add_edge("execute_plan", "format_response")
    builder.add_edge("format_response", END)

    try:
        app = builder.compile(checkpointer=checkpointer)
        logger.info("LangGraph agent graph compiled successfully.")
        return app
    except Exception as e:
        logger.critical(f"LangGraph compilation failed: {e}", exc_info=True)
        raise


class AgentService:
    """Entry point of the engine: one user message in, one QueryResponse out."""

    def __init__(self, classifier: RequestClassifier, plan_builder: PlanBuilder,
                 plan_runner: PlanRunner, response_formatter: ResponseFormatter,
                 checkpointer: Optional[BaseCheckpointSaver] = None):
        self.nodes = AgentNodes(classifier, plan_builder, plan_runner, response_formatter)
        self.compiled_graph = build_agent_graph(self.nodes, checkpointer)
        self.checkpointer = checkpointer

    async def process_query(self, message: str, thread_id: Optional[str] = None) -> QueryResponse:
        logger.info(f"Processing query: {message[:200]}")
        config: Dict[str, Any] = {}
        if self.checkpointer is not None:
            config["configurable"] = {"thread_id": thread_id or "default"}

        final_state = await self.compiled_graph.ainvoke(AgentState(user_input=message), config=config)
        if not isinstance(final_state, dict):
            final_state = final_state.model_dump()

        plan = [PlanStep.model_validate(s) for s in final_state.get("plan") or []]
        results = final_state.get("execution_results")
        return QueryResponse(
            tasks=final_state.get("tasks") or [],
            plan=plan or None,
            execution_results=[ExecutionResult.model_validate(r) for r in results] if results is not None else None,
            final_response=final_state.get("final_response") or None,
            planning_error=final_state.get("planning_error"),
        )
