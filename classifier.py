# classifier.py
import logging
import re
from typing import Any, Dict, List

from errors import LLMCallError
from models import ClassificationResult, Command, CommandTask
from utils import llm_call_helper

logger = logging.getLogger(__name__)

DEFAULT_GENERATE_PROMPT = "Compose the answer for the user"


class RequestClassifier:
    """
    Splits a raw user message into an ordered list of tasks: HTTP_TOOL tasks that need
    registered APIs, followed by exactly one GENERATE task that produces the answer.
    """
    COMMAND_DESCRIPTIONS: Dict[Command, str] = {
        Command.GENERATE: "Generate a text answer (must always be the last task in the chain)",
        Command.HTTP_TOOL: "Call HTTP APIs to fetch or change data",
    }

    TASK_LINE_REGEX = re.compile(r"^\s*(HTTP_TOOL|GENERATE)\s*:\s*(.+)$", re.IGNORECASE)

    def __init__(self, router_llm: Any):
        if not hasattr(router_llm, "ainvoke"):
            raise TypeError("router_llm must have an 'ainvoke' method.")
        self.router_llm = router_llm
        logger.info("RequestClassifier initialized.")

    def build_classification_prompt(self, message: str) -> str:
        available_commands = "\n".join(f"- {cmd.value}: {desc}" for cmd, desc in self.COMMAND_DESCRIPTIONS.items())
        return f"""<task>
Analyze the following user request and split it into tasks with the matching commands.
</task>

<available_commands>
{available_commands}
</available_commands>

<user_request>
"{message}"
</user_request>

<rules>
1. If the request needs data from the internet/an API, create an HTTP_TOOL task with a matching prompt
2. If the request needs a plain answer or explanation, create a GENERATE task with the full prompt
3. GENERATE must always be the last task in the chain
4. Write each task as "COMMAND: prompt", one per line
</rules>

<response_format>
COMMAND: prompt
</response_format>

<response>"""

    def parse_tasks(self, response: str, original_message: str) -> List[CommandTask]:
        tasks = []
        for line in response.splitlines():
            match = self.TASK_LINE_REGEX.match(line)
            if match:
                tasks.append(CommandTask(command=Command(match.group(1).upper()), prompt=match.group(2).strip()))
        if not tasks:
            logger.warning("Classifier response had no parsable task lines. Falling back to a single GENERATE task.")
            tasks.append(CommandTask(command=Command.GENERATE, prompt=original_message))
        return tasks

    @staticmethod
    def ensure_generate_at_end(tasks: List[CommandTask]) -> List[CommandTask]:
        ordered = [t for t in tasks if t.command != Command.GENERATE]
        generate_task = next((t for t in tasks if t.command == Command.GENERATE), None)
        ordered.append(generate_task or CommandTask(command=Command.GENERATE, prompt=DEFAULT_GENERATE_PROMPT))
        return ordered

    async def classify(self, message: str) -> ClassificationResult:
        logger.info(f"Classifying request: {message[:200]}")
        try:
            response = await llm_call_helper(self.router_llm, [{"role": "user", "content": self.build_classification_prompt(message)}])
        except LLMCallError as e:
            logger.error(f"Error classifying request: {e.message}")
            return ClassificationResult(tasks=[CommandTask(command=Command.GENERATE, prompt=message)])

        tasks = self.ensure_generate_at_end(self.parse_tasks(response, message))
        logger.info(f"Classified tasks: {', '.join(f'{t.command.value}({t.prompt[:60]})' for t in tasks)}")
        return ClassificationResult(tasks=tasks)
